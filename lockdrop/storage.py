# lockdrop/storage.py
"""
Content store for encrypted blobs on a content-addressed network.

Only ciphertext and wrapped keys pass through here. An upload is not
reported as successful until the blob has been seen on the public gateway;
every network call runs through ResilientTransport.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import requests
from nacl.utils import random as nacl_random

from .config import LockdropConfig
from .errors import (
    ConnectivityError,
    DownloadFailure,
    InvalidAddressFormat,
    ParseError,
    PayloadTooLarge,
    RemoteError,
    TransportTimeout,
    UploadFailure,
    ValidationError,
    VerificationFailure,
)
from .runtime import RuntimeProvider
from .transport import ResilientTransport


logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "ipfs"

# CIDv0 (base58btc multihash) and CIDv1 (base32, multibase prefix "b")
_CID_V0 = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")
_CID_V1 = re.compile(r"^b[a-z2-7]{58,}$")

ProgressCallback = Callable[[int], None]
ByteProgress = Callable[[int, int], None]


def is_valid_content_address(address) -> bool:
    """True if address is a CIDv0 or base32 CIDv1 string."""
    if not isinstance(address, str):
        return False
    return bool(_CID_V0.match(address) or _CID_V1.match(address))


@dataclass(frozen=True)
class ContentDescriptor:
    """A stored, gateway-verified blob."""
    address: str
    size: int
    provider: str = DEFAULT_PROVIDER

    def to_dict(self) -> dict:
        return {"address": self.address, "size": self.size, "provider": self.provider}


class StorageBackend(Protocol):
    """Raw network access beneath ContentStore. No retries at this level."""

    async def put(self, blob: bytes, on_progress: Optional[ByteProgress] = None) -> str:
        """Store blob and return its content address."""

    async def probe(self, url: str) -> None:
        """Raise unless url is retrievable."""

    async def fetch(self, url: str) -> bytes:
        """Return the body served at url."""


class _ProgressGuard:
    """Forward upload progress as monotonic percentages, 100 exactly once."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self._callback = callback
        self._last = -1

    def report(self, sent: int, total: int) -> None:
        percent = min(99, sent * 100 // total) if total > 0 else 0
        self._emit(max(0, percent))

    def complete(self) -> None:
        self._emit(100)

    def _emit(self, percent: int) -> None:
        if percent <= self._last:
            return
        self._last = percent
        if self._callback is not None:
            self._callback(percent)


class ContentStore:
    """Upload, verify and download blobs under the configured retry policies."""

    def __init__(
        self,
        backend: StorageBackend,
        config: LockdropConfig = None,
        transport: ResilientTransport = None,
        provider: str = DEFAULT_PROVIDER,
    ):
        self._backend = backend
        self.config = config or LockdropConfig()
        self._transport = transport or ResilientTransport()
        self._provider = provider

    def gateway_url(self, address: str) -> str:
        if not is_valid_content_address(address):
            raise InvalidAddressFormat(f"Invalid content address: {address!r}", address=str(address))
        return f"https://{address}.{self.config.gateway_host}/"

    async def upload(self, blob: bytes, on_progress: Optional[ProgressCallback] = None,
                     name: str = "upload") -> ContentDescriptor:
        """Upload blob and wait until the gateway serves it.

        Args:
            blob: Ciphertext or key blob bytes
            on_progress: Receives integer percentages, non-decreasing, with
                exactly one final 100 after verification succeeds
            name: Operation name used in logs and errors

        Raises:
            ValidationError: empty blob
            PayloadTooLarge: blob larger than max_blob_size
            UploadFailure: blob was not stored
            ParseError: the backend returned a malformed address
            VerificationFailure: stored but not yet retrievable
        """
        size = len(blob)
        if size == 0:
            raise ValidationError("Refusing to upload an empty blob", operation=name)
        if size > self.config.max_blob_size:
            raise PayloadTooLarge(
                f"Blob of {size} bytes exceeds the {self.config.max_blob_size} byte limit",
                operation=name,
                size=size,
                limit=self.config.max_blob_size,
            )

        progress = _ProgressGuard(on_progress)
        progress.report(0, size)
        metadata = {"size_bytes": size}

        stored = await self._transport.execute(
            lambda: self._backend.put(blob, progress.report),
            self.config.upload_policy(size),
            name=name,
            failure=UploadFailure,
            metadata=metadata,
        )
        address = stored.value
        if not is_valid_content_address(address):
            raise ParseError(
                f"Upload returned an invalid content address: {address!r}",
                operation=name,
                metadata=metadata,
            )

        url = self.gateway_url(address)
        await self._transport.execute(
            lambda: self._backend.probe(url),
            self.config.verify_policy(),
            name=f"{name} verification",
            failure=VerificationFailure,
            metadata={**metadata, "address": address},
        )

        progress.complete()
        logger.info(f"{name}: stored {size} bytes at {address} after {stored.attempts} attempt(s)")
        return ContentDescriptor(address=address, size=size, provider=self._provider)

    async def download(self, address: str, expected_size: Optional[int] = None,
                       name: str = "download") -> bytes:
        """Fetch a blob from the gateway.

        Raises:
            InvalidAddressFormat: before any network call
            DownloadFailure: fetch failed permanently or exhausted its attempts
        """
        url = self.gateway_url(address)
        fetched = await self._transport.execute(
            lambda: self._backend.fetch(url),
            self.config.download_policy(expected_size),
            name=name,
            failure=DownloadFailure,
            metadata={"address": address, "expected_size_bytes": expected_size},
        )
        logger.debug(f"{name}: fetched {len(fetched.value)} bytes from {address}")
        return fetched.value


# ============================================================================
# HTTP backend
# ============================================================================

class _MultipartBody:
    """Single-file multipart body read in blocks, reporting blob bytes sent.

    Exposes __len__ so requests sends a Content-Length instead of chunking.
    """

    def __init__(self, blob: bytes, report: ByteProgress):
        boundary = nacl_random(16).hex()
        self.content_type = f"multipart/form-data; boundary={boundary}"
        head = (
            f"--{boundary}\r\n"
            'Content-Disposition: form-data; name="file"; filename="blob"\r\n'
            "Content-Type: application/octet-stream\r\n\r\n"
        ).encode("ascii")
        tail = f"\r\n--{boundary}--\r\n".encode("ascii")
        self._parts = [head, memoryview(blob), tail]
        self._length = len(head) + len(blob) + len(tail)
        self._head_size = len(head)
        self._blob_size = len(blob)
        self._report = report
        self._part = 0
        self._pos = 0
        self._sent = 0

    def __len__(self) -> int:
        return self._length

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            size = self._length - self._sent
        out = bytearray()
        while size > 0 and self._part < len(self._parts):
            part = self._parts[self._part]
            chunk = part[self._pos:self._pos + size]
            out += chunk
            self._pos += len(chunk)
            size -= len(chunk)
            if self._pos >= len(part):
                self._part += 1
                self._pos = 0
        self._sent += len(out)
        blob_sent = min(max(self._sent - self._head_size, 0), self._blob_size)
        self._report(blob_sent, self._blob_size)
        return bytes(out)


def decode_upload_response(payload) -> str:
    """Extract the address from an upload response.

    Accepted shapes: {"cid": str} and the Kubo add response, which carries
    the address under "Hash".
    """
    if isinstance(payload, dict):
        if isinstance(payload.get("cid"), str):
            return payload["cid"]
        if isinstance(payload.get("Hash"), str):
            return payload["Hash"]
    raise ParseError("Unrecognised upload response shape", metadata={"payload_type": type(payload).__name__})


class HttpContentBackend:
    """StorageBackend over an HTTP upload endpoint and a subdomain gateway.

    requests is blocking, so each call runs on a worker thread. A worker
    abandoned by a timed-out attempt finishes on its own; its result is
    discarded.
    """

    def __init__(self, config: LockdropConfig = None, runtime: RuntimeProvider = None):
        self.config = config or LockdropConfig()
        self._runtime = runtime or RuntimeProvider()

    async def _session(self) -> requests.Session:
        return (await self._runtime.get()).session

    def _send(self, session: requests.Session, method: str, url: str, **kwargs) -> requests.Response:
        """Make a request, mapping failures onto the transport taxonomy."""
        try:
            response = session.request(method, url, **kwargs)
        except requests.exceptions.Timeout as e:
            raise TransportTimeout(
                f"{method} {url} timed out", timeout=kwargs.get("timeout"), cause=e
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise ConnectivityError(f"Cannot connect to {url}", url=url, cause=e) from e

        if response.status_code >= 400:
            raise RemoteError(
                f"{method} {url} returned HTTP {response.status_code}",
                status_code=response.status_code,
                url=url,
            )
        return response

    async def put(self, blob: bytes, on_progress: Optional[ByteProgress] = None) -> str:
        session = await self._session()
        loop = asyncio.get_running_loop()

        def report(sent: int, total: int) -> None:
            if on_progress is not None and not loop.is_closed():
                loop.call_soon_threadsafe(on_progress, sent, total)

        body = _MultipartBody(blob, report)
        headers = {"Content-Type": body.content_type}
        if self.config.upload_token:
            headers["Authorization"] = f"Bearer {self.config.upload_token}"

        response = await asyncio.to_thread(
            self._send, session, "POST", self.config.upload_url,
            data=body, headers=headers, timeout=self.config.upload_timeout_large,
        )
        try:
            payload = response.json()
        except (ValueError, json.JSONDecodeError) as e:
            raise ParseError("Upload response is not JSON", cause=e) from e
        return decode_upload_response(payload)

    async def probe(self, url: str) -> None:
        session = await self._session()
        await asyncio.to_thread(
            self._send, session, "HEAD", url,
            allow_redirects=True, timeout=self.config.verify_timeout,
        )

    async def fetch(self, url: str) -> bytes:
        session = await self._session()
        response = await asyncio.to_thread(
            self._send, session, "GET", url, timeout=self.config.download_timeout_large,
        )
        return response.content
