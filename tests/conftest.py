"""
Pytest configuration and shared fixtures for Lockdrop tests.
"""
import base64
import hashlib
import os
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lockdrop.config import LockdropConfig
from lockdrop.errors import RemoteError
from lockdrop.storage import ContentStore
from lockdrop.transport import ResilientTransport


CID_V0 = "QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG"
CID_V1 = "bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi"


def stub_address(blob: bytes) -> str:
    """Deterministic CIDv1-shaped address (raw codec, sha2-256) for a blob."""
    multihash = b"\x01\x55\x12\x20" + hashlib.sha256(blob).digest()
    return "b" + base64.b32encode(multihash).decode("ascii").lower().rstrip("=")


def address_from_url(url: str) -> str:
    return url[len("https://"):].split(".", 1)[0]


class StubBackend:
    """In-memory storage backend with scriptable failures.

    Each *_failures list is consumed front to back, one entry per call,
    before calls start succeeding.
    """

    def __init__(self):
        self.blobs = {}
        self.put_calls = 0
        self.probe_calls = 0
        self.fetch_calls = 0
        self.put_failures = []
        self.probe_failures = []
        self.fetch_failures = []
        self.address_override = None

    async def put(self, blob, on_progress=None):
        self.put_calls += 1
        if self.put_failures:
            raise self.put_failures.pop(0)
        if on_progress is not None:
            on_progress(len(blob) // 2, len(blob))
            on_progress(len(blob), len(blob))
        address = self.address_override or stub_address(blob)
        self.blobs[address] = bytes(blob)
        return address

    async def probe(self, url):
        self.probe_calls += 1
        if self.probe_failures:
            raise self.probe_failures.pop(0)
        if address_from_url(url) not in self.blobs:
            raise RemoteError("not found", status_code=404, url=url)

    async def fetch(self, url):
        self.fetch_calls += 1
        if self.fetch_failures:
            raise self.fetch_failures.pop(0)
        address = address_from_url(url)
        if address not in self.blobs:
            raise RemoteError("not found", status_code=404, url=url)
        return self.blobs[address]


class RecordingSleep:
    """Stands in for asyncio.sleep and records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def config():
    return LockdropConfig()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def transport(sleeper):
    return ResilientTransport(sleep=sleeper)


@pytest.fixture
def backend():
    return StubBackend()


@pytest.fixture
def store(backend, config, transport):
    return ContentStore(backend, config, transport)


@pytest.fixture
def sample_passphrase():
    """Return a sample passphrase for testing."""
    return "test-passphrase-for-unit-tests-12345"
