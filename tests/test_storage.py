"""
Tests for lockdrop/storage.py - content store and HTTP backend.

Uses an in-memory backend and a mocked requests session; no network access.
"""
import asyncio
import os
import sys
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
import requests

from conftest import CID_V0, CID_V1, stub_address
from lockdrop.config import LockdropConfig
from lockdrop.errors import (
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
from lockdrop.runtime import Runtime, RuntimeProvider
from lockdrop.storage import (
    ContentStore,
    HttpContentBackend,
    _MultipartBody,
    decode_upload_response,
    is_valid_content_address,
)
from lockdrop.transport import is_retryable


class TestAddressValidation:

    def test_valid_addresses(self):
        assert is_valid_content_address(CID_V0)
        assert is_valid_content_address(CID_V1)
        assert is_valid_content_address(stub_address(b"blob"))

    def test_invalid_addresses(self):
        assert not is_valid_content_address("")
        assert not is_valid_content_address("Qm123")
        assert not is_valid_content_address(CID_V0 + "x")
        assert not is_valid_content_address("bafy")
        assert not is_valid_content_address(CID_V1.upper())
        assert not is_valid_content_address(None)

    def test_gateway_url(self, store):
        assert store.gateway_url(CID_V1) == f"https://{CID_V1}.ipfs.storacha.link/"

    def test_gateway_url_custom_host(self, backend):
        store = ContentStore(backend, LockdropConfig(gateway_host="w3s.link"))
        assert store.gateway_url(CID_V0) == f"https://{CID_V0}.w3s.link/"

    def test_gateway_url_rejects_bad_address(self, store):
        with pytest.raises(InvalidAddressFormat):
            store.gateway_url("../etc/passwd")


class TestUpload:

    def test_upload_returns_verified_descriptor(self, store, backend):
        descriptor = asyncio.run(store.upload(b"ciphertext"))
        assert descriptor.address == stub_address(b"ciphertext")
        assert descriptor.size == len(b"ciphertext")
        assert descriptor.provider == "ipfs"
        assert backend.put_calls == 1
        assert backend.probe_calls == 1

    def test_progress_is_monotonic_with_single_final(self, store):
        seen = []
        asyncio.run(store.upload(b"x" * 1000, on_progress=seen.append))
        assert seen == sorted(seen)
        assert seen.count(100) == 1
        assert seen[-1] == 100
        assert all(0 <= p <= 100 for p in seen)

    def test_progress_stays_monotonic_across_retries(self, store, backend):
        seen = []

        async def flaky_put(blob, on_progress=None):
            backend.put_calls += 1
            on_progress(len(blob) * 3 // 4, len(blob))
            if backend.put_calls == 1:
                raise ConnectivityError("reset")
            on_progress(len(blob) // 4, len(blob))
            on_progress(len(blob), len(blob))
            backend.blobs[stub_address(blob)] = blob
            return stub_address(blob)

        backend.put = flaky_put
        asyncio.run(store.upload(b"y" * 400, on_progress=seen.append))
        assert seen == sorted(seen)
        assert seen[-1] == 100
        assert seen.count(100) == 1

    def test_no_descriptor_when_probe_fails(self, store, backend):
        backend.probe_failures = [ConnectivityError("gateway down")] * 3
        seen = []
        with pytest.raises(VerificationFailure) as exc_info:
            asyncio.run(store.upload(b"stored", on_progress=seen.append))
        assert exc_info.value.attempts == 3
        assert 100 not in seen

    def test_gateway_not_found_fails_fast(self, store, backend, sleeper):
        backend.probe_failures = [RemoteError("not found", status_code=404)] * 5
        seen = []
        with pytest.raises(VerificationFailure) as exc_info:
            asyncio.run(store.upload(b"abc", on_progress=seen.append))
        assert exc_info.value.attempts == 1
        assert exc_info.value.retryable is False
        assert backend.probe_calls == 1
        assert sleeper.delays == []
        assert 100 not in seen

    def test_upload_retries_then_succeeds(self, store, backend, sleeper):
        backend.put_failures = [ConnectivityError("a"), RemoteError("busy", status_code=503)]
        asyncio.run(store.upload(b"data"))
        assert backend.put_calls == 3
        assert len(sleeper.delays) == 2

    def test_upload_permanent_failure(self, store, backend, sleeper):
        backend.put_failures = [RemoteError("forbidden", status_code=403)]
        with pytest.raises(UploadFailure) as exc_info:
            asyncio.run(store.upload(b"data"))
        assert exc_info.value.attempts == 1
        assert exc_info.value.metadata["size_bytes"] == 4
        assert sleeper.delays == []
        assert backend.probe_calls == 0

    def test_too_large_fails_before_network(self, backend, transport):
        store = ContentStore(backend, LockdropConfig(max_blob_size=10), transport)
        with pytest.raises(PayloadTooLarge):
            asyncio.run(store.upload(b"x" * 11))
        assert backend.put_calls == 0

    def test_empty_blob_rejected(self, store, backend):
        with pytest.raises(ValidationError):
            asyncio.run(store.upload(b""))
        assert backend.put_calls == 0

    def test_invalid_returned_address(self, store, backend):
        backend.address_override = "not-a-cid"
        with pytest.raises(ParseError):
            asyncio.run(store.upload(b"data"))
        assert backend.probe_calls == 0

    def test_large_blob_uses_large_timeout(self, backend, transport):
        config = LockdropConfig(large_blob_threshold=4)
        store = ContentStore(backend, config, transport)
        captured = []
        original = transport.execute

        async def spy(operation, policy, **kwargs):
            captured.append((kwargs.get("name"), policy.timeout))
            return await original(operation, policy, **kwargs)

        transport.execute = spy
        asyncio.run(store.upload(b"larger than four"))
        assert captured[0] == ("upload", config.upload_timeout_large)
        assert captured[1] == ("upload verification", config.verify_timeout)


class TestDownload:

    def test_round_trip(self, store):
        descriptor = asyncio.run(store.upload(b"round trip"))
        assert asyncio.run(store.download(descriptor.address)) == b"round trip"

    def test_invalid_address_makes_no_call(self, store, backend):
        with pytest.raises(InvalidAddressFormat):
            asyncio.run(store.download("nope"))
        assert backend.fetch_calls == 0

    def test_missing_blob(self, store, backend):
        with pytest.raises(DownloadFailure) as exc_info:
            asyncio.run(store.download(CID_V1))
        assert exc_info.value.attempts == 1
        assert backend.fetch_calls == 1

    def test_retries_transient_failures(self, store, backend):
        descriptor = asyncio.run(store.upload(b"flaky"))
        backend.fetch_failures = [TransportTimeout("slow")]
        assert asyncio.run(store.download(descriptor.address)) == b"flaky"
        assert backend.fetch_calls == 2


class TestNotFoundClassification:

    def test_not_found_not_retryable(self):
        assert not is_retryable(RemoteError("missing", status_code=404))

    def test_auth_failure_not_retryable(self):
        assert not is_retryable(RemoteError("denied", status_code=401))


class TestUploadResponse:

    def test_cid_shape(self):
        assert decode_upload_response({"cid": CID_V1}) == CID_V1

    def test_kubo_shape(self):
        assert decode_upload_response({"Name": "blob", "Hash": CID_V1, "Size": "12"}) == CID_V1

    def test_unknown_shapes(self):
        for payload in ({"id": CID_V1}, {"cid": 42}, [CID_V1], CID_V1, None):
            with pytest.raises(ParseError):
                decode_upload_response(payload)


class TestMultipartBody:

    def test_reads_all_parts_and_reports_progress(self):
        reports = []
        body = _MultipartBody(b"a" * 100, lambda sent, total: reports.append((sent, total)))
        chunks = []
        while True:
            chunk = body.read(16)
            if not chunk:
                break
            chunks.append(chunk)
        data = b"".join(chunks)
        assert len(data) == len(body)
        assert b"a" * 100 in data
        assert body.content_type.split("boundary=")[1].encode() in data
        assert reports[-1] == (100, 100)
        assert [sent for sent, _ in reports] == sorted(sent for sent, _ in reports)


def make_backend(response=None, side_effect=None, config=None):
    session = MagicMock()
    if side_effect is not None:
        session.request.side_effect = side_effect
    else:
        session.request.return_value = response
    provider = RuntimeProvider(factory=lambda: Runtime(session=session))
    return HttpContentBackend(config or LockdropConfig(), provider), session


def make_response(status=200, payload=None, content=b""):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = payload
    response.content = content
    return response


class TestHttpContentBackend:

    def test_put_posts_multipart_and_decodes(self):
        backend, session = make_backend(make_response(payload={"Hash": CID_V1}))
        assert asyncio.run(backend.put(b"blob")) == CID_V1
        method, url = session.request.call_args[0]
        kwargs = session.request.call_args[1]
        assert method == "POST"
        assert url == LockdropConfig().upload_url
        assert kwargs["headers"]["Content-Type"].startswith("multipart/form-data")
        assert "Authorization" not in kwargs["headers"]

    def test_put_sends_bearer_token(self):
        backend, session = make_backend(
            make_response(payload={"cid": CID_V1}),
            config=LockdropConfig(upload_token="t0ken"),
        )
        asyncio.run(backend.put(b"blob"))
        assert session.request.call_args[1]["headers"]["Authorization"] == "Bearer t0ken"

    def test_put_rejects_non_json(self):
        response = make_response()
        response.json.side_effect = ValueError("not json")
        backend, _ = make_backend(response)
        with pytest.raises(ParseError):
            asyncio.run(backend.put(b"blob"))

    def test_http_error_status(self):
        backend, _ = make_backend(make_response(status=401))
        with pytest.raises(RemoteError) as exc_info:
            asyncio.run(backend.probe(f"https://{CID_V1}.ipfs.storacha.link/"))
        assert exc_info.value.status_code == 401
        assert exc_info.value.retryable is False

    def test_connection_error(self):
        backend, _ = make_backend(side_effect=requests.exceptions.ConnectionError("refused"))
        with pytest.raises(ConnectivityError):
            asyncio.run(backend.fetch(f"https://{CID_V1}.ipfs.storacha.link/"))

    def test_timeout(self):
        backend, _ = make_backend(side_effect=requests.exceptions.ReadTimeout("slow"))
        with pytest.raises(TransportTimeout):
            asyncio.run(backend.fetch(f"https://{CID_V1}.ipfs.storacha.link/"))

    def test_probe_uses_head(self):
        backend, session = make_backend(make_response())
        asyncio.run(backend.probe(f"https://{CID_V1}.ipfs.storacha.link/"))
        assert session.request.call_args[0][0] == "HEAD"

    def test_fetch_returns_content(self):
        backend, session = make_backend(make_response(content=b"payload"))
        assert asyncio.run(backend.fetch(f"https://{CID_V1}.ipfs.storacha.link/")) == b"payload"
        assert session.request.call_args[0][0] == "GET"

    def test_store_over_http_backend(self, transport):
        cid = stub_address(b"end to end")
        responses = [make_response(payload={"cid": cid}), make_response()]
        backend, session = make_backend(side_effect=responses)
        store = ContentStore(backend, LockdropConfig(), transport)
        descriptor = asyncio.run(store.upload(b"end to end"))
        assert descriptor.address == cid
        assert [c[0][0] for c in session.request.call_args_list] == ["POST", "HEAD"]
