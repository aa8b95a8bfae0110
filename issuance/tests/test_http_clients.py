import json
from datetime import datetime, timezone

import httpx
import pytest
from pydantic import ValidationError
from tenacity import wait_none

from issuance.app.core.errors import MfaUnavailableError
from issuance.app.services.content_store import (
    ContentStoreError,
    MockContentStore,
    PinataContentStore,
    build_content_store,
)
from issuance.app.services.mfa import HttpMfaVerifier, MfaResult
from issuance.tests.fixtures.world import make_settings

pytestmark = pytest.mark.anyio


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(PinataContentStore._post.retry, "wait", wait_none())
    monkeypatch.setattr(PinataContentStore.fetch.retry, "wait", wait_none())


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ----------------------------------------------------------------------
# MFA
# ----------------------------------------------------------------------

async def test_mfa_valid_code(tmp_path):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"is_valid": True})

    async with _client(handler) as client:
        verifier = HttpMfaVerifier(client, make_settings(tmp_path))
        result = await verifier.verify("user-1", "123456")

    assert result.valid is True
    assert result.locked_until is None
    assert seen[0].url.path == "/v1/mfa/verify"
    assert json.loads(seen[0].content) == {"user_id": "user-1", "authenticator_code": "123456"}


async def test_mfa_lockout_epoch_is_converted(tmp_path):
    def handler(request):
        return httpx.Response(
            200,
            json={
                "is_valid": False,
                "reason": "locked",
                "message": "Too many attempts",
                "locked_until": 1767225600,
            },
        )

    async with _client(handler) as client:
        result = await HttpMfaVerifier(client, make_settings(tmp_path)).verify("u", "000000")

    assert result.valid is False
    assert result.locked_until == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_mfa_zero_lockout_means_none():
    assert MfaResult(is_valid=False, locked_until=0).locked_until is None
    assert MfaResult(valid=True).valid is True


async def test_mfa_http_error_is_unavailable(tmp_path):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    async with _client(handler) as client:
        with pytest.raises(MfaUnavailableError):
            await HttpMfaVerifier(client, make_settings(tmp_path)).verify("u", "123456")

    # Every call consumes an attempt on the verifier; never retried
    assert len(calls) == 1


async def test_mfa_malformed_body_is_unavailable(tmp_path):
    def handler(request):
        return httpx.Response(200, json={"ok": True})

    async with _client(handler) as client:
        with pytest.raises(MfaUnavailableError):
            await HttpMfaVerifier(client, make_settings(tmp_path)).verify("u", "123456")


# ----------------------------------------------------------------------
# Pinata
# ----------------------------------------------------------------------

def _pinata_settings(tmp_path):
    return make_settings(tmp_path, use_mock_ipfs=False, pinata_jwt="jwt-token")


async def test_pin_file_sends_multipart_with_metadata(tmp_path):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"IpfsHash": "QmPdf", "PinSize": 9})

    async with _client(handler) as client:
        store = PinataContentStore(client, _pinata_settings(tmp_path))
        cid = await store.upload_file(b"%PDF-1.7\n", "document-1.pdf", {"document_id": "1"})

    assert cid == "QmPdf"
    request = seen[0]
    assert request.url.path == "/pinning/pinFileToIPFS"
    assert request.headers["Authorization"] == "Bearer jwt-token"
    assert b"%PDF-1.7" in request.content
    assert b'name="pinataMetadata"' in request.content
    assert b'"document_id": "1"' in request.content


async def test_pin_json_wraps_content(tmp_path):
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"IpfsHash": "QmMeta"})

    async with _client(handler) as client:
        store = PinataContentStore(client, _pinata_settings(tmp_path))
        cid = await store.upload_json({"name": "Certificate"}, "meta.json", {"k": "v"})

    assert cid == "QmMeta"
    assert seen[0] == {
        "pinataContent": {"name": "Certificate"},
        "pinataMetadata": {"name": "meta.json", "keyvalues": {"k": "v"}},
    }


async def test_transport_errors_are_retried(tmp_path):
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"IpfsHash": "QmLate"})

    async with _client(handler) as client:
        store = PinataContentStore(client, _pinata_settings(tmp_path))
        assert await store.upload_json({}, "x.json", {}) == "QmLate"

    assert len(attempts) == 3


async def test_http_status_errors_are_not_retried(tmp_path):
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(401, json={"error": "bad jwt"})

    async with _client(handler) as client:
        store = PinataContentStore(client, _pinata_settings(tmp_path))
        with pytest.raises(ContentStoreError, match="HTTP 401"):
            await store.upload_json({}, "x.json", {})

    assert len(attempts) == 1


async def test_missing_ipfs_hash_is_error(tmp_path):
    async with _client(lambda request: httpx.Response(200, json={})) as client:
        store = PinataContentStore(client, _pinata_settings(tmp_path))
        with pytest.raises(ContentStoreError):
            await store.upload_json({}, "x.json", {})


async def test_fetch_reads_through_gateway(tmp_path):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, content=b"pdf-bytes")

    async with _client(handler) as client:
        store = PinataContentStore(client, _pinata_settings(tmp_path))
        assert await store.fetch("QmPdf") == b"pdf-bytes"

    assert str(seen[0].url) == "https://gateway.pinata.cloud/ipfs/QmPdf"


def test_live_store_settings_require_jwt(tmp_path):
    with pytest.raises(ValidationError, match="ISSUANCE_PINATA_JWT"):
        make_settings(tmp_path, use_mock_ipfs=False)


# ----------------------------------------------------------------------
# Mock store
# ----------------------------------------------------------------------

async def test_mock_store_is_content_addressed(tmp_path):
    store = build_content_store(make_settings(tmp_path))
    assert isinstance(store, MockContentStore)

    first = await store.upload_json({"b": 1, "a": 2}, "one.json", {})
    second = await store.upload_json({"a": 2, "b": 1}, "two.json", {})
    assert first == second
    assert first.startswith("Qm") and len(first) == 46
    assert store.gateway_url(first) == f"https://gateway.pinata.cloud/ipfs/{first}"

    with pytest.raises(ContentStoreError):
        await store.fetch("QmMissing")
