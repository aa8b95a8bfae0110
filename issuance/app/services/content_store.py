"""
Content-addressed storage for rendered documents and NFT metadata.

Two implementations share one interface:

- PinataContentStore pins to IPFS through the Pinata REST API and reads
  back through the configured gateway.
- MockContentStore derives identifiers locally and keeps content in
  memory, for development and tests.

Uploads are idempotent (same bytes, same CID), so transport errors are
retried. HTTP error statuses are not.
"""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any, Dict, Optional, Protocol

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from web3 import Web3

from issuance.app.core.config import Settings
from issuance.app.core.errors import UpstreamError

logger = logging.getLogger("issuance.content_store")


class ContentStoreError(UpstreamError):
    """Pinning or retrieval failed."""


class ContentStore(Protocol):
    async def upload_file(
        self, data: bytes, name: str, keyvalues: Dict[str, str]
    ) -> str:
        ...

    async def upload_json(
        self, obj: Dict[str, Any], name: str, keyvalues: Dict[str, str]
    ) -> str:
        ...

    async def fetch(self, cid: str) -> bytes:
        ...

    def gateway_url(self, cid: str) -> str:
        ...


def _gateway_url(gateway: str, cid: str) -> str:
    host = gateway.removeprefix("https://").removeprefix("http://").rstrip("/")
    return f"https://{host}/ipfs/{cid}"


# ---------------------------------------------------------------------------
# Pinata
# ---------------------------------------------------------------------------

_transport_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(min=1, max=8),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)


class PinataContentStore:
    """
    Async client for the Pinata pinning API.

    The JWT is read from settings on each request and never logged.
    """

    PIN_FILE_PATH = "/pinning/pinFileToIPFS"
    PIN_JSON_PATH = "/pinning/pinJSONToIPFS"

    def __init__(
        self,
        http_client: Annotated[
            httpx.AsyncClient,
            "Persistent HTTP client",
        ],
        settings: Annotated[
            Settings,
            "Application configuration",
        ],
    ):
        if settings.pinata_jwt is None:
            raise ValueError("Pinata JWT is required for the live content store")

        self.client = http_client
        self.settings = settings
        self.base_url = str(settings.pinata_api_url).rstrip("/")

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.pinata_jwt.get_secret_value()}",
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def upload_file(
        self, data: bytes, name: str, keyvalues: Dict[str, str]
    ) -> str:
        files = {"file": (name, data, "application/pdf")}
        form = {
            "pinataMetadata": json.dumps({"name": name, "keyvalues": keyvalues}),
        }
        body = await self._post(
            self.PIN_FILE_PATH, files=files, data=form, label=name
        )
        return self._cid_from(body, name)

    async def upload_json(
        self, obj: Dict[str, Any], name: str, keyvalues: Dict[str, str]
    ) -> str:
        payload = {
            "pinataContent": obj,
            "pinataMetadata": {"name": name, "keyvalues": keyvalues},
        }
        body = await self._post(self.PIN_JSON_PATH, json=payload, label=name)
        return self._cid_from(body, name)

    @_transport_retry
    async def fetch(self, cid: str) -> bytes:
        response = await self.client.get(
            self.gateway_url(cid),
            timeout=self.settings.upload_timeout,
        )
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.exception(
                "content_fetch_failed",
                extra={"cid": cid, "status_code": response.status_code},
            )
            raise ContentStoreError(f"Could not fetch {cid}") from exc
        return response.content

    def gateway_url(self, cid: str) -> str:
        return _gateway_url(self.settings.pinata_gateway, cid)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @_transport_retry
    async def _post(self, path: str, *, label: str, **kwargs: Any) -> Dict[str, Any]:
        response = await self.client.post(
            f"{self.base_url}{path}",
            headers=self._auth_headers(),
            timeout=self.settings.upload_timeout,
            **kwargs,
        )
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.exception(
                "content_pin_failed",
                extra={
                    "pin_name": label,
                    "status_code": response.status_code,
                    "response_body": response.text[:500],
                },
            )
            raise ContentStoreError(
                f"Pinning '{label}' failed with HTTP {response.status_code}"
            ) from exc
        return response.json()

    @staticmethod
    def _cid_from(body: Dict[str, Any], label: str) -> str:
        cid = body.get("IpfsHash")
        if not cid:
            raise ContentStoreError(f"Pinning '{label}' returned no IpfsHash")
        logger.info("content_pinned", extra={"pin_name": label, "cid": cid})
        return cid


# ---------------------------------------------------------------------------
# Mock
# ---------------------------------------------------------------------------

class MockContentStore:
    """
    Deterministic in-memory store.

    CIDs are ``Qm`` followed by 44 hex characters of the Keccak-256 of
    the content, so equal content always maps to equal identifiers.
    """

    def __init__(self, gateway: str = "gateway.pinata.cloud") -> None:
        self.gateway = gateway
        self.objects: Dict[str, bytes] = {}
        self.pins: Dict[str, Dict[str, Any]] = {}

    @staticmethod
    def derive_cid(data: bytes) -> str:
        return "Qm" + Web3.keccak(data).hex().removeprefix("0x")[:44]

    async def upload_file(
        self, data: bytes, name: str, keyvalues: Dict[str, str]
    ) -> str:
        return self._store(data, name, keyvalues)

    async def upload_json(
        self, obj: Dict[str, Any], name: str, keyvalues: Dict[str, str]
    ) -> str:
        data = json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return self._store(data, name, keyvalues)

    async def fetch(self, cid: str) -> bytes:
        try:
            return self.objects[cid]
        except KeyError:
            raise ContentStoreError(f"Unknown content identifier {cid}") from None

    def gateway_url(self, cid: str) -> str:
        return _gateway_url(self.gateway, cid)

    def _store(self, data: bytes, name: str, keyvalues: Dict[str, str]) -> str:
        cid = self.derive_cid(data)
        self.objects[cid] = data
        self.pins[cid] = {"name": name, "keyvalues": dict(keyvalues)}
        logger.info("content_pinned_mock", extra={"pin_name": name, "cid": cid})
        return cid


def build_content_store(
    settings: Settings, http_client: Optional[httpx.AsyncClient] = None
) -> ContentStore:
    if settings.use_mock_ipfs:
        return MockContentStore(settings.pinata_gateway)
    if http_client is None:
        raise ValueError("A shared HTTP client is required for the live content store")
    return PinataContentStore(http_client, settings)
