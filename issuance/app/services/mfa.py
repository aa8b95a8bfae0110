"""
Client for the MFA verification service.

The MFA service owns authenticator secrets and attempt counters. This
client only asks it whether a one-time code is valid for a user and
relays the answer, including any lockout the service has imposed.

Transport failures and malformed answers surface as
MfaUnavailableError so callers can tell "the code is wrong" apart from
"nobody could check the code".
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Annotated, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from issuance.app.core.config import Settings
from issuance.app.core.errors import MfaUnavailableError

logger = logging.getLogger("issuance.mfa")


class MfaResult(BaseModel):
    valid: bool = Field(..., alias="is_valid")
    reason: str = ""
    message: str = ""
    locked_until: Optional[datetime] = None

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @field_validator("locked_until", mode="before")
    @classmethod
    def epoch_or_iso(cls, v):
        # The service reports lockouts as epoch seconds; 0 means "no lockout"
        if v in (None, "", 0, "0"):
            return None
        if isinstance(v, (int, float)) or (isinstance(v, str) and v.isdigit()):
            return datetime.fromtimestamp(float(v), tz=timezone.utc)
        return v


class MfaVerifier(Protocol):
    async def verify(self, user_id: str, code: str) -> MfaResult:
        ...


class HttpMfaVerifier:
    """
    Async HTTP client for ``POST /v1/mfa/verify``.

    Never retries: every call consumes an attempt on the MFA side.
    """

    VERIFY_PATH = "/v1/mfa/verify"

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
        self.client = http_client
        self.settings = settings
        self.base_url = str(settings.mfa_service_url).rstrip("/")

    async def verify(self, user_id: str, code: str) -> MfaResult:
        try:
            response = await self.client.post(
                f"{self.base_url}{self.VERIFY_PATH}",
                json={"user_id": user_id, "authenticator_code": code},
                timeout=self.settings.mfa_timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.exception(
                "mfa_verification_unavailable",
                extra={"user_id": user_id, "error_type": type(exc).__name__},
            )
            raise MfaUnavailableError(
                f"MFA verification unavailable: {exc}"
            ) from exc

        try:
            result = MfaResult.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise MfaUnavailableError(
                "MFA service returned a malformed response"
            ) from exc

        logger.info(
            "mfa_verification_result",
            extra={"user_id": user_id, "valid": result.valid, "reason": result.reason},
        )
        return result
