"""
Error taxonomy for the issuance service.

Every error the orchestrator raises toward a caller derives from
IssuanceError and carries the HTTP status it maps to. Collaborators
raise UpstreamError (or their own transport errors); the saga wraps
those into ValidationFailed once a document has been claimed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional


class IssuanceError(Exception):
    """Base class for caller-visible issuance errors."""

    status_code: int = 400
    error_code: str = "issuance_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.error_code, "detail": self.message}


class NotFoundError(IssuanceError):
    """A referenced entity (type, document, certificate, wallet, ...) is missing."""

    status_code = 404
    error_code = "not_found"


class AuthError(IssuanceError):
    """
    MFA verification rejected the caller.

    When the verifier reported a lockout, ``locked_until`` carries the
    time at which a new attempt will be accepted.
    """

    status_code = 401
    error_code = "unauthorized"

    def __init__(
        self,
        message: str,
        *,
        reason: str = "",
        locked_until: Optional[datetime] = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.locked_until = locked_until

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        if self.reason:
            payload["reason"] = self.reason
        if self.locked_until is not None:
            payload["locked_until"] = self.locked_until.isoformat()
        return payload


class ForbiddenError(AuthError):
    """Privileged action refused (approver MFA failure, role mismatch)."""

    status_code = 403
    error_code = "forbidden"


class ValidationFailed(IssuanceError):
    """Request cannot be honoured as given, or an upstream step failed."""

    error_code = "validation_failed"


class PreconditionFailed(ValidationFailed):
    """The document is not in a state that allows the requested transition."""

    error_code = "precondition_failed"

    def __init__(self, message: str, *, current_status: Optional[str] = None) -> None:
        super().__init__(message)
        self.current_status = current_status

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        if self.current_status is not None:
            payload["current_status"] = self.current_status
        return payload


class DomainError(IssuanceError):
    """Operation is meaningless for this document (e.g. revoke before mint)."""

    error_code = "domain_error"


class LedgerDivergenceError(ValidationFailed):
    """
    The ledger holds a minted token the database could not record.

    Raised only when minting succeeded and the final repository write
    failed. The on-chain identifiers are attached for reconciliation.
    """

    error_code = "ledger_divergence"

    def __init__(self, message: str, *, chain_record: Dict[str, Any]) -> None:
        super().__init__(message)
        self.chain_record = chain_record


class UpstreamError(RuntimeError):
    """Raised by collaborators (content store, ledger, renderer) on failure."""


class MfaUnavailableError(UpstreamError):
    """The MFA verifier could not be reached or answered malformed data."""
