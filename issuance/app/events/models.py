from __future__ import annotations

from typing import Any, Dict, Optional
from enum import Enum
from datetime import datetime, timezone
from uuid import uuid4, UUID

from pydantic import BaseModel, Field, ConfigDict


# ----------------------------------------------------------------------
# Event Types (Finite and Versioned)
# ----------------------------------------------------------------------
class IssuanceEventType(str, Enum):
    """
    Progression events emitted while a document moves through issuance.

    NOTE:
    This enum is finite and versioned.
    New entries must preserve observational semantics.
    """

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------
    DOCUMENT_REQUESTED = "document_requested"

    # ------------------------------------------------------------------
    # Approval saga
    # ------------------------------------------------------------------
    APPROVAL_STARTED = "approval_started"
    DOCUMENT_CLAIMED = "document_claimed"
    RENDER_COMPLETED = "render_completed"
    FILE_UPLOADED = "file_uploaded"
    METADATA_UPLOADED = "metadata_uploaded"
    MINT_COMPLETED = "mint_completed"
    APPROVAL_COMPLETED = "approval_completed"
    APPROVAL_FAILED = "approval_failed"

    # Mint succeeded, final save did not
    LEDGER_DIVERGENCE = "ledger_divergence"

    # ------------------------------------------------------------------
    # Post-issuance
    # ------------------------------------------------------------------
    DOCUMENT_VERIFIED = "document_verified"
    DOCUMENT_REVOKED = "document_revoked"
    DOCUMENT_REJECTED = "document_rejected"


# ----------------------------------------------------------------------
# Event Model
# ----------------------------------------------------------------------
class IssuanceEvent(BaseModel):
    """
    An immutable observation of a document lifecycle step.

    Events are:
    - strictly observational
    - transport-agnostic
    - not authoritative (the documents table is)
    """

    event_id: UUID = Field(default_factory=uuid4)
    document_id: str = Field(..., description="The document the event is about")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    event_type: IssuanceEventType

    # Optional contextual metadata (cids, tx hash, error type, ...)
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )
