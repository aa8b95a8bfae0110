"""
Request and response models for the documents API.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from issuance.app.db.models import DocumentStatus


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

AuthenticatorCode = Annotated[
    str,
    Field(
        min_length=4,
        max_length=12,
        description="One-time code from the caller's authenticator app",
    ),
]


class RequestDocumentInput(BaseModel):
    document_type_id: uuid.UUID
    authenticator_code: AuthenticatorCode
    metadata: Optional[Dict[str, Any]] = None
    certificate_id: Optional[uuid.UUID] = None

    model_config = ConfigDict(extra="forbid")


class ApproveDocumentInput(BaseModel):
    authenticator_code: AuthenticatorCode
    render_template: Optional[str] = Field(
        default=None,
        description="Raw JSON render payload overriding the stored snapshot",
    )

    model_config = ConfigDict(extra="forbid")


class RejectDocumentInput(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)

    model_config = ConfigDict(extra="forbid")


class DocumentListQuery(BaseModel):
    status: Optional[DocumentStatus] = None
    sort_by: Literal["created_at", "updated_at", "issued_at"] = "created_at"
    order: Literal["asc", "desc"] = "desc"
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------

class DocumentTypeView(BaseModel):
    document_type_id: uuid.UUID
    document_type_name: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class DocumentView(BaseModel):
    document_id: uuid.UUID
    user_id: uuid.UUID
    issuer_id: uuid.UUID
    document_type_id: uuid.UUID
    document_type: Optional[DocumentTypeView] = None

    status: DocumentStatus
    is_valid: bool

    blockchain_doc_id: Optional[str] = None
    token_id: Optional[str] = None
    tx_hash: Optional[str] = None
    contract_address: str

    ipfs_hash: Optional[str] = None
    pdf_ipfs_hash: Optional[str] = None
    document_hash: Optional[str] = None

    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("metadata_", "metadata"),
    )
    render_payload: Optional[Dict[str, Any]] = None

    issued_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DocumentPage(BaseModel):
    items: List[DocumentView]
    total: int
    page: int
    page_size: int


class VerificationResult(BaseModel):
    token_id: str
    valid: bool
    owner: str
    blockchain: Dict[str, Any]
    database: Optional[DocumentView] = None
