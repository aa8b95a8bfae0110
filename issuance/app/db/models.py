"""
Relational schema for the issuance service.

Only ``documents`` is written by this service. The remaining tables are
owned by neighbouring bounded contexts (identity, academic records,
wallet custody) and are mapped here read-only so the orchestrator can
resolve the data it renders and signs.
"""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Enumerations (stored as strings)
# ---------------------------------------------------------------------------

class DocumentStatus(str, enum.Enum):
    """Lifecycle states of an issued document."""

    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    PENDING_BLOCKCHAIN = "pending_blockchain"
    MINTED = "minted"
    REVOKED = "revoked"
    REJECTED = "rejected"
    FAILED = "failed"


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    TEACHER = "teacher"
    STUDENT = "student"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


# ---------------------------------------------------------------------------
# Read-only reference tables
# ---------------------------------------------------------------------------

class User(Base):
    __tablename__ = "user"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    first_name: Mapped[str] = mapped_column(String(120))
    last_name: Mapped[str] = mapped_column(String(120))
    email: Mapped[str] = mapped_column(String(255), unique=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, native_enum=False, length=16, values_callable=_enum_values)
    )
    student_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    major: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Wallet(Base):
    __tablename__ = "wallet"

    wallet_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, index=True)
    address: Mapped[str] = mapped_column(String(42))
    private_key: Mapped[str] = mapped_column(Text, default="")
    public_key: Mapped[str] = mapped_column(Text, default="")
    chain_type: Mapped[str] = mapped_column(String(32), default="evm")
    network_id: Mapped[str] = mapped_column(String(32), default="")
    status: Mapped[str] = mapped_column(String(32), default="active")
    last_used_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class DocumentType(Base):
    __tablename__ = "document_type"

    document_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    document_type_name: Mapped[str] = mapped_column(String(120), unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Stored render template (render payload or bare template descriptor, JSON text)
    template_pdf: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class Certificate(Base):
    __tablename__ = "certificate"

    certificate_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    document_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("document_type.document_type_id")
    )
    issued_date: Mapped[date] = mapped_column(Date)
    expiry_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata", JSONType, nullable=True
    )


class ScoreBoard(Base):
    __tablename__ = "score_board"

    score_board_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    course_id: Mapped[str] = mapped_column(String(64))
    course_name: Mapped[str] = mapped_column(String(255))
    course_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    credits: Mapped[int] = mapped_column(Integer)
    score1: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    score2: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    score3: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    score4: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    score5: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    score6: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    letter_grade: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    semester: Mapped[str] = mapped_column(String(32))
    academic_year: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    metadata_: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata", JSONType, nullable=True
    )


# ---------------------------------------------------------------------------
# Documents (owned by this service)
# ---------------------------------------------------------------------------

class Document(Base):
    __tablename__ = "documents"

    document_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    issuer_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    document_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("document_type.document_type_id")
    )

    # Ledger references (all-or-nothing, set on successful mint)
    blockchain_doc_id: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    token_id: Mapped[Optional[str]] = mapped_column(String(78), nullable=True, index=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    contract_address: Mapped[str] = mapped_column(String(42))

    # Content store
    ipfs_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    pdf_ipfs_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    document_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    metadata_: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONType, default=dict
    )
    render_payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSONType, nullable=True
    )

    status: Mapped[DocumentStatus] = mapped_column(
        Enum(
            DocumentStatus,
            native_enum=False,
            length=32,
            values_callable=_enum_values,
        ),
        default=DocumentStatus.DRAFT,
        index=True,
    )
    is_valid: Mapped[bool] = mapped_column(Boolean, default=False)

    issued_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    verified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    document_type: Mapped[DocumentType] = relationship(lazy="selectin")
