"""
Render payload construction per document category.

Document types are free-form catalogue entries; their *category* is
derived from the type name and selects a builder from the registry:

- CERTIFICATE, DIPLOMA: rendered from a certificate record
- TRANSCRIPT: rendered from the student's score rows
- GENERIC: anything else; no payload at request time, the template
  stored on the document type is used at approval

Builders run at request time and produce the snapshot persisted on the
document. ``rewrite_bindings`` runs at approval time and injects the
identities that only exist then (issuer, document id).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import TypeAdapter, ValidationError

from issuance.app.core.errors import NotFoundError, ValidationFailed
from issuance.app.db.models import DocumentType, ScoreBoard, User
from issuance.app.repositories.directory import DirectoryRepository
from issuance.app.schemas.render_payload import (
    QR_CODE_NAME,
    BindingKind,
    FieldBinding,
    RegisteredTemplate,
    RenderPayload,
    TemplateDescriptor,
)


class DocumentCategory(str, Enum):
    CERTIFICATE = "certificate"
    DIPLOMA = "diploma"
    TRANSCRIPT = "transcript"
    GENERIC = "generic"

    @classmethod
    def from_type_name(cls, name: str) -> "DocumentCategory":
        normalized = (name or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        return cls.GENERIC

    @property
    def is_simple(self) -> bool:
        """Simple categories carry all identities in their request-time snapshot."""
        return self is not DocumentCategory.GENERIC


TEMPLATE_PATHS: Dict[DocumentCategory, str] = {
    DocumentCategory.CERTIFICATE: "certificate/main.tex.jinja",
    DocumentCategory.DIPLOMA: "certificate/main.tex.jinja",
    DocumentCategory.TRANSCRIPT: "transcript/main.tex.jinja",
    DocumentCategory.GENERIC: "generic/main.tex.jinja",
}

@dataclass(frozen=True)
class BuildContext:
    requester: User
    document_type: DocumentType
    certificate_id: Optional[uuid.UUID]
    directory: DirectoryRepository


PayloadBuilder = Callable[[BuildContext], Awaitable[Optional[RenderPayload]]]


def _text(name: str, value: Any) -> FieldBinding:
    return FieldBinding(name=name, kind=BindingKind.TEXT, value=value)


def _approval_bindings() -> List[FieldBinding]:
    return [
        _text("issuer_name", ""),
        FieldBinding(name="signature", kind=BindingKind.SIGNATURE, value=""),
        FieldBinding(name=QR_CODE_NAME, kind=BindingKind.QR_CODE, value=""),
    ]


# ---------------------------------------------------------------------------
# Certificate / diploma
# ---------------------------------------------------------------------------

async def build_certificate_payload(ctx: BuildContext) -> RenderPayload:
    if ctx.certificate_id is None:
        raise ValidationFailed(
            f"certificate_id is required for {ctx.document_type.document_type_name} documents"
        )

    certificate = await ctx.directory.get_certificate(ctx.certificate_id)
    if certificate is None:
        raise NotFoundError(f"Certificate {ctx.certificate_id} not found")

    certificate_type = await ctx.directory.get_document_type(certificate.document_type_id)
    if certificate_type is None:
        raise NotFoundError(
            f"Document type {certificate.document_type_id} of certificate not found"
        )
    if certificate_type.document_type_id != ctx.document_type.document_type_id:
        raise ValidationFailed(
            f"Certificate is a '{certificate_type.document_type_name}', "
            f"not a '{ctx.document_type.document_type_name}'"
        )
    if certificate.user_id != ctx.requester.user_id:
        raise ValidationFailed("Certificate does not belong to the requester")

    category = DocumentCategory.from_type_name(ctx.document_type.document_type_name)
    return RenderPayload(
        template=RegisteredTemplate(path=TEMPLATE_PATHS[category]),
        bindings=[
            _text("document_title", ctx.document_type.document_type_name),
            _text("student_name", ctx.requester.full_name),
            _text("student_code", ctx.requester.student_code or ""),
            _text("description", certificate.description or ""),
            _text("issued_date", certificate.issued_date.isoformat()),
            _text(
                "expiry_date",
                certificate.expiry_date.isoformat() if certificate.expiry_date else "",
            ),
            _text("certificate_id", str(certificate.certificate_id)),
            *_approval_bindings(),
        ],
    )


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------

_SCORE_COLUMNS = ("score6", "score5", "score4", "score3", "score2", "score1")


def final_score(row: ScoreBoard) -> Optional[Decimal]:
    """Latest recorded assessment: the first non-null of score6 down to score1."""
    for column in _SCORE_COLUMNS:
        value = getattr(row, column)
        if value is not None:
            return Decimal(value)
    return None


def compute_gpa(rows: Sequence[ScoreBoard]) -> Tuple[int, Optional[float]]:
    """
    Credit-weighted mean of final scores, rounded half-up to 2 decimals.

    Rows with no score at all contribute neither score nor credits. The
    denominator is therefore the credits of scored rows only, not the
    credit total of every row, and ``total_credits`` on the transcript
    is the same counted sum.
    Returns (counted credits, gpa); gpa is None when no credits count.
    """
    weighted = Decimal(0)
    credits = 0
    for row in rows:
        score = final_score(row)
        if score is None:
            continue
        weighted += score * row.credits
        credits += row.credits

    if credits == 0:
        return 0, None

    gpa = (weighted / Decimal(credits)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return credits, float(gpa)


async def build_transcript_payload(ctx: BuildContext) -> RenderPayload:
    rows = await ctx.directory.list_score_rows(ctx.requester.user_id)
    if not rows:
        raise NotFoundError(f"No score records found for user {ctx.requester.user_id}")

    courses = []
    for row in rows:
        score = final_score(row)
        courses.append(
            {
                "course_id": row.course_id,
                "course_code": row.course_code or "",
                "course_name": row.course_name,
                "credits": row.credits,
                "semester": row.semester,
                "academic_year": row.academic_year or "",
                "final_score": str(score) if score is not None else None,
                "letter_grade": row.letter_grade or "",
            }
        )

    total_credits, gpa = compute_gpa(rows)
    return RenderPayload(
        template=RegisteredTemplate(path=TEMPLATE_PATHS[DocumentCategory.TRANSCRIPT]),
        bindings=[
            _text("document_title", ctx.document_type.document_type_name),
            _text("student_name", ctx.requester.full_name),
            _text("student_code", ctx.requester.student_code or ""),
            _text("major", ctx.requester.major or ""),
            FieldBinding(name="courses", kind=BindingKind.TABLE, value=courses),
            _text("total_credits", total_credits),
            _text("gpa", gpa),
            _text("course_count", len(courses)),
            *_approval_bindings(),
        ],
    )


async def build_generic_payload(ctx: BuildContext) -> None:
    return None


PAYLOAD_BUILDERS: Dict[DocumentCategory, PayloadBuilder] = {
    DocumentCategory.CERTIFICATE: build_certificate_payload,
    DocumentCategory.DIPLOMA: build_certificate_payload,
    DocumentCategory.TRANSCRIPT: build_transcript_payload,
    DocumentCategory.GENERIC: build_generic_payload,
}


async def build_request_payload(ctx: BuildContext) -> Optional[RenderPayload]:
    category = DocumentCategory.from_type_name(ctx.document_type.document_type_name)
    return await PAYLOAD_BUILDERS[category](ctx)


# ---------------------------------------------------------------------------
# Approval-time resolution
# ---------------------------------------------------------------------------

_descriptor_adapter: TypeAdapter = TypeAdapter(TemplateDescriptor)


def payload_from_stored_template(
    blob: str, document_type_name: str
) -> RenderPayload:
    """
    Interpret a document type's stored template.

    The blob is either a full render payload or a bare template
    descriptor; the latter gets the generic identity bindings.
    """
    try:
        return RenderPayload.parse_json(blob)
    except ValidationError:
        pass

    try:
        descriptor = _descriptor_adapter.validate_json(blob)
    except ValidationError as exc:
        raise ValidationFailed(
            f"Stored template for '{document_type_name}' is not a valid render template"
        ) from exc

    return RenderPayload(
        template=descriptor,
        bindings=[
            _text("document_title", document_type_name),
            _text("student_name", ""),
            _text("details", ""),
            *_approval_bindings(),
        ],
    )


def rewrite_bindings(
    payload: RenderPayload,
    category: DocumentCategory,
    *,
    document_id: str,
    student_name: str,
    issuer_name: str,
    signature: str,
    details: Any,
) -> RenderPayload:
    identities = {
        "student_name": student_name,
        "issuer_name": issuer_name,
        "signature": signature,
        "details": details,
    }

    rebound = []
    for binding in payload.bindings:
        if payload.is_qr_binding(binding):
            binding = binding.model_copy(update={"value": document_id})
        elif binding.name in identities and (
            not category.is_simple or binding.name in ("issuer_name", "signature")
        ):
            binding = binding.model_copy(update={"value": identities[binding.name]})
        rebound.append(binding)

    return payload.model_copy(update={"bindings": rebound})
