import logging
import uuid
from datetime import timedelta
from typing import Annotated, Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import Response

from issuance.app.core.errors import AuthError, ForbiddenError
from issuance.app.db.models import DocumentStatus, UserRole
from issuance.app.orchestrator.issuance import DocumentsService
from issuance.app.schemas.documents import (
    ApproveDocumentInput,
    DocumentPage,
    DocumentTypeView,
    DocumentView,
    RejectDocumentInput,
    RequestDocumentInput,
    VerificationResult,
)

logger = logging.getLogger("issuance.api")

router = APIRouter(prefix="/documents", tags=["Documents"])

# =============================================================================
# Dependency providers
# =============================================================================


class Caller:
    """Identity asserted by the upstream gateway."""

    def __init__(self, user_id: uuid.UUID, role: UserRole) -> None:
        self.user_id = user_id
        self.role = role


def get_caller(
    x_user_id: Annotated[
        Optional[str],
        Header(description="Authenticated user id, set by the gateway"),
    ] = None,
    x_user_role: Annotated[
        Optional[str],
        Header(description="Authenticated user role, set by the gateway"),
    ] = None,
) -> Caller:
    if not x_user_id or not x_user_role:
        raise AuthError("Authentication required")
    try:
        return Caller(uuid.UUID(x_user_id), UserRole(x_user_role.lower()))
    except ValueError as exc:
        raise AuthError("Malformed caller identity") from exc


def require_roles(*roles: UserRole):
    def dependency(caller: Annotated[Caller, Depends(get_caller)]) -> Caller:
        if caller.role not in roles:
            logger.warning(
                "role_denied",
                extra={"user_id": str(caller.user_id), "role": caller.role.value},
            )
            raise ForbiddenError(
                f"Role '{caller.role.value}' may not perform this action"
            )
        return caller

    return dependency


def get_documents_service(request: Request) -> DocumentsService:
    service = getattr(request.app.state, "documents_service", None)
    if service is None:
        raise RuntimeError("documents service not initialized")
    return service


Service = Annotated[DocumentsService, Depends(get_documents_service)]
Student = Annotated[Caller, Depends(require_roles(UserRole.STUDENT))]
Approver = Annotated[Caller, Depends(require_roles(UserRole.MANAGER, UserRole.ADMIN))]
Admin = Annotated[Caller, Depends(require_roles(UserRole.ADMIN))]
Authenticated = Annotated[Caller, Depends(get_caller)]


# =============================================================================
# Public
# =============================================================================

@router.get("/types", response_model=List[DocumentTypeView], summary="Document type catalogue")
async def list_document_types(service: Service):
    return await service.get_document_types()


@router.get(
    "/verify/{token_id}",
    response_model=VerificationResult,
    summary="Verify a document token against the ledger",
)
async def verify_document(token_id: str, service: Service):
    outcome = await service.verify_document(token_id)
    return VerificationResult(
        token_id=outcome.token_id,
        valid=outcome.valid,
        owner=outcome.owner,
        blockchain=outcome.blockchain,
        database=(
            DocumentView.model_validate(outcome.document)
            if outcome.document is not None
            else None
        ),
    )


# =============================================================================
# Student
# =============================================================================

@router.post(
    "/request",
    response_model=DocumentView,
    status_code=201,
    summary="Request a document (creates a draft)",
)
async def request_document(body: RequestDocumentInput, caller: Student, service: Service):
    return await service.request_document(
        caller.user_id,
        body.document_type_id,
        body.authenticator_code,
        metadata=body.metadata,
        certificate_id=body.certificate_id,
    )


@router.get("/my", response_model=List[DocumentView], summary="Caller's own documents")
async def my_documents(caller: Authenticated, service: Service):
    return await service.get_student_documents(caller.user_id)


# =============================================================================
# Manager / admin
# =============================================================================

@router.get("", response_model=DocumentPage, summary="List documents")
async def list_documents(
    caller: Approver,
    service: Service,
    status: Optional[DocumentStatus] = None,
    sort_by: Literal["created_at", "updated_at", "issued_at"] = "created_at",
    order: Literal["asc", "desc"] = "desc",
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
):
    items, total = await service.get_all_documents(
        status=status, sort_by=sort_by, order=order, page=page, page_size=page_size
    )
    return DocumentPage(
        items=[DocumentView.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/stuck",
    response_model=List[DocumentView],
    summary="Documents claimed for minting that never completed",
)
async def stuck_documents(
    caller: Admin,
    service: Service,
    older_than_minutes: Annotated[Optional[int], Query(ge=1)] = None,
):
    threshold = timedelta(minutes=older_than_minutes) if older_than_minutes else None
    return await service.list_stuck_documents(threshold)


@router.get("/student/{user_id}", response_model=List[DocumentView])
async def student_documents(user_id: uuid.UUID, caller: Approver, service: Service):
    return await service.get_student_documents(user_id)


@router.get("/student/{user_id}/tokens", response_model=List[str])
async def student_tokens(user_id: uuid.UUID, caller: Approver, service: Service):
    return await service.get_student_tokens(user_id)


@router.post(
    "/{document_id}/approve",
    response_model=DocumentView,
    summary="Approve, render, upload and mint a document",
)
async def approve_document(
    document_id: uuid.UUID,
    body: ApproveDocumentInput,
    caller: Approver,
    service: Service,
):
    return await service.approve_and_sign_document(
        document_id,
        caller.user_id,
        body.authenticator_code,
        render_template=body.render_template,
    )


@router.post("/{document_id}/reject", response_model=DocumentView)
async def reject_document(
    document_id: uuid.UUID,
    body: RejectDocumentInput,
    caller: Approver,
    service: Service,
):
    return await service.reject_document(document_id, body.reason)


@router.post("/{document_id}/revoke", response_model=DocumentView)
async def revoke_document(document_id: uuid.UUID, caller: Admin, service: Service):
    return await service.revoke_document(document_id)


# =============================================================================
# Any authenticated caller
# =============================================================================

@router.get("/{document_id}", response_model=DocumentView)
async def get_document(document_id: uuid.UUID, caller: Authenticated, service: Service):
    document = await service.get_document_by_id(document_id)
    _ensure_visible(caller, document.user_id)
    return document


@router.get(
    "/{document_id}/pdf",
    response_class=Response,
    responses={200: {"content": {"application/pdf": {}}}},
)
async def get_document_pdf(document_id: uuid.UUID, caller: Authenticated, service: Service):
    document = await service.get_document_by_id(document_id)
    _ensure_visible(caller, document.user_id)
    pdf = await service.get_document_pdf(document_id)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="document-{document_id}.pdf"'},
    )


@router.get("/{document_id}/chain", response_model=Dict[str, Any])
async def get_document_chain_record(
    document_id: uuid.UUID, caller: Authenticated, service: Service
):
    document = await service.get_document_by_id(document_id)
    _ensure_visible(caller, document.user_id)
    return await service.get_document_chain_record(document_id)


def _ensure_visible(caller: Caller, owner_id: uuid.UUID) -> None:
    if caller.role is UserRole.STUDENT and caller.user_id != owner_id:
        raise ForbiddenError("Students may only access their own documents")
