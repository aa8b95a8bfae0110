"""
Document issuance orchestrator.

DocumentsService owns the document lifecycle:

    request  -> DRAFT
    approve  -> PENDING_BLOCKCHAIN -> render -> upload -> mint -> MINTED
                (any failure after the claim)                -> FAILED
    reject   -> REJECTED
    revoke   -> REVOKED

Consistency contract:
- Nothing is written before the approval claim. Pre-claim failures leave
  the document untouched.
- The claim (conditional UPDATE to PENDING_BLOCKCHAIN) is committed
  before any upload or mint. A crash after it leaves the document
  visibly stuck rather than silently lost.
- After the claim, every failure marks the document FAILED and surfaces
  as ValidationFailed. Uploaded content and sent transactions are not
  compensated.
- If the mint succeeded but the final write did not, the ledger and the
  database disagree. That is logged at CRITICAL, recorded on the
  document when possible and raised as LedgerDivergenceError.

Every collaborator call is bounded by a per-collaborator timeout from
Settings. Events are observational; a failing emitter never changes the
outcome of an operation.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar

import anyio
import httpx
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from issuance.app.core.config import Settings
from issuance.app.core.errors import (
    AuthError,
    DomainError,
    ForbiddenError,
    LedgerDivergenceError,
    NotFoundError,
    PreconditionFailed,
    UpstreamError,
    ValidationFailed,
)
from issuance.app.db.models import Document, DocumentStatus, DocumentType, User
from issuance.app.events import (
    IssuanceEvent,
    IssuanceEventEmitter,
    IssuanceEventType,
    NullEventEmitter,
)
from issuance.app.orchestrator.payload_builders import (
    BuildContext,
    DocumentCategory,
    build_request_payload,
    payload_from_stored_template,
    rewrite_bindings,
)
from issuance.app.orchestrator.state_machine import (
    TRANSITIONS,
    Operation,
    require_transition,
)
from issuance.app.repositories.directory import DirectoryRepository
from issuance.app.repositories.documents import DocumentRepository
from issuance.app.schemas.documents import DocumentListQuery
from issuance.app.schemas.render_payload import RenderPayload
from issuance.app.services.content_store import ContentStore, build_content_store
from issuance.app.services.ledger import (
    LedgerClient,
    MintReceipt,
    StudentProfile,
    build_ledger_client,
)
from issuance.app.services.mfa import HttpMfaVerifier, MfaVerifier
from issuance.app.services.renderer import LatexRenderer
from issuance.app.utils.hashing import canonical_json_bytes, compute_integrity_digest

logger = logging.getLogger("issuance.orchestrator")

T = TypeVar("T")

# Metadata keys written by the service itself, never rendered as details
_RESERVED_METADATA_KEYS = frozenset({"certificate_id", "rejection", "reconciliation"})


@dataclass(frozen=True)
class DocumentVerification:
    token_id: str
    valid: bool
    owner: str
    blockchain: Dict[str, Any]
    document: Optional[Document]


@dataclass(frozen=True)
class IssuedArtifacts:
    receipt: MintReceipt
    pdf_cid: str
    metadata_cid: str
    document_hash: str

    def chain_record(self) -> Dict[str, str]:
        return {
            "tx_hash": self.receipt.tx_hash,
            "token_id": self.receipt.token_id,
            "blockchain_doc_id": self.receipt.chain_doc_id,
            "ipfs_hash": self.metadata_cid,
            "pdf_ipfs_hash": self.pdf_cid,
            "document_hash": self.document_hash,
        }


class DocumentsService:
    """
    The issuance saga and its read-side queries.

    All collaborators are injected; ``from_config`` is the composition
    root used by the application.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        documents: DocumentRepository,
        directory: DirectoryRepository,
        mfa: MfaVerifier,
        content_store: ContentStore,
        ledger: LedgerClient,
        renderer: LatexRenderer,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.documents = documents
        self.directory = directory
        self.mfa = mfa
        self.content_store = content_store
        self.ledger = ledger
        self.renderer = renderer
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_config(
        cls,
        settings: Settings,
        *,
        sessions: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient,
    ) -> "DocumentsService":
        return cls(
            settings=settings,
            documents=DocumentRepository(sessions),
            directory=DirectoryRepository(sessions),
            mfa=HttpMfaVerifier(http_client, settings),
            content_store=build_content_store(settings, http_client),
            ledger=build_ledger_client(settings),
            renderer=LatexRenderer(settings),
        )

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    async def request_document(
        self,
        user_id: uuid.UUID,
        document_type_id: uuid.UUID,
        authenticator_code: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        certificate_id: Optional[uuid.UUID] = None,
        emitter: Optional[IssuanceEventEmitter] = None,
    ) -> Document:
        emitter = emitter or NullEventEmitter()

        requester = await self._require_user(user_id)
        await self._verify_mfa(user_id, authenticator_code, error_cls=AuthError)

        document_type = await self.directory.get_document_type(document_type_id)
        if document_type is None:
            raise NotFoundError(f"Document type {document_type_id} not found")

        payload = await build_request_payload(
            BuildContext(
                requester=requester,
                document_type=document_type,
                certificate_id=certificate_id,
                directory=self.directory,
            )
        )

        stored_metadata = dict(metadata or {})
        if certificate_id is not None:
            stored_metadata["certificate_id"] = str(certificate_id)

        document = await self.documents.add(
            Document(
                document_id=uuid.uuid4(),
                user_id=requester.user_id,
                issuer_id=requester.user_id,
                document_type_id=document_type.document_type_id,
                contract_address=self.settings.issuance_contract_address,
                metadata_=stored_metadata,
                render_payload=payload.model_dump(mode="json") if payload else None,
                status=DocumentStatus.DRAFT,
                is_valid=False,
            )
        )

        logger.info(
            "document_requested",
            extra={
                "document_id": str(document.document_id),
                "user_id": str(user_id),
                "document_type": document_type.document_type_name,
                "has_snapshot": payload is not None,
            },
        )
        await self._emit(
            emitter,
            document.document_id,
            IssuanceEventType.DOCUMENT_REQUESTED,
            {"document_type": document_type.document_type_name},
        )
        return document

    # ------------------------------------------------------------------
    # Approve (the saga)
    # ------------------------------------------------------------------

    async def approve_and_sign_document(
        self,
        document_id: uuid.UUID,
        approver_id: uuid.UUID,
        authenticator_code: str,
        *,
        render_template: Optional[str] = None,
        emitter: Optional[IssuanceEventEmitter] = None,
    ) -> Document:
        emitter = emitter or NullEventEmitter()

        # ----------------------------------------------------------
        # 1. Preconditions (no writes)
        # ----------------------------------------------------------
        approver = await self._require_user(approver_id)
        await self._verify_mfa(approver_id, authenticator_code, error_cls=ForbiddenError)

        document = await self._require_document(document_id)
        require_transition(Operation.CLAIM, document.status)

        wallet = await self.directory.get_wallet_for_user(document.user_id)
        if wallet is None:
            raise NotFoundError(f"Wallet for user {document.user_id} not found")
        if not (wallet.address or "").strip():
            raise ValidationFailed(f"Wallet for user {document.user_id} has no address")

        try:
            chain_id = await self._bounded(
                "resolve_chain_id",
                self.settings.ledger_read_timeout,
                self.ledger.resolve_chain_id,
                wallet.address,
            )
            profile = await self._bounded(
                "get_student_profile",
                self.settings.ledger_read_timeout,
                self.ledger.get_student_profile,
                chain_id,
            )
        except Exception as exc:
            raise ValidationFailed(
                f"Could not resolve blockchain identity for wallet {wallet.address}: {exc}"
            ) from exc

        if not profile.is_active:
            raise PreconditionFailed(
                f"Student {chain_id} is not active on the ledger",
                current_status=document.status.value,
            )

        owner = await self.directory.get_user(document.user_id)

        await self._emit(
            emitter,
            document_id,
            IssuanceEventType.APPROVAL_STARTED,
            {"approver_id": str(approver_id), "student_chain_id": chain_id},
        )

        # ----------------------------------------------------------
        # 2. Claim (durability boundary)
        # ----------------------------------------------------------
        claim = TRANSITIONS[Operation.CLAIM]
        claimed = await self.documents.transition(
            document_id,
            from_statuses=claim.sources,
            values={"status": claim.target, "issuer_id": approver_id},
        )
        if not claimed:
            current = await self.documents.get(document_id)
            current_status = current.status.value if current else "unknown"
            raise PreconditionFailed(
                f"Cannot approve document with status: {current_status}",
                current_status=current_status,
            )

        logger.info(
            "document_claimed",
            extra={"document_id": str(document_id), "approver_id": str(approver_id)},
        )
        await self._emit(emitter, document_id, IssuanceEventType.DOCUMENT_CLAIMED)

        # ----------------------------------------------------------
        # 3. Render, upload, mint
        # ----------------------------------------------------------
        try:
            artifacts = await self._issue(
                document=document,
                approver=approver,
                owner=owner,
                profile=profile,
                render_template=render_template,
                emitter=emitter,
            )
        except Exception as exc:
            await self._mark_failed(document_id, exc)
            await self._emit(
                emitter,
                document_id,
                IssuanceEventType.APPROVAL_FAILED,
                {"error_type": type(exc).__name__, "message": str(exc)},
            )
            message = exc.message if isinstance(exc, ValidationFailed) else str(exc)
            raise ValidationFailed(
                f"Document issuance failed: {message or type(exc).__name__}"
            ) from exc

        # ----------------------------------------------------------
        # 4. Finalize
        # ----------------------------------------------------------
        now = self._clock()
        success = TRANSITIONS[Operation.MINT_SUCCEEDED]
        try:
            finalized = await self.documents.transition(
                document_id,
                from_statuses=success.sources,
                values={
                    **artifacts.chain_record(),
                    "status": success.target,
                    "is_valid": True,
                    "issued_at": now,
                    "verified_at": now,
                },
            )
            if not finalized:
                raise RuntimeError("document left pending_blockchain while minting")
        except Exception as exc:
            await self._record_divergence(document, artifacts, exc, emitter)
            raise LedgerDivergenceError(
                f"Document {document_id} was minted as token "
                f"{artifacts.receipt.token_id} but could not be recorded",
                chain_record=artifacts.chain_record(),
            ) from exc

        logger.info(
            "document_minted",
            extra={
                "document_id": str(document_id),
                "token_id": artifacts.receipt.token_id,
                "tx_hash": artifacts.receipt.tx_hash,
            },
        )
        await self._emit(
            emitter,
            document_id,
            IssuanceEventType.APPROVAL_COMPLETED,
            {"token_id": artifacts.receipt.token_id, "tx_hash": artifacts.receipt.tx_hash},
        )
        return await self._require_document(document_id)

    async def _issue(
        self,
        *,
        document: Document,
        approver: User,
        owner: Optional[User],
        profile: StudentProfile,
        render_template: Optional[str],
        emitter: IssuanceEventEmitter,
    ) -> IssuedArtifacts:
        document_id = str(document.document_id)
        document_type = document.document_type
        type_name = document_type.document_type_name
        category = DocumentCategory.from_type_name(type_name)

        student_name = owner.full_name if owner else profile.display_name
        student_code = (owner.student_code if owner else None) or profile.student_code or ""

        payload = self._resolve_render_payload(document, render_template)
        payload = rewrite_bindings(
            payload,
            category,
            document_id=document_id,
            student_name=student_name,
            issuer_name=approver.full_name,
            signature=f"Digitally approved by {approver.full_name}",
            details=self._details(document.metadata_),
        )
        await self.documents.update(
            document.document_id, {"render_payload": payload.model_dump(mode="json")}
        )

        pdf = await self._bounded(
            "render", self.settings.render_timeout, self.renderer.render, payload
        )
        await self._emit(
            emitter,
            document.document_id,
            IssuanceEventType.RENDER_COMPLETED,
            {"pdf_bytes": len(pdf)},
        )

        keyvalues = {
            "document_id": document_id,
            "document_type": type_name,
            "student_code": student_code,
        }
        pdf_cid = await self._bounded(
            "upload_file",
            self.settings.upload_timeout,
            self.content_store.upload_file,
            pdf,
            f"document-{document_id}.pdf",
            keyvalues,
        )
        await self._emit(
            emitter, document.document_id, IssuanceEventType.FILE_UPLOADED, {"cid": pdf_cid}
        )

        nft_metadata = self._nft_metadata(
            document_id=document_id,
            document_type=document_type,
            student_name=student_name,
            student_code=student_code,
            major=owner.major if owner else None,
            pdf_cid=pdf_cid,
        )
        metadata_cid = await self._bounded(
            "upload_json",
            self.settings.upload_timeout,
            self.content_store.upload_json,
            nft_metadata,
            f"document-{document_id}-metadata.json",
            keyvalues,
        )
        document_hash = compute_integrity_digest(canonical_json_bytes(nft_metadata))
        await self._emit(
            emitter,
            document.document_id,
            IssuanceEventType.METADATA_UPLOADED,
            {"cid": metadata_cid, "document_hash": document_hash},
        )

        receipt = await self._bounded(
            "mint",
            self.settings.mint_timeout,
            self.ledger.mint,
            profile.chain_id,
            type_name,
            document_hash,
            f"ipfs://{metadata_cid}",
        )
        await self._emit(
            emitter,
            document.document_id,
            IssuanceEventType.MINT_COMPLETED,
            {"token_id": receipt.token_id, "tx_hash": receipt.tx_hash},
        )

        return IssuedArtifacts(
            receipt=receipt,
            pdf_cid=pdf_cid,
            metadata_cid=metadata_cid,
            document_hash=document_hash,
        )

    def _resolve_render_payload(
        self, document: Document, render_template: Optional[str]
    ) -> RenderPayload:
        if render_template is not None and render_template.strip():
            try:
                payload = RenderPayload.parse_json(render_template)
            except ValidationError as exc:
                raise ValidationFailed(f"Malformed render template: {exc}") from exc
        elif document.render_payload:
            try:
                payload = RenderPayload.model_validate(document.render_payload)
            except ValidationError as exc:
                raise ValidationFailed(f"Stored render payload is invalid: {exc}") from exc
        elif document.document_type.template_pdf:
            payload = payload_from_stored_template(
                document.document_type.template_pdf,
                document.document_type.document_type_name,
            )
        else:
            raise ValidationFailed(
                "No render template available; supply one to approve this document"
            )

        if not payload.bindings:
            raise ValidationFailed("Render template has no bound inputs")
        return payload

    @staticmethod
    def _details(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            key: value
            for key, value in (metadata or {}).items()
            if key not in _RESERVED_METADATA_KEYS
        }

    def _nft_metadata(
        self,
        *,
        document_id: str,
        document_type: DocumentType,
        student_name: str,
        student_code: str,
        major: Optional[str],
        pdf_cid: str,
    ) -> Dict[str, Any]:
        type_name = document_type.document_type_name
        file_url = self.content_store.gateway_url(pdf_cid)

        if self.settings.public_verify_url:
            external_url = f"{self.settings.public_verify_url.rstrip('/')}/{document_id}"
        else:
            external_url = file_url

        attributes: List[Dict[str, Any]] = [
            {"trait_type": "Document Type", "value": type_name},
            {"trait_type": "Student Code", "value": student_code},
        ]
        if major:
            attributes.append({"trait_type": "Major", "value": major})
        attributes.extend(
            [
                {"trait_type": "Issue Date", "value": self._clock().date().isoformat()},
                {"trait_type": "Validity", "value": "Valid"},
            ]
        )

        return {
            "name": f"{type_name} - {student_name}",
            "description": document_type.description
            or f"{type_name} issued to {student_name}",
            "image": file_url,
            "file": file_url,
            "external_url": external_url,
            "attributes": attributes,
        }

    async def _mark_failed(self, document_id: uuid.UUID, cause: BaseException) -> None:
        failed = TRANSITIONS[Operation.MINT_FAILED]
        logger.exception(
            "document_issuance_failed",
            extra={"document_id": str(document_id), "error_type": type(cause).__name__},
        )
        try:
            await self.documents.transition(
                document_id,
                from_statuses=failed.sources,
                values={"status": failed.target, "is_valid": False},
            )
        except Exception:
            # The caller still gets the original failure; the document stays stuck
            logger.exception(
                "document_mark_failed_error", extra={"document_id": str(document_id)}
            )

    async def _record_divergence(
        self,
        document: Document,
        artifacts: IssuedArtifacts,
        cause: BaseException,
        emitter: IssuanceEventEmitter,
    ) -> None:
        chain_record = artifacts.chain_record()
        logger.critical(
            "ledger_divergence",
            extra={
                "document_id": str(document.document_id),
                "error_type": type(cause).__name__,
                **chain_record,
            },
        )
        await self._emit(
            emitter,
            document.document_id,
            IssuanceEventType.LEDGER_DIVERGENCE,
            dict(chain_record),
        )

        metadata = dict(document.metadata_ or {})
        metadata["reconciliation"] = {
            "reason": "final_save_failed",
            "error": str(cause),
            "detected_at": self._clock().isoformat(),
            **chain_record,
        }
        failed = TRANSITIONS[Operation.MINT_FAILED]
        try:
            await self.documents.transition(
                document.document_id,
                from_statuses=failed.sources,
                values={"status": failed.target, "is_valid": False, "metadata_": metadata},
            )
        except Exception:
            logger.exception(
                "ledger_divergence_record_failed",
                extra={"document_id": str(document.document_id)},
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_document_by_id(self, document_id: uuid.UUID) -> Document:
        return await self._require_document(document_id)

    async def get_student_documents(self, user_id: uuid.UUID) -> List[Document]:
        return await self.documents.list_for_user(user_id)

    async def get_all_documents(
        self,
        *,
        status: Optional[DocumentStatus] = None,
        sort_by: str = "created_at",
        order: str = "desc",
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Document], int]:
        try:
            query = DocumentListQuery(
                status=status,
                sort_by=sort_by,
                order=order,
                page=page,
                page_size=page_size,
            )
        except ValidationError as exc:
            raise ValidationFailed(f"Invalid listing parameters: {exc}") from exc

        return await self.documents.list_page(
            status=query.status,
            sort_by=query.sort_by,
            descending=query.order == "desc",
            offset=query.offset,
            limit=query.page_size,
        )

    async def get_document_types(self) -> List[DocumentType]:
        return await self.directory.list_document_types()

    async def get_document_pdf(self, document_id: uuid.UUID) -> bytes:
        document = await self._require_document(document_id)
        if not document.pdf_ipfs_hash:
            raise NotFoundError(f"Document {document_id} has no rendered file")
        try:
            return await self._bounded(
                "fetch",
                self.settings.upload_timeout,
                self.content_store.fetch,
                document.pdf_ipfs_hash,
            )
        except UpstreamError as exc:
            raise ValidationFailed(f"Could not retrieve rendered file: {exc}") from exc

    async def get_document_chain_record(self, document_id: uuid.UUID) -> Dict[str, Any]:
        """The issuance contract's own record of a minted document."""
        document = await self._require_document(document_id)
        if not document.blockchain_doc_id:
            raise NotFoundError(f"Document {document_id} has no on-chain record")
        try:
            return await self._bounded(
                "document_info",
                self.settings.ledger_read_timeout,
                self.ledger.get_document_info,
                document.blockchain_doc_id,
            )
        except UpstreamError as exc:
            raise ValidationFailed(f"Could not read on-chain record: {exc}") from exc

    async def get_student_tokens(self, user_id: uuid.UUID) -> List[str]:
        """Token ids the ledger holds for a student, including revoked ones."""
        wallet = await self.directory.get_wallet_for_user(user_id)
        if wallet is None:
            raise NotFoundError(f"User {user_id} has no wallet")
        try:
            chain_id = await self._bounded(
                "resolve_chain_id",
                self.settings.ledger_read_timeout,
                self.ledger.resolve_chain_id,
                wallet.address,
            )
            return await self._bounded(
                "student_nfts",
                self.settings.ledger_read_timeout,
                self.ledger.get_student_nfts,
                chain_id,
            )
        except UpstreamError as exc:
            raise ValidationFailed(f"Could not read student tokens: {exc}") from exc

    async def list_stuck_documents(
        self, older_than: Optional[timedelta] = None
    ) -> List[Document]:
        threshold = older_than or timedelta(minutes=self.settings.stuck_after_minutes)
        stuck = await self.documents.list_pending_since(self._clock() - threshold)
        if stuck:
            logger.warning(
                "documents_stuck_pending_blockchain",
                extra={
                    "count": len(stuck),
                    "document_ids": [str(doc.document_id) for doc in stuck],
                },
            )
        return stuck

    # ------------------------------------------------------------------
    # Verify / revoke / reject
    # ------------------------------------------------------------------

    async def verify_document(
        self,
        token_id: str,
        *,
        emitter: Optional[IssuanceEventEmitter] = None,
    ) -> DocumentVerification:
        emitter = emitter or NullEventEmitter()
        local = await self.documents.get_by_token_id(token_id)

        try:
            chain = await self._bounded(
                "verify", self.settings.ledger_read_timeout, self.ledger.verify, token_id
            )
        except UpstreamError as exc:
            raise ValidationFailed(f"Could not verify token {token_id}: {exc}") from exc

        chain_hash = (chain.document_hash or "").lower()
        valid = chain.is_valid and (
            local is None or (local.document_hash or "").lower() == chain_hash
        )

        if local is not None:
            await self.documents.update(
                local.document_id,
                {
                    "verified_at": self._clock(),
                    "is_valid": chain.is_valid and local.status == DocumentStatus.MINTED,
                },
            )
            local = await self.documents.get(local.document_id)
            await self._emit(
                emitter,
                local.document_id,
                IssuanceEventType.DOCUMENT_VERIFIED,
                {"token_id": token_id, "valid": valid},
            )

        logger.info(
            "document_verified",
            extra={"token_id": token_id, "valid": valid, "known_locally": local is not None},
        )
        return DocumentVerification(
            token_id=token_id,
            valid=valid,
            owner=chain.owner,
            blockchain=dict(chain.metadata),
            document=local,
        )

    async def revoke_document(
        self,
        document_id: uuid.UUID,
        *,
        emitter: Optional[IssuanceEventEmitter] = None,
    ) -> Document:
        emitter = emitter or NullEventEmitter()
        document = await self._require_document(document_id)

        if not document.blockchain_doc_id:
            raise DomainError(f"Document {document_id} is not on the ledger")
        revoke = require_transition(Operation.REVOKE, document.status)

        try:
            tx_hash = await self._bounded(
                "revoke",
                self.settings.mint_timeout,
                self.ledger.revoke,
                document.blockchain_doc_id,
            )
        except UpstreamError as exc:
            raise ValidationFailed(f"Ledger revocation failed: {exc}") from exc

        revoked = await self.documents.transition(
            document_id,
            from_statuses=revoke.sources,
            values={
                "status": revoke.target,
                "is_valid": False,
                "tx_hash": tx_hash,
                "verified_at": self._clock(),
            },
        )
        if not revoked:
            # Revoked on the ledger, but the row moved underneath us
            logger.critical(
                "ledger_divergence",
                extra={"document_id": str(document_id), "revoke_tx_hash": tx_hash},
            )
            raise PreconditionFailed(
                f"Document {document_id} changed status during revocation"
            )

        logger.info(
            "document_revoked",
            extra={"document_id": str(document_id), "tx_hash": tx_hash},
        )
        await self._emit(
            emitter, document_id, IssuanceEventType.DOCUMENT_REVOKED, {"tx_hash": tx_hash}
        )
        return await self._require_document(document_id)

    async def reject_document(
        self,
        document_id: uuid.UUID,
        reason: str,
        *,
        emitter: Optional[IssuanceEventEmitter] = None,
    ) -> Document:
        emitter = emitter or NullEventEmitter()
        document = await self._require_document(document_id)
        reject = require_transition(Operation.REJECT, document.status)

        metadata = dict(document.metadata_ or {})
        metadata["rejection"] = {
            "reason": reason,
            "rejected_at": self._clock().isoformat(),
        }
        rejected = await self.documents.transition(
            document_id,
            from_statuses=reject.sources,
            values={"status": reject.target, "is_valid": False, "metadata_": metadata},
        )
        if not rejected:
            current = await self._require_document(document_id)
            raise PreconditionFailed(
                f"Cannot reject document with status: {current.status.value}",
                current_status=current.status.value,
            )

        logger.info("document_rejected", extra={"document_id": str(document_id)})
        await self._emit(
            emitter, document_id, IssuanceEventType.DOCUMENT_REJECTED, {"reason": reason}
        )
        return await self._require_document(document_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _require_user(self, user_id: uuid.UUID) -> User:
        user = await self.directory.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def _require_document(self, document_id: uuid.UUID) -> Document:
        document = await self.documents.get(document_id)
        if document is None:
            raise NotFoundError(f"Document {document_id} not found")
        return document

    async def _verify_mfa(
        self,
        user_id: uuid.UUID,
        code: str,
        *,
        error_cls: Type[AuthError],
    ) -> None:
        try:
            result = await self._bounded(
                "mfa_verify", self.settings.mfa_timeout, self.mfa.verify, str(user_id), code
            )
        except UpstreamError as exc:
            raise ValidationFailed("MFA verification unavailable") from exc

        if result.valid:
            return

        logger.warning(
            "mfa_rejected",
            extra={
                "user_id": str(user_id),
                "reason": result.reason,
                "locked": result.locked_until is not None,
            },
        )
        if result.locked_until is not None:
            raise error_cls(
                f"Too many failed attempts; locked until {result.locked_until.isoformat()}",
                reason=result.reason,
                locked_until=result.locked_until,
            )
        raise error_cls(
            result.message or "Invalid authenticator code",
            reason=result.reason,
        )

    @staticmethod
    async def _bounded(
        step: str,
        seconds: float,
        func: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> T:
        """Await ``func(*args)`` under a deadline; a timeout becomes UpstreamError."""
        try:
            with anyio.fail_after(seconds):
                return await func(*args)
        except TimeoutError as exc:
            logger.error("collaborator_timeout", extra={"step": step, "timeout": seconds})
            raise UpstreamError(f"{step} timed out after {seconds:g}s") from exc

    @staticmethod
    async def _emit(
        emitter: IssuanceEventEmitter,
        document_id: uuid.UUID,
        event_type: IssuanceEventType,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            await emitter.emit(
                IssuanceEvent(
                    document_id=str(document_id),
                    event_type=event_type,
                    details=details,
                )
            )
        except Exception:
            logger.warning(
                "event_emission_failed",
                extra={"event_type": event_type.value, "document_id": str(document_id)},
            )
