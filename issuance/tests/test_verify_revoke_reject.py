import uuid

import pytest

from issuance.app.core.errors import (
    DomainError,
    NotFoundError,
    PreconditionFailed,
    ValidationFailed,
)
from issuance.app.db.models import DocumentStatus
from issuance.tests.fixtures.world import (
    VALID_CODE,
    issuance_world,
    minted_certificate,
    request_certificate,
)

pytestmark = pytest.mark.anyio


# ----------------------------------------------------------------------
# verify
# ----------------------------------------------------------------------

async def test_verify_minted_document(tmp_path):
    async with issuance_world(tmp_path) as world:
        minted = await minted_certificate(world)

        outcome = await world.service.verify_document(minted.token_id)

        assert outcome.valid is True
        assert outcome.owner == "0x" + "ab" * 20
        assert outcome.blockchain["documentHash"] == minted.document_hash
        assert outcome.document.document_id == minted.document_id
        assert outcome.document.is_valid is True
        assert outcome.document.verified_at is not None


async def test_verify_detects_digest_mismatch(tmp_path):
    async with issuance_world(tmp_path) as world:
        minted = await minted_certificate(world)
        world.ledger.documents[minted.blockchain_doc_id]["documentHash"] = "0x" + "00" * 32

        outcome = await world.service.verify_document(minted.token_id)
        assert outcome.valid is False


async def test_verify_token_unknown_locally(tmp_path):
    async with issuance_world(tmp_path) as world:
        minted = await minted_certificate(world)
        # Make the local row unreachable by token id
        await world.documents.update(minted.document_id, {"token_id": "999"})

        outcome = await world.service.verify_document(minted.token_id)
        assert outcome.valid is True
        assert outcome.document is None


async def test_verify_unknown_token_is_validation_failure(tmp_path):
    async with issuance_world(tmp_path) as world:
        with pytest.raises(ValidationFailed):
            await world.service.verify_document("424242")


async def test_verify_after_revoke_keeps_validity_tied_to_status(tmp_path):
    async with issuance_world(tmp_path) as world:
        minted = await minted_certificate(world)
        await world.service.revoke_document(minted.document_id)

        outcome = await world.service.verify_document(minted.token_id)
        assert outcome.valid is False
        assert outcome.document.status is DocumentStatus.REVOKED
        assert outcome.document.is_valid is False


# ----------------------------------------------------------------------
# revoke
# ----------------------------------------------------------------------

async def test_revoke_minted_document(tmp_path):
    async with issuance_world(tmp_path) as world:
        minted = await minted_certificate(world)

        revoked = await world.service.revoke_document(minted.document_id)

        assert revoked.status is DocumentStatus.REVOKED
        assert revoked.is_valid is False
        assert revoked.tx_hash != minted.tx_hash
        assert revoked.token_id == minted.token_id
        assert revoked.blockchain_doc_id == minted.blockchain_doc_id
        assert world.ledger.documents[minted.blockchain_doc_id]["isValid"] is False


async def test_revoke_without_chain_record_is_domain_error(tmp_path):
    async with issuance_world(tmp_path) as world:
        draft = await request_certificate(world)

        with pytest.raises(DomainError):
            await world.service.revoke_document(draft.document_id)

        unchanged = await world.service.get_document_by_id(draft.document_id)
        assert unchanged.status is DocumentStatus.DRAFT


async def test_revoke_twice_is_precondition_failure(tmp_path):
    async with issuance_world(tmp_path) as world:
        minted = await minted_certificate(world)
        await world.service.revoke_document(minted.document_id)

        with pytest.raises(PreconditionFailed) as excinfo:
            await world.service.revoke_document(minted.document_id)
        assert excinfo.value.current_status == "revoked"


async def test_revoke_unknown_document(tmp_path):
    async with issuance_world(tmp_path) as world:
        with pytest.raises(NotFoundError):
            await world.service.revoke_document(uuid.uuid4())


# ----------------------------------------------------------------------
# reject
# ----------------------------------------------------------------------

async def test_reject_draft_records_reason(tmp_path):
    async with issuance_world(tmp_path) as world:
        draft = await request_certificate(world)

        rejected = await world.service.reject_document(draft.document_id, "Blurry scan")

        assert rejected.status is DocumentStatus.REJECTED
        assert rejected.is_valid is False
        assert rejected.metadata_["rejection"]["reason"] == "Blurry scan"
        assert "rejected_at" in rejected.metadata_["rejection"]
        assert rejected.metadata_["purpose"] == "job application"


async def test_rejected_document_cannot_be_approved(tmp_path):
    async with issuance_world(tmp_path) as world:
        draft = await request_certificate(world)
        await world.service.reject_document(draft.document_id, "Duplicate request")

        with pytest.raises(PreconditionFailed):
            await world.service.approve_and_sign_document(
                draft.document_id, world.manager.user_id, VALID_CODE
            )


async def test_minted_document_cannot_be_rejected(tmp_path):
    async with issuance_world(tmp_path) as world:
        minted = await minted_certificate(world)

        with pytest.raises(PreconditionFailed):
            await world.service.reject_document(minted.document_id, "Too late")

        unchanged = await world.service.get_document_by_id(minted.document_id)
        assert unchanged.status is DocumentStatus.MINTED
        assert "rejection" not in unchanged.metadata_
