from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import inspect

from issuance.app.core.errors import NotFoundError, ValidationFailed
from issuance.app.db.models import Document, DocumentStatus
from issuance.tests.fixtures.world import (
    VALID_CODE,
    issuance_world,
    minted_certificate,
    request_certificate,
)

pytestmark = pytest.mark.anyio


async def _request_generic(world, user=None):
    user = user or world.student
    return await world.service.request_document(
        user.user_id, world.types["generic"].document_type_id, VALID_CODE
    )


async def test_get_document_by_id_is_stable(tmp_path):
    async with issuance_world(tmp_path) as world:
        draft = await request_certificate(world)

        first = await world.service.get_document_by_id(draft.document_id)
        second = await world.service.get_document_by_id(draft.document_id)

        assert first is not second
        assert first.document_type.document_type_name == "Certificate"
        columns = [attr.key for attr in inspect(Document).column_attrs]
        assert [getattr(first, key) for key in columns] == [
            getattr(second, key) for key in columns
        ]


async def test_student_documents_newest_first(tmp_path):
    async with issuance_world(tmp_path) as world:
        older = await _request_generic(world)
        newer = await request_certificate(world)
        await _request_generic(world, world.other_student)

        documents = await world.service.get_student_documents(world.student.user_id)
        assert [d.document_id for d in documents] == [newer.document_id, older.document_id]


async def test_pagination_and_status_filter(tmp_path):
    async with issuance_world(tmp_path) as world:
        drafts = [await _request_generic(world) for _ in range(5)]
        await world.service.reject_document(drafts[0].document_id, "no")

        items, total = await world.service.get_all_documents(page=1, page_size=2)
        assert total == 5
        assert len(items) == 2
        assert items[0].document_id == drafts[-1].document_id

        items, total = await world.service.get_all_documents(page=3, page_size=2)
        assert [d.document_id for d in items] == [drafts[0].document_id]

        items, total = await world.service.get_all_documents(
            status=DocumentStatus.REJECTED
        )
        assert total == 1
        assert items[0].document_id == drafts[0].document_id

        items, _ = await world.service.get_all_documents(order="asc", page_size=1)
        assert items[0].document_id == drafts[0].document_id


@pytest.mark.parametrize(
    "params",
    [
        {"page": 0},
        {"page_size": 0},
        {"page_size": 101},
        {"sort_by": "document_hash"},
        {"order": "sideways"},
    ],
)
async def test_invalid_listing_parameters(tmp_path, params):
    async with issuance_world(tmp_path) as world:
        with pytest.raises(ValidationFailed):
            await world.service.get_all_documents(**params)


async def test_document_types_catalogue(tmp_path):
    async with issuance_world(tmp_path) as world:
        types = await world.service.get_document_types()
        assert [t.document_type_name for t in types] == sorted(
            t.document_type_name for t in world.types.values()
        )


async def test_document_pdf_is_fetched_from_content_store(tmp_path):
    async with issuance_world(tmp_path) as world:
        minted = await minted_certificate(world)

        pdf = await world.service.get_document_pdf(minted.document_id)
        assert pdf == world.content_store.objects[minted.pdf_ipfs_hash]


async def test_document_pdf_before_rendering_is_not_found(tmp_path):
    async with issuance_world(tmp_path) as world:
        draft = await request_certificate(world)
        with pytest.raises(NotFoundError):
            await world.service.get_document_pdf(draft.document_id)


async def test_stuck_documents_are_listed(tmp_path):
    async with issuance_world(tmp_path) as world:
        draft = await request_certificate(world)
        await world.documents.transition(
            draft.document_id,
            from_statuses=[DocumentStatus.DRAFT],
            values={"status": DocumentStatus.PENDING_BLOCKCHAIN},
        )

        assert await world.service.list_stuck_documents(timedelta(hours=1)) == []

        world.service._clock = lambda: datetime.now(timezone.utc) + timedelta(hours=2)
        stuck = await world.service.list_stuck_documents(timedelta(hours=1))
        assert [d.document_id for d in stuck] == [draft.document_id]
