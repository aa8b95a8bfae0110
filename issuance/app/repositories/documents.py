"""
Document persistence.

Every status change goes through ``transition``: a single conditional
UPDATE whose WHERE clause carries the allowed source statuses. The
caller learns from the affected row count whether it won. Two
concurrent approvals of the same document therefore cannot both
observe DRAFT and both move on; exactly one UPDATE matches.

Each method is its own short transaction. The saga relies on this: the
claim to PENDING_BLOCKCHAIN is durable before any upload or mint runs.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from issuance.app.db.models import Document, DocumentStatus

SORTABLE_COLUMNS = {
    "created_at": Document.created_at,
    "updated_at": Document.updated_at,
    "issued_at": Document.issued_at,
}


class DocumentRepository:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, document: Document) -> Document:
        async with self._sessions() as session:
            async with session.begin():
                session.add(document)
            await session.refresh(document, attribute_names=["document_type"])
            return document

    async def transition(
        self,
        document_id: uuid.UUID,
        *,
        from_statuses: Iterable[DocumentStatus],
        values: Dict[str, Any],
    ) -> bool:
        """
        Conditionally update a document.

        Returns True when exactly one row matched both the id and one of
        ``from_statuses``. ``contract_address`` is never writable here.
        """
        if "contract_address" in values:
            raise ValueError("contract_address is immutable after creation")

        allowed = list(from_statuses)
        statement = (
            update(Document)
            .where(Document.document_id == document_id)
            .where(Document.status.in_(allowed))
            .values({getattr(Document, key): value for key, value in values.items()})
            .execution_options(synchronize_session=False)
        )

        async with self._sessions() as session:
            async with session.begin():
                result = await session.execute(statement)
        return result.rowcount == 1

    async def update(self, document_id: uuid.UUID, values: Dict[str, Any]) -> None:
        """Unconditional update of non-status bookkeeping fields."""
        if "status" in values:
            raise ValueError("status changes must go through transition()")
        if "contract_address" in values:
            raise ValueError("contract_address is immutable after creation")

        statement = (
            update(Document)
            .where(Document.document_id == document_id)
            .values({getattr(Document, key): value for key, value in values.items()})
            .execution_options(synchronize_session=False)
        )
        async with self._sessions() as session:
            async with session.begin():
                await session.execute(statement)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, document_id: uuid.UUID) -> Optional[Document]:
        async with self._sessions() as session:
            return await session.get(Document, document_id)

    async def get_by_token_id(self, token_id: str) -> Optional[Document]:
        async with self._sessions() as session:
            result = await session.execute(
                select(Document).where(Document.token_id == token_id)
            )
            return result.scalars().first()

    async def list_for_user(self, user_id: uuid.UUID) -> List[Document]:
        async with self._sessions() as session:
            result = await session.execute(
                select(Document)
                .where(Document.user_id == user_id)
                .order_by(Document.created_at.desc())
            )
            return list(result.scalars().all())

    async def list_page(
        self,
        *,
        status: Optional[DocumentStatus] = None,
        sort_by: str = "created_at",
        descending: bool = True,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Document], int]:
        column = SORTABLE_COLUMNS[sort_by]
        ordering = column.desc() if descending else column.asc()

        query = select(Document)
        count_query = select(func.count()).select_from(Document)
        if status is not None:
            query = query.where(Document.status == status)
            count_query = count_query.where(Document.status == status)

        async with self._sessions() as session:
            total = (await session.execute(count_query)).scalar_one()
            result = await session.execute(
                query.order_by(ordering, Document.document_id)
                .offset(offset)
                .limit(limit)
            )
            return list(result.scalars().all()), total

    async def list_pending_since(self, before: datetime) -> List[Document]:
        """Documents claimed for minting whose last update predates ``before``."""
        async with self._sessions() as session:
            result = await session.execute(
                select(Document)
                .where(Document.status == DocumentStatus.PENDING_BLOCKCHAIN)
                .where(Document.updated_at < before)
                .order_by(Document.updated_at)
            )
            return list(result.scalars().all())
