"""
Read-only lookups into neighbouring bounded contexts.

Users, wallets, certificates, score rows and the document type catalogue
are owned elsewhere. The orchestrator only resolves them by key or
lists them by owner; it never writes to these tables.
"""

from __future__ import annotations

import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from issuance.app.db.models import Certificate, DocumentType, ScoreBoard, User, Wallet


class DirectoryRepository:
    """Keyed lookups and ordered owner queries over reference tables."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def get_user(self, user_id: uuid.UUID) -> Optional[User]:
        async with self._sessions() as session:
            return await session.get(User, user_id)

    async def get_wallet_for_user(self, user_id: uuid.UUID) -> Optional[Wallet]:
        async with self._sessions() as session:
            result = await session.execute(
                select(Wallet).where(Wallet.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def get_document_type(
        self, document_type_id: uuid.UUID
    ) -> Optional[DocumentType]:
        async with self._sessions() as session:
            return await session.get(DocumentType, document_type_id)

    async def list_document_types(self) -> List[DocumentType]:
        async with self._sessions() as session:
            result = await session.execute(
                select(DocumentType).order_by(DocumentType.document_type_name)
            )
            return list(result.scalars().all())

    async def get_certificate(
        self, certificate_id: uuid.UUID
    ) -> Optional[Certificate]:
        async with self._sessions() as session:
            return await session.get(Certificate, certificate_id)

    async def list_score_rows(self, user_id: uuid.UUID) -> List[ScoreBoard]:
        """Score rows for a user ordered by (academic year, semester, course name)."""
        async with self._sessions() as session:
            result = await session.execute(
                select(ScoreBoard)
                .where(ScoreBoard.user_id == user_id)
                .order_by(
                    ScoreBoard.academic_year,
                    ScoreBoard.semester,
                    ScoreBoard.course_name,
                )
            )
            return list(result.scalars().all())
