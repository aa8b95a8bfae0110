from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from issuance.app.db.models import Base


def create_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create the process-wide async engine (one connection pool per process)."""
    return create_async_engine(database_url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Objects stay readable after commit; every repository call is its own unit of work.
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables. Development and tests only; production uses migrations."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
