import pytest


@pytest.fixture
def anyio_backend():
    # The stack (sqlalchemy[asyncio], aiosqlite, asyncpg) is asyncio-only.
    return "asyncio"
