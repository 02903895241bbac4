"""Database test fixtures.

Tests run against a throwaway SQLite file through aiosqlite so the SQL
repositories exercise a real driver without a Postgres server.
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from stacksgate.db.base import build_engine, create_tables


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'stacksgate_test.db'}")
    await create_tables(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
