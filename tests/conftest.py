"""Pytest configuration and shared fixtures.

Store-level tests run against a real SQLAlchemy database: a SQLite file per
test through aiosqlite, so conditional updates and concurrent claims go
through an actual database engine. Several connections share the file, which
is what the concurrent-claim tests rely on.

The payment API is replaced by FakePaymentAPI, an in-memory stand-in that
honors idempotency keys like the real provider.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from fulfillq.db.models import Base
from tests.fakes import FakePaymentAPI

# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Async engine on a fresh SQLite file with the full schema."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'fulfillq.db'}",
        connect_args={"timeout": 20},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Payment API fake
# ---------------------------------------------------------------------------
@pytest.fixture
def payments() -> FakePaymentAPI:
    """Payment API fake with one known intent and price."""
    fake = FakePaymentAPI()
    fake.add_intent("pi_test", amount=4500)
    fake.add_price("price_test", unit_amount=1500)
    return fake
