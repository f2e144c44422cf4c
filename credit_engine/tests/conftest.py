"""Shared fixtures for the credit engine tests.

Every test gets its own SQLite file under ``tmp_path`` so that concurrent
sessions see each other's commits the way they would against PostgreSQL.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from credit_engine.ledger.store import LedgerStore
from credit_engine.models.credits import CreditCategory, LedgerSource
from credit_engine.state.database import get_session_factory
from credit_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 1, 9, 0, tzinfo=UTC))


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    eng = get_local_engine(tmp_path / "credits.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return get_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as s:
        yield s


@pytest.fixture
def fund(session_factory: async_sessionmaker[AsyncSession], clock: FrozenClock):
    """Return a coroutine that credits an account and commits."""

    async def _fund(user_id: str, category: CreditCategory, amount: int) -> None:
        async with session_factory.begin() as s:
            await LedgerStore(s, clock=clock).append(
                user_id,
                category,
                amount,
                LedgerSource.TOPUP_PURCHASE,
                reference_id="seed",
            )

    return _fund
