"""Tests for engine construction and the commit/rollback session helper."""

from __future__ import annotations

import pytest
from credit_engine.ledger.store import LedgerStore
from credit_engine.models.credits import CreditCategory, LedgerSource
from credit_engine.state import get_engine, get_session
from credit_engine.state.database import dialect_name, is_postgresql
from credit_engine.state.sqlite_adapter import create_local_tables

SCRAPER = CreditCategory.SCRAPER


class TestGetSession:
    @pytest.mark.asyncio
    async def test_commits_on_clean_exit(self, engine, session_factory, clock):
        async with get_session(engine) as s:
            await LedgerStore(s, clock=clock).append("u1", SCRAPER, 25, LedgerSource.TOPUP_PURCHASE)

        async with session_factory() as s:
            assert await LedgerStore(s, clock=clock).balance("u1", SCRAPER) == 25

    @pytest.mark.asyncio
    async def test_rolls_back_on_error(self, engine, session_factory, clock):
        with pytest.raises(RuntimeError):
            async with get_session(engine) as s:
                await LedgerStore(s, clock=clock).append("u1", SCRAPER, 25, LedgerSource.TOPUP_PURCHASE)
                raise RuntimeError("boom")

        async with session_factory() as s:
            assert await LedgerStore(s, clock=clock).balance("u1", SCRAPER) == 0


class TestGetEngine:
    @pytest.mark.asyncio
    async def test_sqlite_url_dispatches_to_local_engine(self, tmp_path, clock):
        engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'url.db'}")
        try:
            assert engine.dialect.name == "sqlite"
            await create_local_tables(engine)
            async with get_session(engine) as s:
                entry = await LedgerStore(s, clock=clock).append("u1", SCRAPER, 3, LedgerSource.TOPUP_PURCHASE)
            assert entry.balance_after == 3
            assert (tmp_path / "url.db").exists()
        finally:
            await engine.dispose()


class TestDialectDetection:
    @pytest.mark.asyncio
    async def test_sqlite_session(self, session):
        assert dialect_name(session) == "sqlite"
        assert not is_postgresql(session)
