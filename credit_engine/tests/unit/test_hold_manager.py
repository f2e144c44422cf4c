"""Unit tests for the credit hold lifecycle.

Covers:
- Holds reduce the available balance without touching the ledger
- Conversion with a partial refund
- Release and expiry leave the ledger untouched
- Each hold leaves the active state exactly once
- Concurrent holds on one account never overdraw it
"""

from __future__ import annotations

import asyncio

import pytest
from credit_engine.errors import HoldExpired, HoldNotFound, InsufficientCredits, InvalidCreditRequest
from credit_engine.ledger.balances import BalanceService
from credit_engine.ledger.holds import HoldManager
from credit_engine.ledger.store import LedgerStore
from credit_engine.models.credits import CreditCategory, HoldStatus, LedgerSource
from credit_engine.state.repository import AuditRepository

SCRAPER = CreditCategory.SCRAPER


class TestHoldAndConvert:
    @pytest.mark.asyncio
    async def test_hold_then_convert_full_amount(self, session_factory, clock, fund):
        await fund("u1", SCRAPER, 100)

        async with session_factory.begin() as s:
            hold = await HoldManager(s, clock=clock).hold("u1", SCRAPER, 50, "job-1")
            assert hold.status is HoldStatus.ACTIVE

        async with session_factory.begin() as s:
            balance = await BalanceService(s, clock=clock).category_balance("u1", SCRAPER)
            assert (balance.total, balance.held, balance.available) == (100, 50, 50)
            assert await LedgerStore(s, clock=clock).balance("u1", SCRAPER) == 100

        async with session_factory.begin() as s:
            with pytest.raises(InsufficientCredits) as exc_info:
                await HoldManager(s, clock=clock).hold("u1", SCRAPER, 60, "job-2")
        assert exc_info.value.available == 50
        assert exc_info.value.required == 60
        assert exc_info.value.shortfall == 10

        async with session_factory.begin() as s:
            result = await HoldManager(s, clock=clock).convert(hold.id, 50, user_id="u1")
        assert result.debited_amount == 50
        assert result.refunded_amount == 0
        assert result.remaining_balance == 50

        async with session_factory() as s:
            balance = await BalanceService(s, clock=clock).category_balance("u1", SCRAPER)
            assert (balance.total, balance.held, balance.available) == (50, 0, 50)

    @pytest.mark.asyncio
    async def test_partial_conversion_refunds_unused_credits(self, session_factory, clock, fund):
        await fund("u1", SCRAPER, 100)
        async with session_factory.begin() as s:
            hold = await HoldManager(s, clock=clock).hold("u1", SCRAPER, 50, "job-1")

        async with session_factory.begin() as s:
            result = await HoldManager(s, clock=clock).convert(hold.id, 45, "Scrape run", user_id="u1")
        assert result.debited_amount == 45
        assert result.refunded_amount == 5
        assert result.remaining_balance == 55

        async with session_factory() as s:
            entries = await LedgerStore(s, clock=clock).entries_for_reference("job-1")
            assert [(e.amount, e.source) for e in entries] == [
                (-50, LedgerSource.USAGE),
                (5, LedgerSource.REFUND),
            ]
            assert all(e.hold_id == hold.id for e in entries)
            stored = await HoldManager(s, clock=clock).get(hold.id, "u1")
            assert stored.status is HoldStatus.CONVERTED
            assert stored.ledger_entry_id == result.transaction_id

    @pytest.mark.asyncio
    async def test_actual_amount_must_fit_the_hold(self, session_factory, clock, fund):
        await fund("u1", SCRAPER, 100)
        async with session_factory.begin() as s:
            hold = await HoldManager(s, clock=clock).hold("u1", SCRAPER, 20, "job-1")

        for bad in (0, 21):
            async with session_factory() as s:
                with pytest.raises(InvalidCreditRequest):
                    await HoldManager(s, clock=clock).convert(hold.id, bad, user_id="u1")

    @pytest.mark.asyncio
    async def test_hold_validation(self, session, clock):
        manager = HoldManager(session, clock=clock)
        with pytest.raises(InvalidCreditRequest):
            await manager.hold("u1", SCRAPER, 0, "job")
        with pytest.raises(InvalidCreditRequest):
            await manager.hold("u1", SCRAPER, 5, "  ")
        with pytest.raises(InvalidCreditRequest):
            await manager.hold("u1", SCRAPER, 5, "job", ttl_minutes=0)
        with pytest.raises(InvalidCreditRequest):
            await manager.hold("u1", SCRAPER, 5, "job", ttl_minutes=1441)

    @pytest.mark.asyncio
    async def test_hold_on_empty_account_fails(self, session, clock):
        with pytest.raises(InsufficientCredits) as exc_info:
            await HoldManager(session, clock=clock).hold("u1", SCRAPER, 1, "job")
        assert exc_info.value.available == 0


class TestTerminalStates:
    @pytest.mark.asyncio
    async def test_release_has_no_ledger_effect(self, session_factory, clock, fund):
        await fund("u1", SCRAPER, 100)
        async with session_factory.begin() as s:
            hold = await HoldManager(s, clock=clock).hold("u1", SCRAPER, 40, "job-1")

        async with session_factory.begin() as s:
            released = await HoldManager(s, clock=clock).release(hold.id, "cancelled by user", user_id="u1")
        assert released == 40

        async with session_factory() as s:
            assert await LedgerStore(s, clock=clock).entries_for_reference("job-1") == []
            balance = await BalanceService(s, clock=clock).category_balance("u1", SCRAPER)
            assert (balance.total, balance.held, balance.available) == (100, 0, 100)
            stored = await HoldManager(s, clock=clock).get(hold.id, "u1")
            assert stored.status is HoldStatus.RELEASED
            assert stored.release_reason == "cancelled by user"

    @pytest.mark.asyncio
    async def test_hold_leaves_active_state_once(self, session_factory, clock, fund):
        await fund("u1", SCRAPER, 100)
        async with session_factory.begin() as s:
            hold = await HoldManager(s, clock=clock).hold("u1", SCRAPER, 40, "job-1")
        async with session_factory.begin() as s:
            await HoldManager(s, clock=clock).convert(hold.id, 40, user_id="u1")

        async with session_factory() as s:
            with pytest.raises(HoldNotFound):
                await HoldManager(s, clock=clock).release(hold.id, user_id="u1")
        async with session_factory() as s:
            with pytest.raises(HoldNotFound):
                await HoldManager(s, clock=clock).convert(hold.id, 40, user_id="u1")

        async with session_factory() as s:
            assert await LedgerStore(s, clock=clock).balance("u1", SCRAPER) == 60

    @pytest.mark.asyncio
    async def test_other_users_hold_is_not_found(self, session_factory, clock, fund):
        await fund("u1", SCRAPER, 100)
        async with session_factory.begin() as s:
            hold = await HoldManager(s, clock=clock).hold("u1", SCRAPER, 10, "job-1")

        async with session_factory() as s:
            with pytest.raises(HoldNotFound):
                await HoldManager(s, clock=clock).convert(hold.id, 10, user_id="intruder")
        async with session_factory() as s:
            with pytest.raises(HoldNotFound):
                await HoldManager(s, clock=clock).release("missing-hold", user_id="u1")


class TestExpiry:
    @pytest.mark.asyncio
    async def test_expired_hold_frees_credits_before_sweep(self, session_factory, clock, fund):
        await fund("u1", SCRAPER, 100)
        async with session_factory.begin() as s:
            hold = await HoldManager(s, clock=clock).hold("u1", SCRAPER, 70, "job-1", ttl_minutes=5)

        clock.advance(minutes=6)
        async with session_factory() as s:
            balance = await BalanceService(s, clock=clock).category_balance("u1", SCRAPER)
            assert balance.available == 100
            with pytest.raises(HoldExpired):
                await HoldManager(s, clock=clock).convert(hold.id, 70, user_id="u1")

    @pytest.mark.asyncio
    async def test_sweep_expires_due_holds_without_ledger_entries(self, session_factory, clock, fund):
        await fund("u1", SCRAPER, 100)
        async with session_factory.begin() as s:
            manager = HoldManager(s, clock=clock)
            short = await manager.hold("u1", SCRAPER, 10, "job-short", ttl_minutes=5)
            long = await manager.hold("u1", SCRAPER, 20, "job-long", ttl_minutes=60)

        clock.advance(minutes=10)
        async with session_factory.begin() as s:
            assert await HoldManager(s, clock=clock).cleanup_expired() == 1
        async with session_factory.begin() as s:
            assert await HoldManager(s, clock=clock).cleanup_expired() == 0

        async with session_factory() as s:
            manager = HoldManager(s, clock=clock)
            assert (await manager.get(short.id, "u1")).status is HoldStatus.EXPIRED
            assert (await manager.get(long.id, "u1")).status is HoldStatus.ACTIVE
            assert await LedgerStore(s, clock=clock).balance("u1", SCRAPER) == 100
            assert len(await LedgerStore(s, clock=clock).history("u1", SCRAPER)) == 1

            audit = await AuditRepository(s).query(user_id="u1", event_type="holds_expired")
            assert len(audit) == 1
            assert audit[0].details_json["hold_ids"] == [short.id]
            assert audit[0].details_json["amount_released"] == 10


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_holds_never_overdraw(self, session_factory, clock, fund):
        await fund("u1", SCRAPER, 100)

        async def try_hold(i: int) -> bool:
            async with session_factory.begin() as s:
                try:
                    await HoldManager(s, clock=clock).hold("u1", SCRAPER, 30, f"job-{i}")
                except InsufficientCredits:
                    return False
            return True

        outcomes = await asyncio.gather(*(try_hold(i) for i in range(5)))
        assert outcomes.count(True) == 3

        async with session_factory() as s:
            balance = await BalanceService(s, clock=clock).category_balance("u1", SCRAPER)
            assert balance.held == 90
            assert balance.available == 10
