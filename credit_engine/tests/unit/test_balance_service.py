"""Unit tests for BalanceService."""

from __future__ import annotations

import pytest
from credit_engine.errors import LedgerInvariantViolation
from credit_engine.ledger.balances import BalanceService
from credit_engine.ledger.holds import HoldManager
from credit_engine.models.credits import CreditCategory
from credit_engine.state.tables import CreditLedgerTable
from sqlalchemy import update


class TestBalances:
    @pytest.mark.asyncio
    async def test_unknown_user_has_zero_balances(self, session, clock):
        balances = await BalanceService(session, clock=clock).balances("ghost")
        assert set(balances) == set(CreditCategory)
        for b in balances.values():
            assert (b.total, b.held, b.available) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_holds_only_reduce_their_own_category(self, session_factory, clock, fund):
        await fund("u1", CreditCategory.SCRAPER, 80)
        await fund("u1", CreditCategory.INTERACTION, 30)
        async with session_factory.begin() as s:
            await HoldManager(s, clock=clock).hold("u1", CreditCategory.INTERACTION, 12, "chat-1")

        async with session_factory() as s:
            balances = await BalanceService(s, clock=clock).balances("u1")
        scraper = balances[CreditCategory.SCRAPER]
        interaction = balances[CreditCategory.INTERACTION]
        assert (scraper.total, scraper.held, scraper.available) == (80, 0, 80)
        assert (interaction.total, interaction.held, interaction.available) == (30, 12, 18)

    @pytest.mark.asyncio
    async def test_negative_total_is_an_invariant_violation(self, session_factory, clock, fund):
        await fund("u1", CreditCategory.SCRAPER, 10)
        async with session_factory.begin() as s:
            await s.execute(update(CreditLedgerTable).values(balance_after=-5))

        async with session_factory() as s:
            with pytest.raises(LedgerInvariantViolation):
                await BalanceService(s, clock=clock).category_balance("u1", CreditCategory.SCRAPER)
