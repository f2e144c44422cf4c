"""Unit tests for monthly plan credit allocation."""

from __future__ import annotations

import pytest
from credit_engine.billing.allocation import allocate_plan_credits
from credit_engine.billing.plans import PLANS, PlanDefinition, PlanTier, get_plan
from credit_engine.ledger.store import LedgerStore
from credit_engine.models.credits import CreditCategory, LedgerSource

SMALL_PLAN = PlanDefinition(
    tier=PlanTier.BASIC,
    name="Small",
    price=1_000,
    scraper_credits=1_000,
    interaction_credits=1_500,
)


class TestAllocation:
    @pytest.mark.asyncio
    async def test_interaction_resets_and_scraper_accumulates(self, session_factory, clock, fund):
        await fund("u1", CreditCategory.INTERACTION, 1_500)
        await fund("u1", CreditCategory.SCRAPER, 2_000)

        async with session_factory.begin() as s:
            ledger = LedgerStore(s, clock=clock)
            details = await allocate_plan_credits(s, ledger, "u1", SMALL_PLAN, reference_id="inv-1")

        assert details.interaction_discarded == 1_500
        async with session_factory() as s:
            ledger = LedgerStore(s, clock=clock)
            assert await ledger.balance("u1", CreditCategory.INTERACTION) == 1_500
            assert await ledger.balance("u1", CreditCategory.SCRAPER) == 3_000

            entries = await ledger.entries_for_reference("inv-1")
            interaction = [(e.amount, e.source) for e in entries if e.category is CreditCategory.INTERACTION]
            assert interaction == [
                (-1_500, LedgerSource.MONTHLY_RESET),
                (1_500, LedgerSource.MONTHLY_ALLOCATION),
            ]
            scraper = [(e.amount, e.source) for e in entries if e.category is CreditCategory.SCRAPER]
            assert scraper == [(1_000, LedgerSource.MONTHLY_ALLOCATION)]

    @pytest.mark.asyncio
    async def test_first_allocation_writes_no_reset(self, session, clock):
        ledger = LedgerStore(session, clock=clock)
        trial = PLANS[PlanTier.TRIAL]
        details = await allocate_plan_credits(
            session,
            ledger,
            "u1",
            trial,
            reference_id="sub-1",
            source=LedgerSource.TRIAL_ALLOCATION,
        )

        assert details.interaction_discarded == 0
        entries = await ledger.entries_for_reference("sub-1")
        assert len(entries) == 2
        assert {e.source for e in entries} == {LedgerSource.TRIAL_ALLOCATION}
        assert await ledger.balance("u1", CreditCategory.SCRAPER) == 100
        assert await ledger.balance("u1", CreditCategory.INTERACTION) == 150


class TestPlanCatalog:
    def test_get_plan_by_id(self):
        assert get_plan("pro").scraper_credits == 25_000

    def test_unknown_plan_raises_value_error(self):
        with pytest.raises(ValueError):
            get_plan("platinum")

    def test_allocation_by_category(self):
        basic = PLANS[PlanTier.BASIC]
        assert basic.allocation(CreditCategory.SCRAPER) == 10_000
        assert basic.allocation(CreditCategory.INTERACTION) == 15_000
