"""Monthly credit allocation.

Interaction credits are *reset*: the current balance is debited to zero with
a ``monthly_reset`` entry before the new allocation is credited.  Scraper
credits *accumulate*: only the new allocation is credited.  Both categories
are locked up front, in a fixed order, before the first append.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.billing.plans import ALLOCATION_POLICIES, AllocationPolicy, PlanDefinition
from credit_engine.ledger.store import LedgerStore
from credit_engine.models.audit import AllocationDetails
from credit_engine.models.credits import CreditCategory, LedgerSource
from credit_engine.state.locking import lock_accounts

logger = logging.getLogger(__name__)


async def allocate_plan_credits(
    session: AsyncSession,
    ledger: LedgerStore,
    user_id: str,
    plan: PlanDefinition,
    reference_id: str,
    source: LedgerSource = LedgerSource.MONTHLY_ALLOCATION,
) -> AllocationDetails:
    """Credit one period's allocation of *plan* to *user_id*.

    Parameters
    ----------
    session:
        Session whose transaction the ledger appends join.
    ledger:
        Ledger store bound to *session*.
    user_id:
        Account owner.
    plan:
        Plan whose per-category allocation is credited.
    reference_id:
        Invoice (or subscription) id recorded on every entry.
    source:
        Source tag of the allocation credits.

    Returns
    -------
    AllocationDetails
        Amounts credited, plus the interaction balance discarded by the reset.
    """
    await lock_accounts(session, user_id, [c.value for c in CreditCategory])

    discarded = 0
    for category in CreditCategory:
        policy = ALLOCATION_POLICIES[category]
        if policy is AllocationPolicy.RESET:
            current = await ledger.balance(user_id, category)
            if current > 0:
                await ledger.append(
                    user_id,
                    category,
                    -current,
                    LedgerSource.MONTHLY_RESET,
                    reference_id=reference_id,
                    description=f"Monthly reset - {current} unused {category.value} credits discarded",
                )
                discarded = current

        amount = plan.allocation(category)
        if amount > 0:
            await ledger.append(
                user_id,
                category,
                amount,
                source,
                reference_id=reference_id,
                description=f"{plan.name} plan - {amount} {category.value} credits",
            )

    logger.info(
        "Allocated %s plan credits: user=%s scraper=%d interaction=%d discarded=%d",
        plan.tier.value,
        user_id,
        plan.scraper_credits,
        plan.interaction_credits,
        discarded,
    )
    return AllocationDetails(
        plan_id=plan.tier.value,
        reference_id=reference_id,
        scraper_credits=plan.scraper_credits,
        interaction_credits=plan.interaction_credits,
        interaction_discarded=discarded,
    )
