"""Read-only balance composition over the ledger and active holds."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.errors import LedgerInvariantViolation
from credit_engine.ledger.store import LedgerStore, utcnow
from credit_engine.models.credits import CategoryBalance, CreditCategory
from credit_engine.state.repository import HoldRepository

logger = logging.getLogger(__name__)


class BalanceService:
    """Computes ``{total, held, available}`` per credit category.

    ``held`` counts only active holds that have not yet expired, so an overdue
    hold stops reducing availability even before the sweeper marks it.
    Nothing is cached beyond a single call.
    """

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utcnow) -> None:
        self._ledger = LedgerStore(session, clock=clock)
        self._holds = HoldRepository(session)
        self._clock = clock

    async def category_balance(self, user_id: str, category: CreditCategory) -> CategoryBalance:
        total = await self._ledger.balance(user_id, category)
        held = await self._holds.sum_active(user_id, category.value, self._clock())
        if total < 0 or held > total:
            logger.error(
                "Balance invariant violated: user=%s category=%s total=%d held=%d",
                user_id,
                category.value,
                total,
                held,
            )
            raise LedgerInvariantViolation(
                f"Inconsistent balance for {user_id}/{category.value}: total={total} held={held}"
            )
        return CategoryBalance(total=total, held=held, available=total - held)

    async def balances(self, user_id: str) -> dict[CreditCategory, CategoryBalance]:
        return {category: await self.category_balance(user_id, category) for category in CreditCategory}
