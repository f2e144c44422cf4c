"""Request-scoped credit operations for the credit routes.

Wraps :class:`HoldManager`, :class:`BalanceService` and :class:`LedgerStore`
for one authenticated user inside the request's transaction, and decides
when a conversion should raise a ``credits_low`` notification.  The
notification itself is returned to the router and sent after commit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from credit_engine.ledger.balances import BalanceService
from credit_engine.ledger.holds import HoldManager
from credit_engine.ledger.store import LedgerStore, utcnow
from credit_engine.models.audit import AuditEvent, AuditStatus, ReconciliationDetails
from credit_engine.models.billing import NotificationType
from credit_engine.models.credits import (
    CategoryBalance,
    ConversionResult,
    CreditCategory,
    CreditHold,
    LedgerEntry,
    LedgerReconciliation,
)
from sqlalchemy.ext.asyncio import AsyncSession

from credit_api.services.audit_service import AuditService
from credit_api.services.notification_service import credits_low_message
from credit_api.services.settlement import PendingNotification

logger = logging.getLogger(__name__)


class CreditService:
    """Hold, convert, release and balance reads for a single user.

    Parameters
    ----------
    session:
        Request session; the caller commits.
    user_id:
        Authenticated owner of every hold touched.
    clock:
        Returns the current UTC time; injectable for tests.
    low_threshold:
        Available balance below which a conversion triggers ``credits_low``.
    """

    def __init__(
        self,
        session: AsyncSession,
        user_id: str,
        *,
        clock: Callable[[], datetime] = utcnow,
        low_threshold: int = 100,
    ) -> None:
        self._user_id = user_id
        self._holds = HoldManager(session, clock=clock)
        self._balances = BalanceService(session, clock=clock)
        self._ledger = LedgerStore(session, clock=clock)
        self._low_threshold = low_threshold

    async def create_hold(
        self,
        category: CreditCategory,
        amount: int,
        reference_id: str,
        ttl_minutes: int,
    ) -> CreditHold:
        return await self._holds.hold(self._user_id, category, amount, reference_id, ttl_minutes)

    async def convert(
        self,
        hold_id: str,
        actual_amount: int,
        description: str | None = None,
    ) -> tuple[ConversionResult, PendingNotification | None]:
        """Convert a hold and report whether the usage crossed the low-credit threshold."""
        hold = await self._holds.get(hold_id, self._user_id)
        result = await self._holds.convert(hold_id, actual_amount, description, user_id=self._user_id)

        available = await self._holds.available(self._user_id, hold.category)
        notification: PendingNotification | None = None
        if available < self._low_threshold <= available + result.debited_amount:
            title, message = credits_low_message(hold.category.value, available)
            notification = PendingNotification(self._user_id, NotificationType.CREDITS_LOW, title, message)
            logger.info(
                "Credits low: user=%s category=%s available=%d threshold=%d",
                self._user_id,
                hold.category.value,
                available,
                self._low_threshold,
            )
        return result, notification

    async def release(self, hold_id: str, reason: str | None = None) -> tuple[int, CategoryBalance]:
        hold = await self._holds.get(hold_id, self._user_id)
        released = await self._holds.release(hold_id, reason, user_id=self._user_id)
        return released, await self._balances.category_balance(self._user_id, hold.category)

    async def list_holds(self, category: CreditCategory | None = None) -> list[CreditHold]:
        return await self._holds.list_active(self._user_id, category)

    async def balances(self) -> dict[CreditCategory, CategoryBalance]:
        return await self._balances.balances(self._user_id)

    async def history(
        self,
        category: CreditCategory | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LedgerEntry]:
        return await self._ledger.history(self._user_id, category, limit=limit, offset=offset)


async def reconcile_ledger(
    session: AsyncSession,
    user_id: str,
    clock: Callable[[], datetime] = utcnow,
) -> list[LedgerReconciliation]:
    """Re-sum every account of *user_id* and audit the outcome.

    Detection only: a drifted account is reported and audited as ``failed``
    but never rewritten.
    """
    ledger = LedgerStore(session, clock=clock)
    audit = AuditService(session)
    reports: list[LedgerReconciliation] = []
    for category in CreditCategory:
        report = await ledger.reconcile(user_id, category)
        await audit.record(
            AuditEvent.LEDGER_RECONCILED,
            user_id=user_id,
            status=AuditStatus.SUCCESS if report.consistent else AuditStatus.FAILED,
            details=ReconciliationDetails(
                category=category.value,
                ledger_sum=report.ledger_sum,
                cached_balance=report.cached_balance,
                entries_checked=report.entries_checked,
                first_mismatch_seq=report.first_mismatch_seq,
            ),
            now=clock(),
        )
        reports.append(report)
    return reports
