"""Credit hold lifecycle: reserve, convert, release, expire.

A hold removes credits from the *available* balance without touching the
ledger.  Each hold leaves the ``active`` state exactly once:

* ``convert`` writes a usage debit (and a refund credit for any unused part)
  and marks the hold ``converted``;
* ``release`` marks it ``released`` and writes nothing to the ledger;
* ``cleanup_expired`` marks overdue holds ``expired`` and writes nothing.

``hold``, ``convert`` and ``release`` each run inside the caller's single
transaction under the per-account lock, so a failure at any point rolls the
whole operation back.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.errors import HoldExpired, HoldNotFound, InsufficientCredits, InvalidCreditRequest
from credit_engine.ledger.store import LedgerStore, utcnow
from credit_engine.models.audit import (
    AuditEvent,
    AuditStatus,
    ConversionDetails,
    HoldDetails,
    SweepDetails,
)
from credit_engine.models.credits import (
    DEFAULT_HOLD_TTL_MINUTES,
    MAX_HOLD_TTL_MINUTES,
    MIN_HOLD_TTL_MINUTES,
    ConversionResult,
    CreditCategory,
    CreditHold,
    HoldStatus,
    LedgerSource,
)
from credit_engine.state.locking import lock_account
from credit_engine.state.repository import AuditRepository, HoldRepository
from credit_engine.state.tables import CreditHoldTable

logger = logging.getLogger(__name__)


def to_hold(row: CreditHoldTable) -> CreditHold:
    return CreditHold(
        id=row.id,
        user_id=row.user_id,
        category=CreditCategory(row.credit_category),
        amount=row.amount,
        reference_id=row.reference_id,
        status=HoldStatus(row.status),
        expires_at=row.expires_at,
        release_reason=row.release_reason,
        ledger_entry_id=row.ledger_entry_id,
        created_at=row.created_at,
        resolved_at=row.resolved_at,
    )


class HoldManager:
    """Creates and resolves credit holds against the ledger.

    Parameters
    ----------
    session:
        Async session; every operation joins its current transaction.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utcnow) -> None:
        self._session = session
        self._clock = clock
        self._holds = HoldRepository(session)
        self._ledger = LedgerStore(session, clock=clock)
        self._audit = AuditRepository(session)

    # -- reads ---------------------------------------------------------------

    async def held_amount(self, user_id: str, category: CreditCategory) -> int:
        """Sum of active, unexpired holds for an account."""
        return await self._holds.sum_active(user_id, category.value, self._clock())

    async def available(self, user_id: str, category: CreditCategory) -> int:
        total = await self._ledger.balance(user_id, category)
        return total - await self.held_amount(user_id, category)

    async def list_active(self, user_id: str, category: CreditCategory | None = None) -> list[CreditHold]:
        rows = await self._holds.list_active(
            user_id,
            self._clock(),
            category.value if category is not None else None,
        )
        return [to_hold(r) for r in rows]

    async def get(self, hold_id: str, user_id: str) -> CreditHold:
        row = await self._holds.get(hold_id)
        if row is None or row.user_id != user_id:
            raise HoldNotFound(hold_id)
        return to_hold(row)

    # -- state transitions ---------------------------------------------------

    async def hold(
        self,
        user_id: str,
        category: CreditCategory,
        amount: int,
        reference_id: str,
        ttl_minutes: int = DEFAULT_HOLD_TTL_MINUTES,
    ) -> CreditHold:
        """Reserve *amount* credits for *ttl_minutes*.

        Raises
        ------
        InvalidCreditRequest
            If the amount, reference or TTL is out of range.
        InsufficientCredits
            If the available balance is below *amount*.
        """
        if amount <= 0:
            raise InvalidCreditRequest("Hold amount must be a positive integer")
        if not reference_id or not reference_id.strip():
            raise InvalidCreditRequest("reference_id is required")
        if not MIN_HOLD_TTL_MINUTES <= ttl_minutes <= MAX_HOLD_TTL_MINUTES:
            raise InvalidCreditRequest(
                f"ttl_minutes must be between {MIN_HOLD_TTL_MINUTES} and {MAX_HOLD_TTL_MINUTES}"
            )

        # The balance read and the insert below must not interleave with
        # another hold or append on the same account.
        await lock_account(self._session, user_id, category.value)

        now = self._clock()
        available = await self.available(user_id, category)
        if available < amount:
            logger.info(
                "Hold rejected: user=%s category=%s required=%d available=%d",
                user_id,
                category.value,
                amount,
                available,
            )
            raise InsufficientCredits(available=available, required=amount)

        row = await self._holds.insert(
            user_id=user_id,
            category=category.value,
            amount=amount,
            reference_id=reference_id,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )
        await self._audit.record(
            AuditEvent.HOLD_CREATED,
            user_id=user_id,
            status=AuditStatus.SUCCESS,
            details=HoldDetails(
                hold_id=row.id,
                category=category.value,
                amount=amount,
                reference_id=reference_id,
            ),
            now=now,
        )
        logger.info(
            "Hold created: id=%s user=%s category=%s amount=%d expires_at=%s",
            row.id,
            user_id,
            category.value,
            amount,
            row.expires_at.isoformat(),
        )
        return to_hold(row)

    async def _load_active(self, hold_id: str, user_id: str | None) -> CreditHoldTable:
        row = await self._holds.get(hold_id)
        if row is None or (user_id is not None and row.user_id != user_id):
            raise HoldNotFound(hold_id)
        # Serialize with other writers on this account before re-checking status.
        await lock_account(self._session, row.user_id, row.credit_category)
        await self._session.refresh(row)
        if row.status != HoldStatus.ACTIVE.value:
            raise HoldNotFound(hold_id)
        if row.expires_at <= self._clock():
            raise HoldExpired(hold_id, row.expires_at)
        return row

    async def convert(
        self,
        hold_id: str,
        actual_amount: int,
        description: str | None = None,
        *,
        user_id: str | None = None,
    ) -> ConversionResult:
        """Charge *actual_amount* of an active hold to the ledger.

        The full held amount is debited as ``usage``; if *actual_amount* is
        below it, the unused difference is written back as a separate
        ``refund`` credit, so the net ledger change is ``-actual_amount``.

        Raises
        ------
        HoldNotFound
            If the hold is missing, owned by another user, or not active.
        HoldExpired
            If the hold is still active but past its expiry.
        InvalidCreditRequest
            If *actual_amount* is not within ``1..hold.amount``.
        """
        row = await self._load_active(hold_id, user_id)
        if not 1 <= actual_amount <= row.amount:
            raise InvalidCreditRequest(f"actual_amount must be between 1 and the held amount ({row.amount})")

        now = self._clock()
        category = CreditCategory(row.credit_category)
        if not await self._holds.transition(hold_id, HoldStatus.CONVERTED.value, now):
            raise HoldNotFound(hold_id)

        label = description or "Usage"
        debit = await self._ledger.append(
            row.user_id,
            category,
            -row.amount,
            LedgerSource.USAGE,
            reference_id=row.reference_id,
            description=f"{label} - {row.amount} {category.value} credits",
            hold_id=hold_id,
        )
        refunded = row.amount - actual_amount
        remaining = debit.balance_after
        if refunded > 0:
            refund = await self._ledger.append(
                row.user_id,
                category,
                refunded,
                LedgerSource.REFUND,
                reference_id=row.reference_id,
                description=f"Refund - {refunded} unused {category.value} credits",
                hold_id=hold_id,
            )
            remaining = refund.balance_after

        row.ledger_entry_id = debit.entry_id
        await self._session.flush()

        await self._audit.record(
            AuditEvent.HOLD_CONVERTED,
            user_id=row.user_id,
            status=AuditStatus.SUCCESS,
            details=ConversionDetails(
                hold_id=hold_id,
                category=category.value,
                transaction_id=debit.entry_id,
                debited_amount=actual_amount,
                refunded_amount=refunded,
            ),
            now=now,
        )
        logger.info(
            "Hold converted: id=%s debited=%d refunded=%d remaining=%d",
            hold_id,
            actual_amount,
            refunded,
            remaining,
        )
        return ConversionResult(
            transaction_id=debit.entry_id,
            debited_amount=actual_amount,
            refunded_amount=refunded,
            remaining_balance=remaining,
        )

    async def release(
        self,
        hold_id: str,
        reason: str | None = None,
        *,
        user_id: str | None = None,
    ) -> int:
        """Release an active hold without any ledger effect.

        Returns the released amount.
        """
        row = await self._load_active(hold_id, user_id)
        now = self._clock()
        if not await self._holds.transition(
            hold_id,
            HoldStatus.RELEASED.value,
            now,
            release_reason=reason,
        ):
            raise HoldNotFound(hold_id)

        await self._audit.record(
            AuditEvent.HOLD_RELEASED,
            user_id=row.user_id,
            status=AuditStatus.SUCCESS,
            details=HoldDetails(
                hold_id=hold_id,
                category=row.credit_category,
                amount=row.amount,
                reference_id=row.reference_id,
                reason=reason,
            ),
            now=now,
        )
        logger.info("Hold released: id=%s amount=%d reason=%s", hold_id, row.amount, reason or "-")
        return row.amount

    async def cleanup_expired(self) -> int:
        """Expire every active hold whose ``expires_at`` has passed.

        Idempotent: a second run with no newly overdue holds expires nothing.
        One audit entry is written per affected user.
        """
        now = self._clock()
        expired = await self._holds.expire_due(now)
        if not expired:
            return 0

        by_user: dict[str, list[tuple[str, int]]] = {}
        for hold_id, user_id, _category, amount in expired:
            by_user.setdefault(user_id, []).append((hold_id, amount))

        for user_id, holds in sorted(by_user.items()):
            await self._audit.record(
                AuditEvent.HOLDS_EXPIRED,
                user_id=user_id,
                status=AuditStatus.SUCCESS,
                details=SweepDetails(
                    hold_ids=[h for h, _ in holds],
                    amount_released=sum(a for _, a in holds),
                ),
                now=now,
            )

        logger.info("Expired %d credit hold(s) for %d user(s)", len(expired), len(by_user))
        return len(expired)
