"""Append-only credit ledger.

The ledger is the single source of truth for balances.  Every balance change
is a new signed entry; the running balance is cached in ``balance_after`` of
the latest entry so that reads are O(1), and can always be rebuilt by
re-summing the account.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.errors import DatabaseError, InvalidCreditRequest
from credit_engine.models.credits import (
    AppendResult,
    CreditCategory,
    LedgerEntry,
    LedgerReconciliation,
    LedgerSource,
)
from credit_engine.state.locking import lock_account
from credit_engine.state.repository import LedgerRepository
from credit_engine.state.tables import CreditLedgerTable

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_entry(row: CreditLedgerTable) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        user_id=row.user_id,
        category=CreditCategory(row.credit_category),
        amount=row.amount,
        balance_after=row.balance_after,
        source=LedgerSource(row.source),
        reference_id=row.reference_id,
        description=row.description,
        hold_id=row.hold_id,
        entry_seq=row.entry_seq,
        created_at=row.created_at,
    )


class LedgerStore:
    """Append and read access to per-user, per-category credit accounts.

    Parameters
    ----------
    session:
        The async session whose transaction every append joins.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utcnow) -> None:
        self._session = session
        self._repo = LedgerRepository(session)
        self._clock = clock

    async def append(
        self,
        user_id: str,
        category: CreditCategory,
        amount: int,
        source: LedgerSource,
        reference_id: str | None = None,
        description: str | None = None,
        *,
        hold_id: str | None = None,
    ) -> AppendResult:
        """Append a signed entry and return its id with the new running balance.

        Appends for one account are serialized with :func:`lock_account`, so
        ``balance_after`` always equals the running sum of ``amount``.

        Raises
        ------
        InvalidCreditRequest
            If *amount* is zero.
        DatabaseError
            If the database rejects the append.  A taken per-account
            sequence means a writer bypassed the account lock.
        """
        if amount == 0:
            raise InvalidCreditRequest("Ledger entries must change the balance")

        try:
            await lock_account(self._session, user_id, category.value)

            latest = await self._repo.latest(user_id, category.value)
            previous_balance = latest.balance_after if latest is not None else 0
            next_seq = latest.entry_seq + 1 if latest is not None else 1
            balance_after = previous_balance + amount

            row = await self._repo.insert(
                user_id=user_id,
                category=category.value,
                amount=amount,
                balance_after=balance_after,
                entry_seq=next_seq,
                source=source.value,
                reference_id=reference_id,
                description=description,
                hold_id=hold_id,
                created_at=self._clock(),
            )
        except IntegrityError as exc:
            raise DatabaseError(
                f"Concurrent ledger append detected for user={user_id} category={category.value}"
            ) from exc
        except SQLAlchemyError as exc:
            raise DatabaseError(f"Ledger append failed for user={user_id} category={category.value}: {exc}") from exc

        logger.info(
            "Ledger append: user=%s category=%s amount=%d source=%s balance_after=%d",
            user_id,
            category.value,
            amount,
            source.value,
            balance_after,
        )
        return AppendResult(entry_id=row.id, balance_after=balance_after)

    async def balance(self, user_id: str, category: CreditCategory, *, resum: bool = False) -> int:
        """Return the current balance of an account.

        By default the cached ``balance_after`` of the latest entry is used.
        With ``resum=True`` the balance is recomputed from every entry.
        """
        if resum:
            return await self._repo.sum_amounts(user_id, category.value)
        latest = await self._repo.latest(user_id, category.value)
        return latest.balance_after if latest is not None else 0

    async def history(
        self,
        user_id: str,
        category: CreditCategory | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LedgerEntry]:
        rows = await self._repo.list_recent(
            user_id,
            category.value if category is not None else None,
            limit=limit,
            offset=offset,
        )
        return [to_entry(r) for r in rows]

    async def entries_for_reference(self, reference_id: str) -> list[LedgerEntry]:
        return [to_entry(r) for r in await self._repo.list_by_reference(reference_id)]

    async def reconcile(self, user_id: str, category: CreditCategory) -> LedgerReconciliation:
        """Re-sum an account and check every cached ``balance_after``.

        The first entry whose cached balance disagrees with the running sum
        is reported; the ledger itself is never modified.
        """
        running = 0
        first_mismatch: int | None = None
        rows = await self._repo.list_in_order(user_id, category.value)
        for row in rows:
            running += row.amount
            if first_mismatch is None and row.balance_after != running:
                first_mismatch = row.entry_seq

        cached = rows[-1].balance_after if rows else 0
        report = LedgerReconciliation(
            user_id=user_id,
            category=category,
            ledger_sum=running,
            cached_balance=cached,
            entries_checked=len(rows),
            first_mismatch_seq=first_mismatch,
        )
        if not report.consistent:
            logger.error(
                "Ledger drift: user=%s category=%s sum=%d cached=%d first_mismatch_seq=%s",
                user_id,
                category.value,
                running,
                cached,
                first_mismatch,
            )
        return report
