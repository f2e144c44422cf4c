"""Repository classes providing CRUD access to the credit state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).

Repositories never take account locks themselves, with the exception of the
audit chain, which must serialize on its own per-user key.  Serializing ledger
and hold writes is the job of the services in :mod:`credit_engine.ledger`.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.models.audit import AuditDetails, AuditEvent, AuditStatus, audit_details_adapter
from credit_engine.state import locking
from credit_engine.state.database import is_postgresql
from credit_engine.state.tables import (
    AuditLogTable,
    CreditHoldTable,
    CreditLedgerTable,
    InvoiceTable,
    NotificationTable,
    PaymentRetryAttemptTable,
    SubscriptionTable,
)

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    stmt: Any
    if is_postgresql(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# LedgerRepository
# ---------------------------------------------------------------------------


class LedgerRepository:
    """Read and append access to ``credit_ledger``.

    There is no update or delete method: ledger rows are
    immutable and corrections are made with compensating entries.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def latest(self, user_id: str, category: str) -> CreditLedgerTable | None:
        """Return the entry with the highest ``entry_seq`` for an account."""
        stmt = (
            select(CreditLedgerTable)
            .where(
                CreditLedgerTable.user_id == user_id,
                CreditLedgerTable.credit_category == category,
            )
            .order_by(CreditLedgerTable.entry_seq.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def insert(
        self,
        *,
        user_id: str,
        category: str,
        amount: int,
        balance_after: int,
        entry_seq: int,
        source: str,
        reference_id: str | None,
        description: str | None,
        hold_id: str | None,
        created_at: datetime,
    ) -> CreditLedgerTable:
        row = CreditLedgerTable(
            id=_new_id(),
            user_id=user_id,
            credit_category=category,
            amount=amount,
            balance_after=balance_after,
            entry_seq=entry_seq,
            source=source,
            reference_id=reference_id,
            description=description,
            hold_id=hold_id,
            created_at=created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def sum_amounts(self, user_id: str, category: str) -> int:
        stmt = select(func.coalesce(func.sum(CreditLedgerTable.amount), 0)).where(
            CreditLedgerTable.user_id == user_id,
            CreditLedgerTable.credit_category == category,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def list_in_order(self, user_id: str, category: str) -> list[CreditLedgerTable]:
        """Return every entry of an account, oldest first."""
        stmt = (
            select(CreditLedgerTable)
            .where(
                CreditLedgerTable.user_id == user_id,
                CreditLedgerTable.credit_category == category,
            )
            .order_by(CreditLedgerTable.entry_seq.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_recent(
        self,
        user_id: str,
        category: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CreditLedgerTable]:
        """Return entries for a user, newest first."""
        stmt = select(CreditLedgerTable).where(CreditLedgerTable.user_id == user_id)
        if category is not None:
            stmt = stmt.where(CreditLedgerTable.credit_category == category)
        stmt = (
            stmt.order_by(CreditLedgerTable.created_at.desc(), CreditLedgerTable.entry_seq.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_reference(self, reference_id: str) -> list[CreditLedgerTable]:
        stmt = (
            select(CreditLedgerTable)
            .where(CreditLedgerTable.reference_id == reference_id)
            .order_by(CreditLedgerTable.created_at.asc(), CreditLedgerTable.entry_seq.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# HoldRepository
# ---------------------------------------------------------------------------


class HoldRepository:
    """Persistence for ``credit_holds``.

    Status transitions are conditional updates guarded by
    ``status = 'active'`` so that a hold can leave the active state at most
    once even when two transactions race on the same row.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert(
        self,
        *,
        user_id: str,
        category: str,
        amount: int,
        reference_id: str,
        expires_at: datetime,
        created_at: datetime,
    ) -> CreditHoldTable:
        row = CreditHoldTable(
            id=_new_id(),
            user_id=user_id,
            credit_category=category,
            amount=amount,
            reference_id=reference_id,
            status="active",
            expires_at=expires_at,
            created_at=created_at,
            updated_at=created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, hold_id: str) -> CreditHoldTable | None:
        stmt = select(CreditHoldTable).where(CreditHoldTable.id == hold_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def sum_active(self, user_id: str, category: str, now: datetime) -> int:
        """Sum of holds that are active and not yet past their expiry."""
        stmt = select(func.coalesce(func.sum(CreditHoldTable.amount), 0)).where(
            CreditHoldTable.user_id == user_id,
            CreditHoldTable.credit_category == category,
            CreditHoldTable.status == "active",
            CreditHoldTable.expires_at > now,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def list_active(
        self,
        user_id: str,
        now: datetime,
        category: str | None = None,
    ) -> list[CreditHoldTable]:
        stmt = select(CreditHoldTable).where(
            CreditHoldTable.user_id == user_id,
            CreditHoldTable.status == "active",
            CreditHoldTable.expires_at > now,
        )
        if category is not None:
            stmt = stmt.where(CreditHoldTable.credit_category == category)
        stmt = stmt.order_by(CreditHoldTable.created_at.asc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def transition(
        self,
        hold_id: str,
        status: str,
        now: datetime,
        *,
        ledger_entry_id: str | None = None,
        release_reason: str | None = None,
    ) -> bool:
        """Move an active hold to *status*.  Returns ``False`` if it was not active."""
        values: dict[str, Any] = {"status": status, "resolved_at": now, "updated_at": now}
        if ledger_entry_id is not None:
            values["ledger_entry_id"] = ledger_entry_id
        if release_reason is not None:
            values["release_reason"] = release_reason
        stmt = (
            update(CreditHoldTable)
            .where(CreditHoldTable.id == hold_id, CreditHoldTable.status == "active")
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) == 1  # type: ignore[attr-defined]

    async def expire_due(self, now: datetime) -> list[tuple[str, str, str, int]]:
        """Mark every active hold with ``expires_at <= now`` as expired.

        The expiry predicate is evaluated by the UPDATE itself, so a hold
        converted or released by a concurrent transaction is never touched.

        Returns
        -------
        list[tuple[str, str, str, int]]
            ``(hold_id, user_id, category, amount)`` for each expired hold.
        """
        stmt = (
            update(CreditHoldTable)
            .where(CreditHoldTable.status == "active", CreditHoldTable.expires_at <= now)
            .values(status="expired", resolved_at=now, updated_at=now)
            .returning(
                CreditHoldTable.id,
                CreditHoldTable.user_id,
                CreditHoldTable.credit_category,
                CreditHoldTable.amount,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        rows = [(r[0], r[1], r[2], int(r[3])) for r in result.all()]
        await self._session.flush()
        return rows


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """CRUD for ``subscriptions``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        user_id: str,
        plan_id: str,
        status: str,
        period_start: datetime,
        period_end: datetime,
        trial_ends_at: datetime | None = None,
    ) -> SubscriptionTable:
        row = SubscriptionTable(
            id=_new_id(),
            user_id=user_id,
            plan_id=plan_id,
            status=status,
            current_period_start=period_start,
            current_period_end=period_end,
            trial_ends_at=trial_ends_at,
            created_at=period_start,
            updated_at=period_start,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, subscription_id: str, *, for_update: bool = False) -> SubscriptionTable | None:
        stmt = select(SubscriptionTable).where(SubscriptionTable.id == subscription_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_user(self, user_id: str, *, for_update: bool = False) -> SubscriptionTable | None:
        stmt = select(SubscriptionTable).where(SubscriptionTable.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_due(self, due_before: datetime, statuses: list[str], limit: int) -> list[tuple[str, str]]:
        """Return ``(subscription_id, user_id)`` in *statuses* whose period ends before *due_before*."""
        stmt = (
            select(SubscriptionTable.id, SubscriptionTable.user_id)
            .where(
                SubscriptionTable.status.in_(statuses),
                SubscriptionTable.current_period_end < due_before,
            )
            .order_by(SubscriptionTable.current_period_end.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [(r[0], r[1]) for r in result.all()]

    async def update(self, row: SubscriptionTable, now: datetime, **values: Any) -> SubscriptionTable:
        for key, value in values.items():
            setattr(row, key, value)
        row.updated_at = now
        await self._session.flush()
        return row


# ---------------------------------------------------------------------------
# InvoiceRepository
# ---------------------------------------------------------------------------


class InvoiceRepository:
    """CRUD operations for the ``invoices`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @staticmethod
    def next_invoice_number(now: datetime) -> str:
        """Generate an invoice number of the form ``INV-YYYYMMDD-XXXXXXXXXX``."""
        return f"INV-{now.strftime('%Y%m%d')}-{uuid.uuid4().hex[:10].upper()}"

    async def create(
        self,
        *,
        user_id: str,
        kind: str,
        amount: int,
        now: datetime,
        line_items: dict[str, Any],
        subscription_id: str | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> InvoiceTable:
        row = InvoiceTable(
            id=_new_id(),
            invoice_number=self.next_invoice_number(now),
            user_id=user_id,
            subscription_id=subscription_id,
            kind=kind,
            period_start=period_start,
            period_end=period_end,
            amount=amount,
            status="pending",
            line_items_json=line_items,
            created_at=now,
            updated_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_or_create_for_period(
        self,
        *,
        user_id: str,
        subscription_id: str,
        kind: str,
        amount: int,
        period_start: datetime,
        period_end: datetime,
        now: datetime,
        line_items: dict[str, Any],
    ) -> tuple[InvoiceTable, bool]:
        """Return the invoice for a subscription period, creating it if absent.

        Returns
        -------
        tuple[InvoiceTable, bool]
            ``(invoice, created)``.
        """
        result = await _dialect_insert_nothing(
            self._session,
            InvoiceTable,
            values={
                "id": _new_id(),
                "invoice_number": self.next_invoice_number(now),
                "user_id": user_id,
                "subscription_id": subscription_id,
                "kind": kind,
                "period_start": period_start,
                "period_end": period_end,
                "amount": amount,
                "currency": "IDR",
                "status": "pending",
                "line_items_json": line_items,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["subscription_id", "kind", "period_start"],
        )
        created = (result.rowcount or 0) > 0  # type: ignore[attr-defined]
        stmt = select(InvoiceTable).where(
            InvoiceTable.subscription_id == subscription_id,
            InvoiceTable.kind == kind,
            InvoiceTable.period_start == period_start,
        )
        row = (await self._session.execute(stmt)).scalar_one()
        return row, created

    async def get(self, invoice_id: str, *, for_update: bool = False) -> InvoiceTable | None:
        stmt = select(InvoiceTable).where(InvoiceTable.id == invoice_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_transaction(self, invoice_id: str, transaction_id: str, now: datetime) -> None:
        stmt = (
            update(InvoiceTable)
            .where(InvoiceTable.id == invoice_id)
            .values(gateway_transaction_id=transaction_id, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def mark_paid(self, row: InvoiceTable, now: datetime) -> None:
        row.status = "paid"
        row.paid_at = now
        row.failure_reason = None
        row.updated_at = now
        await self._session.flush()

    async def mark_failed(self, row: InvoiceTable, now: datetime, reason: str) -> None:
        """Mark an invoice failed.  ``failed_at`` is only set on the first failure."""
        row.status = "failed"
        row.failure_reason = reason
        if row.failed_at is None:
            row.failed_at = now
        row.updated_at = now
        await self._session.flush()

    async def mark_cancelled(self, row: InvoiceTable, now: datetime) -> None:
        row.status = "cancelled"
        row.updated_at = now
        await self._session.flush()

    async def list_for_user(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[InvoiceTable], int]:
        """List invoices for a user, newest first.

        Returns
        -------
        tuple
            ``(rows, total_count)`` for pagination support.
        """
        count_r = await self._session.execute(
            select(func.count()).select_from(InvoiceTable).where(InvoiceTable.user_id == user_id)
        )
        total = count_r.scalar_one()

        stmt = (
            select(InvoiceTable)
            .where(InvoiceTable.user_id == user_id)
            .order_by(InvoiceTable.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def list_recent_paid(self, kind: str, limit: int = 10) -> list[InvoiceTable]:
        stmt = (
            select(InvoiceTable)
            .where(InvoiceTable.kind == kind, InvoiceTable.status == "paid")
            .order_by(InvoiceTable.paid_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# RetryAttemptRepository
# ---------------------------------------------------------------------------


class RetryAttemptRepository:
    """Persistence for ``payment_retry_attempts``.

    ``(invoice_id, attempt_number)`` is unique, so scheduling the same attempt
    twice after a crash is a no-op.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def schedule(
        self,
        *,
        subscription_id: str,
        invoice_id: str,
        attempt_number: int,
        retry_date: datetime,
        now: datetime,
    ) -> PaymentRetryAttemptTable:
        await _dialect_insert_nothing(
            self._session,
            PaymentRetryAttemptTable,
            values={
                "id": _new_id(),
                "subscription_id": subscription_id,
                "invoice_id": invoice_id,
                "attempt_number": attempt_number,
                "retry_date": retry_date,
                "status": "pending",
                "created_at": now,
            },
            index_elements=["invoice_id", "attempt_number"],
        )
        stmt = select(PaymentRetryAttemptTable).where(
            PaymentRetryAttemptTable.invoice_id == invoice_id,
            PaymentRetryAttemptTable.attempt_number == attempt_number,
        )
        return (await self._session.execute(stmt)).scalar_one()

    async def get(self, attempt_id: str, *, for_update: bool = False) -> PaymentRetryAttemptTable | None:
        stmt = select(PaymentRetryAttemptTable).where(PaymentRetryAttemptTable.id == attempt_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_due(self, due_before: datetime, limit: int) -> list[tuple[str, str, str]]:
        """Return ``(attempt_id, subscription_id, user_id)`` for pending attempts dated before *due_before*."""
        stmt = (
            select(
                PaymentRetryAttemptTable.id,
                PaymentRetryAttemptTable.subscription_id,
                SubscriptionTable.user_id,
            )
            .join(SubscriptionTable, SubscriptionTable.id == PaymentRetryAttemptTable.subscription_id)
            .where(
                PaymentRetryAttemptTable.status == "pending",
                PaymentRetryAttemptTable.retry_date < due_before,
            )
            .order_by(PaymentRetryAttemptTable.retry_date.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [(r[0], r[1], r[2]) for r in result.all()]

    async def pending_for_subscription(self, subscription_id: str) -> list[PaymentRetryAttemptTable]:
        stmt = (
            select(PaymentRetryAttemptTable)
            .where(
                PaymentRetryAttemptTable.subscription_id == subscription_id,
                PaymentRetryAttemptTable.status == "pending",
            )
            .order_by(PaymentRetryAttemptTable.attempt_number.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_invoice(self, invoice_id: str) -> list[PaymentRetryAttemptTable]:
        stmt = (
            select(PaymentRetryAttemptTable)
            .where(PaymentRetryAttemptTable.invoice_id == invoice_id)
            .order_by(PaymentRetryAttemptTable.attempt_number.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def set_transaction(self, attempt_id: str, transaction_id: str) -> None:
        stmt = (
            update(PaymentRetryAttemptTable)
            .where(PaymentRetryAttemptTable.id == attempt_id)
            .values(gateway_transaction_id=transaction_id)
            .execution_options(synchronize_session="fetch")
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def resolve(
        self,
        row: PaymentRetryAttemptTable,
        status: str,
        now: datetime,
        error: str | None = None,
    ) -> None:
        row.status = status
        row.processed_at = now
        row.error = error
        await self._session.flush()


# ---------------------------------------------------------------------------
# AuditRepository
# ---------------------------------------------------------------------------


class AuditRepository:
    """Append-only audit log repository with hash-chaining for tamper evidence.

    Each audit entry is linked to its predecessor for the same user via
    ``previous_hash``, forming a per-user tamper-evident chain.
    ``entry_hash`` is a SHA-256 digest of the entry's content fields
    concatenated with the previous hash, so any modification to an existing
    row will break the chain for all subsequent entries.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @staticmethod
    def _compute_hash(
        event_type: str,
        user_id: str,
        subscription_id: str | None,
        status: str,
        details: dict[str, Any],
        chain_seq: int,
        previous_hash: str | None,
        created_at: datetime,
    ) -> str:
        """Compute SHA-256 hash over entry content fields.

        The hash is computed over the concatenation of all content fields
        separated by ``|``.  ``None`` values are represented as the empty
        string in the hash input.
        """
        parts = [
            event_type,
            user_id,
            subscription_id or "",
            status,
            json.dumps(details, sort_keys=True, default=str),
            str(chain_seq),
            previous_hash or "",
            created_at.isoformat(),
        ]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()

    async def _latest(self, user_id: str) -> AuditLogTable | None:
        stmt = (
            select(AuditLogTable)
            .where(AuditLogTable.user_id == user_id)
            .order_by(AuditLogTable.chain_seq.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def log(
        self,
        *,
        event_type: str,
        user_id: str,
        status: str,
        details: dict[str, Any],
        subscription_id: str | None = None,
        now: datetime | None = None,
    ) -> str:
        """Write an audit entry. Returns the entry ID."""
        entry_id = _new_id()
        created_at = (now or datetime.now(UTC)).astimezone(UTC)

        # Two concurrent inserts could both read the same previous_hash,
        # creating a fork in the chain.
        await locking.acquire(self._session, locking.lock_key("audit", user_id))

        latest = await self._latest(user_id)
        previous_hash = latest.entry_hash if latest is not None else None
        chain_seq = latest.chain_seq + 1 if latest is not None else 1

        entry_hash = self._compute_hash(
            event_type=event_type,
            user_id=user_id,
            subscription_id=subscription_id,
            status=status,
            details=details,
            chain_seq=chain_seq,
            previous_hash=previous_hash,
            created_at=created_at,
        )

        row = AuditLogTable(
            id=entry_id,
            event_type=event_type,
            user_id=user_id,
            subscription_id=subscription_id,
            status=status,
            details_json=details,
            chain_seq=chain_seq,
            previous_hash=previous_hash,
            entry_hash=entry_hash,
            created_at=created_at,
        )
        self._session.add(row)
        await self._session.flush()

        logger.info(
            "Audit: user=%s event=%s status=%s subscription=%s",
            user_id,
            event_type,
            status,
            subscription_id or "-",
        )
        return entry_id

    async def record(
        self,
        event: AuditEvent,
        *,
        user_id: str,
        status: AuditStatus,
        details: AuditDetails,
        subscription_id: str | None = None,
        now: datetime | None = None,
    ) -> str:
        """Typed front door for :meth:`log` using the closed detail variants."""
        payload = audit_details_adapter.dump_python(details, mode="json")
        return await self.log(
            event_type=event.value,
            user_id=user_id,
            status=status.value,
            details=payload,
            subscription_id=subscription_id,
            now=now,
        )

    async def query(
        self,
        *,
        user_id: str | None = None,
        event_type: str | None = None,
        subscription_id: str | None = None,
        since: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditLogTable]:
        """Query audit log entries with filters, most recent first."""
        stmt = select(AuditLogTable)

        if user_id is not None:
            stmt = stmt.where(AuditLogTable.user_id == user_id)
        if event_type is not None:
            stmt = stmt.where(AuditLogTable.event_type == event_type)
        if subscription_id is not None:
            stmt = stmt.where(AuditLogTable.subscription_id == subscription_id)
        if since is not None:
            stmt = stmt.where(AuditLogTable.created_at >= since)

        stmt = (
            stmt.order_by(AuditLogTable.created_at.desc(), AuditLogTable.chain_seq.desc()).limit(limit).offset(offset)
        )

        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def verify_chain(self, user_id: str, *, limit: int = 1000) -> tuple[bool, int]:
        """Verify the hash chain integrity for one user.

        Returns
        -------
        tuple[bool, int]
            ``(is_valid, entries_checked)`` where ``is_valid`` is ``True``
            only if every entry's hash matches and the chain links are intact.
        """
        stmt = (
            select(AuditLogTable)
            .where(AuditLogTable.user_id == user_id)
            .order_by(AuditLogTable.chain_seq.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        entries = list(result.scalars().all())

        checked = 0
        previous_hash: str | None = None

        for entry in entries:
            if entry.previous_hash != previous_hash:
                logger.warning(
                    "Audit chain break at entry %s: expected previous_hash=%s, got=%s",
                    entry.id,
                    previous_hash,
                    entry.previous_hash,
                )
                return (False, checked)

            expected_hash = self._compute_hash(
                event_type=entry.event_type,
                user_id=entry.user_id,
                subscription_id=entry.subscription_id,
                status=entry.status,
                details=entry.details_json,
                chain_seq=entry.chain_seq,
                previous_hash=entry.previous_hash,
                created_at=entry.created_at,
            )
            if entry.entry_hash != expected_hash:
                logger.warning(
                    "Audit hash mismatch at entry %s: stored=%s, computed=%s",
                    entry.id,
                    entry.entry_hash,
                    expected_hash,
                )
                return (False, checked)

            previous_hash = entry.entry_hash
            checked += 1

        return (True, checked)


# ---------------------------------------------------------------------------
# NotificationRepository
# ---------------------------------------------------------------------------


class NotificationRepository:
    """CRUD for ``notifications``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, *, user_id: str, type: str, title: str, message: str) -> NotificationTable:
        row = NotificationTable(
            id=_new_id(),
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            is_read=False,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_user(
        self,
        user_id: str,
        *,
        unread_only: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> list[NotificationTable]:
        stmt = select(NotificationTable).where(NotificationTable.user_id == user_id)
        if unread_only:
            stmt = stmt.where(NotificationTable.is_read.is_(False))
        stmt = stmt.order_by(NotificationTable.created_at.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def mark_read(self, user_id: str, notification_ids: list[str]) -> int:
        stmt = (
            update(NotificationTable)
            .where(NotificationTable.user_id == user_id, NotificationTable.id.in_(notification_ids))
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def delete(self, user_id: str, notification_ids: list[str]) -> int:
        stmt = (
            delete(NotificationTable)
            .where(NotificationTable.user_id == user_id, NotificationTable.id.in_(notification_ids))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]
