"""SQLAlchemy 2.0 ORM table definitions for the credit state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by Alembic migrations and the repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL for GIN indexing and
# query operators, falls back to plain JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware timestamp that round-trips as UTC on every dialect.

    SQLite stores timestamps without an offset, so values are normalised to
    naive UTC on the way in and tagged with ``UTC`` on the way out.  PostgreSQL
    keeps its native ``TIMESTAMP WITH TIME ZONE`` behaviour.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        if dialect.name == "sqlite":
            return value.astimezone(UTC).replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all credit-core tables."""


# ---------------------------------------------------------------------------
# Credit ledger
# ---------------------------------------------------------------------------


class CreditLedgerTable(Base):
    """Append-only record of every credit balance change.

    ``balance_after`` is a denormalised running balance written under the
    per-account lock; ``entry_seq`` orders entries within one
    ``(user_id, credit_category)`` account and is unique so that an append
    racing past the lock fails loudly instead of forking the running sum.
    ``hold_id`` is a plain lookup field, not a foreign key.
    """

    __tablename__ = "credit_ledger"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    credit_category: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    reference_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    hold_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_seq: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "credit_category IN ('scraper','interaction')",
            name="ck_credit_ledger_category",
        ),
        CheckConstraint(
            "source IN ('trial_allocation','monthly_allocation','topup_purchase','usage','refund','monthly_reset')",
            name="ck_credit_ledger_source",
        ),
        UniqueConstraint("user_id", "credit_category", "entry_seq", name="uq_credit_ledger_account_seq"),
        Index("ix_credit_ledger_reference", "reference_id"),
        Index("ix_credit_ledger_hold", "hold_id"),
        Index("ix_credit_ledger_user_created", "user_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Credit holds
# ---------------------------------------------------------------------------


class CreditHoldTable(Base):
    """Temporary credit reservations.

    Rows only ever move from ``active`` to one terminal status; they are never
    deleted so that a converted hold can be traced to its ledger debit.
    """

    __tablename__ = "credit_holds"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    credit_category: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_id: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    release_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    ledger_entry_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_credit_holds_amount_positive"),
        CheckConstraint(
            "status IN ('active','converted','released','expired')",
            name="ck_credit_holds_status",
        ),
        Index("ix_credit_holds_account_status", "user_id", "credit_category", "status"),
        Index("ix_credit_holds_status_expires", "status", "expires_at"),
        Index("ix_credit_holds_reference", "reference_id"),
    )


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionTable(Base):
    """One subscription per user; mutated only by the billing services."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    plan_id: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    current_period_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('trial','active','past_due','cancelled')",
            name="ck_subscriptions_status",
        ),
        Index("ix_subscriptions_status_period_end", "status", "current_period_end"),
    )


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceTable(Base):
    """Charges raised against a user, one per subscription period for renewals.

    The ``(subscription_id, kind, period_start)`` key makes renewal invoice
    creation idempotent across crashed and resumed billing passes.
    """

    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="IDR")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    line_items_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft','pending','paid','failed','cancelled')",
            name="ck_invoices_status",
        ),
        UniqueConstraint("subscription_id", "kind", "period_start", name="uq_invoices_subscription_period"),
        Index("ix_invoices_user_created", "user_id", "created_at"),
        Index("ix_invoices_gateway_transaction", "gateway_transaction_id"),
    )


# ---------------------------------------------------------------------------
# Payment retry attempts
# ---------------------------------------------------------------------------


class PaymentRetryAttemptTable(Base):
    """Scheduled payment retries for a failed renewal invoice."""

    __tablename__ = "payment_retry_attempts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False)
    invoice_id: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    retry_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("attempt_number BETWEEN 1 AND 5", name="ck_retry_attempt_number"),
        CheckConstraint(
            "status IN ('pending','processed','failed')",
            name="ck_retry_attempt_status",
        ),
        UniqueConstraint("invoice_id", "attempt_number", name="uq_retry_attempt_invoice_number"),
        Index("ix_retry_attempts_status_date", "status", "retry_date"),
        Index("ix_retry_attempts_subscription", "subscription_id", "status"),
    )


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditLogTable(Base):
    """Append-only billing and credit audit log with per-user hash chaining.

    ``entry_hash`` is a SHA-256 digest over the entry's content fields and the
    preceding entry's hash for the same user, so rewriting any row breaks the
    chain for every later entry.
    """

    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    details_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    chain_seq: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('success','failed','error')", name="ck_audit_status"),
        UniqueConstraint("user_id", "chain_seq", name="uq_audit_user_chain_seq"),
        Index("ix_audit_user_created", "user_id", "created_at"),
        Index("ix_audit_event_type", "event_type"),
        Index("ix_audit_subscription", "subscription_id"),
    )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationTable(Base):
    """User-facing notification requests emitted by the billing services."""

    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "type IN ('welcome','billing_success','billing_failed','credits_low','subscription_cancelled')",
            name="ck_notifications_type",
        ),
        Index("ix_notifications_user_created", "user_id", "created_at"),
    )
