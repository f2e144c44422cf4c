"""Create the credit ledger, holds, billing and audit tables.

Revision ID: 001
Revises:
Create Date: 2026-10-05 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = "001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def _ts(name: str, *, nullable: bool = False, default_now: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if default_now else None,
    )


def upgrade() -> None:
    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("credit_category", sa.String(32), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("balance_after", sa.BigInteger(), nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("reference_id", sa.String(256), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("hold_id", sa.String(64), nullable=True),
        sa.Column("entry_seq", sa.Integer(), nullable=False),
        _ts("created_at", default_now=True),
        sa.CheckConstraint("credit_category IN ('scraper','interaction')", name="ck_credit_ledger_category"),
        sa.CheckConstraint(
            "source IN ('trial_allocation','monthly_allocation','topup_purchase','usage','refund','monthly_reset')",
            name="ck_credit_ledger_source",
        ),
        sa.UniqueConstraint("user_id", "credit_category", "entry_seq", name="uq_credit_ledger_account_seq"),
    )
    op.create_index("ix_credit_ledger_reference", "credit_ledger", ["reference_id"])
    op.create_index("ix_credit_ledger_hold", "credit_ledger", ["hold_id"])
    op.create_index("ix_credit_ledger_user_created", "credit_ledger", ["user_id", "created_at"])

    op.create_table(
        "credit_holds",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("credit_category", sa.String(32), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("reference_id", sa.String(256), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        _ts("expires_at"),
        sa.Column("release_reason", sa.Text(), nullable=True),
        sa.Column("ledger_entry_id", sa.String(64), nullable=True),
        _ts("created_at", default_now=True),
        _ts("updated_at", default_now=True),
        _ts("resolved_at", nullable=True),
        sa.CheckConstraint("amount > 0", name="ck_credit_holds_amount_positive"),
        sa.CheckConstraint(
            "status IN ('active','converted','released','expired')",
            name="ck_credit_holds_status",
        ),
    )
    op.create_index(
        "ix_credit_holds_account_status",
        "credit_holds",
        ["user_id", "credit_category", "status"],
    )
    op.create_index("ix_credit_holds_status_expires", "credit_holds", ["status", "expires_at"])
    op.create_index("ix_credit_holds_reference", "credit_holds", ["reference_id"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False, unique=True),
        sa.Column("plan_id", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        _ts("current_period_start"),
        _ts("current_period_end"),
        _ts("trial_ends_at", nullable=True),
        _ts("cancelled_at", nullable=True),
        _ts("created_at", default_now=True),
        _ts("updated_at", default_now=True),
        sa.CheckConstraint(
            "status IN ('trial','active','past_due','cancelled')",
            name="ck_subscriptions_status",
        ),
    )
    op.create_index(
        "ix_subscriptions_status_period_end",
        "subscriptions",
        ["status", "current_period_end"],
    )

    op.create_table(
        "invoices",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("invoice_number", sa.String(64), nullable=False, unique=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("subscription_id", sa.String(64), nullable=True),
        sa.Column("kind", sa.String(32), nullable=False),
        _ts("period_start", nullable=True),
        _ts("period_end", nullable=True),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False, server_default="IDR"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("gateway_transaction_id", sa.String(256), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        _ts("failed_at", nullable=True),
        _ts("paid_at", nullable=True),
        sa.Column("line_items_json", _JSON, nullable=False),
        _ts("created_at", default_now=True),
        _ts("updated_at", default_now=True),
        sa.CheckConstraint(
            "status IN ('draft','pending','paid','failed','cancelled')",
            name="ck_invoices_status",
        ),
        sa.UniqueConstraint("subscription_id", "kind", "period_start", name="uq_invoices_subscription_period"),
    )
    op.create_index("ix_invoices_user_created", "invoices", ["user_id", "created_at"])
    op.create_index("ix_invoices_gateway_transaction", "invoices", ["gateway_transaction_id"])

    op.create_table(
        "payment_retry_attempts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("subscription_id", sa.String(64), nullable=False),
        sa.Column("invoice_id", sa.String(64), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        _ts("retry_date"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("gateway_transaction_id", sa.String(256), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        _ts("processed_at", nullable=True),
        _ts("created_at", default_now=True),
        sa.CheckConstraint("attempt_number BETWEEN 1 AND 5", name="ck_retry_attempt_number"),
        sa.CheckConstraint(
            "status IN ('pending','processed','failed')",
            name="ck_retry_attempt_status",
        ),
        sa.UniqueConstraint("invoice_id", "attempt_number", name="uq_retry_attempt_invoice_number"),
    )
    op.create_index(
        "ix_retry_attempts_status_date",
        "payment_retry_attempts",
        ["status", "retry_date"],
    )
    op.create_index(
        "ix_retry_attempts_subscription",
        "payment_retry_attempts",
        ["subscription_id", "status"],
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("subscription_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("details_json", _JSON, nullable=False),
        sa.Column("chain_seq", sa.Integer(), nullable=False),
        sa.Column("previous_hash", sa.String(64), nullable=True),
        sa.Column("entry_hash", sa.String(64), nullable=False),
        _ts("created_at", default_now=True),
        sa.CheckConstraint("status IN ('success','failed','error')", name="ck_audit_status"),
        sa.UniqueConstraint("user_id", "chain_seq", name="uq_audit_user_chain_seq"),
    )
    op.create_index("ix_audit_user_created", "audit_log", ["user_id", "created_at"])
    op.create_index("ix_audit_event_type", "audit_log", ["event_type"])
    op.create_index("ix_audit_subscription", "audit_log", ["subscription_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at", default_now=True),
        sa.CheckConstraint(
            "type IN ('welcome','billing_success','billing_failed','credits_low','subscription_cancelled')",
            name="ck_notifications_type",
        ),
    )
    op.create_index("ix_notifications_user_created", "notifications", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_notifications_user_created", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_audit_subscription", table_name="audit_log")
    op.drop_index("ix_audit_event_type", table_name="audit_log")
    op.drop_index("ix_audit_user_created", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("ix_retry_attempts_subscription", table_name="payment_retry_attempts")
    op.drop_index("ix_retry_attempts_status_date", table_name="payment_retry_attempts")
    op.drop_table("payment_retry_attempts")
    op.drop_index("ix_invoices_gateway_transaction", table_name="invoices")
    op.drop_index("ix_invoices_user_created", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_subscriptions_status_period_end", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_credit_holds_reference", table_name="credit_holds")
    op.drop_index("ix_credit_holds_status_expires", table_name="credit_holds")
    op.drop_index("ix_credit_holds_account_status", table_name="credit_holds")
    op.drop_table("credit_holds")
    op.drop_index("ix_credit_ledger_user_created", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_hold", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_reference", table_name="credit_ledger")
    op.drop_table("credit_ledger")
