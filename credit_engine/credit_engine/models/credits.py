"""Ledger and hold value types.

Ledger entries are immutable once written; holds move forward exactly once
from ``ACTIVE`` into one of the terminal states.  The pydantic models here are
the read-side views handed to callers so that ORM rows never leave the
repository layer.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class CreditCategory(str, Enum):
    """Metered credit pools tracked independently per user."""

    SCRAPER = "scraper"
    INTERACTION = "interaction"


class LedgerSource(str, Enum):
    """Origin of a ledger entry."""

    TRIAL_ALLOCATION = "trial_allocation"
    MONTHLY_ALLOCATION = "monthly_allocation"
    TOPUP_PURCHASE = "topup_purchase"
    USAGE = "usage"
    REFUND = "refund"
    MONTHLY_RESET = "monthly_reset"


class HoldStatus(str, Enum):
    """Lifecycle state of a credit hold."""

    ACTIVE = "active"
    CONVERTED = "converted"
    RELEASED = "released"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not HoldStatus.ACTIVE


DEFAULT_HOLD_TTL_MINUTES = 60
MIN_HOLD_TTL_MINUTES = 1
MAX_HOLD_TTL_MINUTES = 1440


class LedgerEntry(BaseModel):
    """A single signed balance change for one user and category."""

    id: str
    user_id: str
    category: CreditCategory
    amount: int
    balance_after: int
    source: LedgerSource
    reference_id: str | None = None
    description: str | None = None
    hold_id: str | None = None
    entry_seq: int = Field(..., ge=1, description="Position in the per-account running sum.")
    created_at: datetime


class AppendResult(BaseModel):
    """Outcome of :meth:`LedgerStore.append`."""

    entry_id: str
    balance_after: int


class CreditHold(BaseModel):
    """Temporary reservation of credits against the ledger."""

    id: str
    user_id: str
    category: CreditCategory
    amount: int = Field(..., gt=0)
    reference_id: str
    status: HoldStatus
    expires_at: datetime
    release_reason: str | None = None
    ledger_entry_id: str | None = None
    created_at: datetime
    resolved_at: datetime | None = None


class ConversionResult(BaseModel):
    """Outcome of converting a hold into a permanent debit."""

    transaction_id: str
    debited_amount: int
    refunded_amount: int
    remaining_balance: int


class CategoryBalance(BaseModel):
    """Balance triple for a single credit category."""

    total: int
    held: int
    available: int


class LedgerReconciliation(BaseModel):
    """Result of re-summing a user/category ledger against its cached balances."""

    user_id: str
    category: CreditCategory
    ledger_sum: int
    cached_balance: int
    entries_checked: int
    first_mismatch_seq: int | None = None

    @property
    def consistent(self) -> bool:
        return self.first_mismatch_seq is None and self.ledger_sum == self.cached_balance
