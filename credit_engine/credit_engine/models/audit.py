"""Audit event identifiers and their structured detail variants.

Every audit entry carries exactly one detail payload.  The payload is a
discriminated union keyed on ``kind`` so that the set of recordable shapes is
closed and validated on write.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter


class AuditEvent(str, Enum):
    """Well-known audit event identifiers."""

    HOLD_CREATED = "hold_created"
    HOLD_CONVERTED = "hold_converted"
    HOLD_RELEASED = "hold_released"
    HOLDS_EXPIRED = "holds_expired"
    CREDITS_ALLOCATED = "credits_allocated"
    TOPUP_PURCHASED = "topup_purchased"
    RENEWAL_SUCCEEDED = "renewal_succeeded"
    RENEWAL_FAILED = "renewal_failed"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRY_SUCCEEDED = "retry_succeeded"
    RETRY_FAILED = "retry_failed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    TRIAL_STARTED = "trial_started"
    PLAN_CHANGED = "plan_changed"
    LEDGER_RECONCILED = "ledger_reconciled"
    BILLING_ERROR = "billing_error"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    ERROR = "error"


class HoldDetails(BaseModel):
    kind: Literal["hold"] = "hold"
    hold_id: str
    category: str
    amount: int
    reference_id: str | None = None
    reason: str | None = None


class ConversionDetails(BaseModel):
    kind: Literal["conversion"] = "conversion"
    hold_id: str
    category: str
    transaction_id: str
    debited_amount: int
    refunded_amount: int


class PaymentDetails(BaseModel):
    kind: Literal["payment"] = "payment"
    invoice_id: str
    amount: int
    transaction_id: str | None = None
    error: str | None = None


class RetryDetails(BaseModel):
    kind: Literal["retry"] = "retry"
    invoice_id: str
    attempt_number: int
    retry_date: datetime | None = None
    next_retry_date: datetime | None = None
    error: str | None = None


class AllocationDetails(BaseModel):
    kind: Literal["allocation"] = "allocation"
    plan_id: str
    reference_id: str
    scraper_credits: int
    interaction_credits: int
    interaction_discarded: int = 0


class SweepDetails(BaseModel):
    kind: Literal["sweep"] = "sweep"
    hold_ids: list[str]
    amount_released: int


class ReconciliationDetails(BaseModel):
    kind: Literal["reconciliation"] = "reconciliation"
    category: str
    ledger_sum: int
    cached_balance: int
    entries_checked: int
    first_mismatch_seq: int | None = None


class ErrorDetails(BaseModel):
    kind: Literal["error"] = "error"
    stage: str
    error: str
    invoice_id: str | None = None


AuditDetails = Annotated[
    HoldDetails
    | ConversionDetails
    | PaymentDetails
    | RetryDetails
    | AllocationDetails
    | SweepDetails
    | ReconciliationDetails
    | ErrorDetails,
    Field(discriminator="kind"),
]

audit_details_adapter: TypeAdapter[AuditDetails] = TypeAdapter(AuditDetails)


class AuditEntry(BaseModel):
    """Read-side view of an audit log row."""

    id: str
    event_type: AuditEvent
    user_id: str
    subscription_id: str | None = None
    status: AuditStatus
    details: AuditDetails
    created_at: datetime
