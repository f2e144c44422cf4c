"""Subscription, invoice and payment value types."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    """Billing state of a subscription.  ``CANCELLED`` is terminal for automation."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


RENEWABLE_STATUSES: frozenset[SubscriptionStatus] = frozenset({SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE})


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class InvoiceKind(str, Enum):
    """What an invoice charges for."""

    RENEWAL = "subscription_renewal"
    UPGRADE = "plan_change"
    TOPUP = "credit_topup"


class RetryStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    """Outcome reported by the payment gateway for a single payment."""

    SUCCESS = "success"
    PENDING = "pending"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_final(self) -> bool:
        return self is not PaymentStatus.PENDING


class NotificationType(str, Enum):
    WELCOME = "welcome"
    BILLING_SUCCESS = "billing_success"
    BILLING_FAILED = "billing_failed"
    CREDITS_LOW = "credits_low"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"


class Subscription(BaseModel):
    id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    trial_ends_at: datetime | None = None
    cancelled_at: datetime | None = None


class Invoice(BaseModel):
    id: str
    invoice_number: str
    user_id: str
    subscription_id: str | None = None
    kind: InvoiceKind
    amount: int = Field(..., ge=0, description="Amount in minor-less IDR units.")
    currency: str = "IDR"
    status: InvoiceStatus
    period_start: datetime | None = None
    period_end: datetime | None = None
    gateway_transaction_id: str | None = None
    failure_reason: str | None = None
    paid_at: datetime | None = None
    created_at: datetime
    line_items: dict[str, Any] = Field(default_factory=dict)


class RetryAttempt(BaseModel):
    id: str
    subscription_id: str
    invoice_id: str
    attempt_number: int = Field(..., ge=1, le=5)
    retry_date: datetime
    status: RetryStatus
    error: str | None = None


class PaymentResult(BaseModel):
    """Response of ``create_payment`` on the payment gateway."""

    transaction_id: str
    status: PaymentStatus


class BatchItemResult(BaseModel):
    """Per-subscription outcome of a renewal or retry pass."""

    id: str
    status: str
    error: str | None = None


class BatchResult(BaseModel):
    processed_count: int
    results: list[BatchItemResult]
