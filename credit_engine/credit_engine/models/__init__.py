"""Domain models for the credit accounting core."""

from credit_engine.models.audit import AuditDetails, AuditEntry, AuditEvent, AuditStatus
from credit_engine.models.billing import (
    BatchItemResult,
    BatchResult,
    Invoice,
    InvoiceKind,
    InvoiceStatus,
    NotificationType,
    PaymentResult,
    PaymentStatus,
    RetryAttempt,
    RetryStatus,
    Subscription,
    SubscriptionStatus,
)
from credit_engine.models.credits import (
    AppendResult,
    CategoryBalance,
    ConversionResult,
    CreditCategory,
    CreditHold,
    HoldStatus,
    LedgerEntry,
    LedgerReconciliation,
    LedgerSource,
)

__all__ = [
    "AppendResult",
    "AuditDetails",
    "AuditEntry",
    "AuditEvent",
    "AuditStatus",
    "BatchItemResult",
    "BatchResult",
    "CategoryBalance",
    "ConversionResult",
    "CreditCategory",
    "CreditHold",
    "HoldStatus",
    "Invoice",
    "InvoiceKind",
    "InvoiceStatus",
    "LedgerEntry",
    "LedgerReconciliation",
    "LedgerSource",
    "NotificationType",
    "PaymentResult",
    "PaymentStatus",
    "RetryAttempt",
    "RetryStatus",
    "Subscription",
    "SubscriptionStatus",
]
