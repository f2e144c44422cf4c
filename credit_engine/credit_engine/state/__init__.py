"""State persistence layer using PostgreSQL (or SQLite locally)."""

from credit_engine.state.database import get_engine, get_session, get_session_factory
from credit_engine.state.repository import (
    AuditRepository,
    HoldRepository,
    InvoiceRepository,
    LedgerRepository,
    NotificationRepository,
    RetryAttemptRepository,
    SubscriptionRepository,
)

__all__ = [
    "AuditRepository",
    "HoldRepository",
    "InvoiceRepository",
    "LedgerRepository",
    "NotificationRepository",
    "RetryAttemptRepository",
    "SubscriptionRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
]
