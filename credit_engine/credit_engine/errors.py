"""Typed failures raised by the credit accounting core.

Every error carries a stable ``code`` string so that transports can surface
it without inspecting the message text.
"""

from __future__ import annotations

from datetime import datetime


class CreditError(Exception):
    """Base class for all accounting-core errors."""

    code: str = "CREDIT_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InsufficientCredits(CreditError):
    """The available balance cannot cover the requested amount."""

    code = "INSUFFICIENT_CREDITS"

    def __init__(self, available: int, required: int) -> None:
        super().__init__(f"Insufficient credits: {available} available, {required} required")
        self.available = available
        self.required = required

    @property
    def shortfall(self) -> int:
        return max(self.required - self.available, 0)


class HoldNotFound(CreditError):
    """The hold does not exist, belongs to another user, or is no longer active."""

    code = "HOLD_NOT_FOUND"

    def __init__(self, hold_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Hold {hold_id} not found or not active")
        self.hold_id = hold_id


class HoldExpired(HoldNotFound):
    """The hold is still marked active but its expiry has passed."""

    code = "HOLD_EXPIRED"

    def __init__(self, hold_id: str, expired_at: datetime) -> None:
        super().__init__(hold_id, f"Hold {hold_id} expired at {expired_at.isoformat()}")
        self.expired_at = expired_at


class InvalidCreditRequest(CreditError, ValueError):
    """Input failed validation before touching any state."""

    code = "INVALID_REQUEST"


class LedgerInvariantViolation(CreditError):
    """Balances were observed in a state the hold manager must never produce."""

    code = "LEDGER_INVARIANT_VIOLATION"


class SubscriptionError(CreditError, ValueError):
    """A subscription operation conflicts with the current subscription state."""

    code = "SUBSCRIPTION_CONFLICT"


class PaymentGatewayError(CreditError):
    """The payment gateway could not complete a request.

    ``transient`` failures (timeouts, 5xx) are eligible for the retry
    schedule; permanent failures are surfaced to the user immediately.
    """

    code = "PAYMENT_GATEWAY_ERROR"

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class DatabaseError(CreditError):
    """Wraps a persistence-layer failure.  Never swallowed."""

    code = "DATABASE_ERROR"
