"""User notifications.

:class:`NotificationEmitter` is the fire-and-forget sink used by the billing
and credit services: it writes in its own session after the business
transaction has committed, and a failure is logged rather than raised.
:class:`NotificationService` serves the read side for the notification
routes.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from credit_engine.models.billing import NotificationType
from credit_engine.state.repository import NotificationRepository
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class NotificationEmitter:
    """Persist notification requests outside the caller's transaction.

    Parameters
    ----------
    session_factory:
        Factory for the short-lived session each notification is written in.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def notify(self, user_id: str, type: NotificationType, title: str, message: str) -> None:
        try:
            async with self._session_factory.begin() as session:
                await NotificationRepository(session).create(
                    user_id=user_id,
                    type=type.value,
                    title=title,
                    message=message,
                )
        except Exception:
            # Runs after the caller committed; nothing to roll back.
            logger.exception("Failed to emit %s notification for user=%s", type.value, user_id)
            return
        logger.info("Notification emitted: user=%s type=%s", user_id, type.value)


# ---------------------------------------------------------------------------
# Message templates
# ---------------------------------------------------------------------------


def _fmt_idr(amount: int) -> str:
    return f"Rp {amount:,}".replace(",", ".")


def billing_success_message(plan_name: str, amount: int, period_end: datetime) -> tuple[str, str]:
    return (
        "Payment successful",
        f"We received {_fmt_idr(amount)} for your {plan_name} plan. "
        f"Your subscription is active until {period_end:%d %b %Y}.",
    )


def billing_failed_message(amount: int, days_until_retry: int, attempt_number: int) -> tuple[str, str]:
    when = "tomorrow" if days_until_retry <= 1 else f"in {days_until_retry} days"
    return (
        "Payment failed",
        f"We could not collect {_fmt_idr(amount)} for your subscription. "
        f"We will retry {when} (attempt {attempt_number} of 5). "
        "Please check your payment method.",
    )


def subscription_cancelled_message(plan_name: str) -> tuple[str, str]:
    return (
        "Subscription cancelled",
        f"Your {plan_name} subscription has been cancelled after 5 failed payment attempts. "
        "It will not be renewed automatically; subscribe again to restore access.",
    )


def topup_success_message(package_name: str, credits: int, amount: int) -> tuple[str, str]:
    return (
        "Top-up successful",
        f"{credits:,} scraper credits from the {package_name} were added for {_fmt_idr(amount)}.",
    )


def welcome_message(plan_name: str, trial_days: int) -> tuple[str, str]:
    return (
        "Welcome!",
        f"Your {trial_days}-day trial has started. It converts to the {plan_name} plan when it ends.",
    )


def credits_low_message(category: str, available: int) -> tuple[str, str]:
    return (
        "Credits running low",
        f"Only {available:,} {category} credits remain available. Top up or upgrade to avoid interruptions.",
    )


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


class NotificationService:
    """List and manage a user's notifications."""

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._repo = NotificationRepository(session)
        self._user_id = user_id

    async def list_notifications(
        self,
        *,
        unread_only: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        rows = await self._repo.list_for_user(self._user_id, unread_only=unread_only, limit=limit, offset=offset)
        return [
            {
                "id": r.id,
                "type": r.type,
                "title": r.title,
                "message": r.message,
                "is_read": r.is_read,
                "created_at": r.created_at.isoformat(),
            }
            for r in rows
        ]

    async def mark_read(self, notification_ids: list[str]) -> int:
        return await self._repo.mark_read(self._user_id, notification_ids)

    async def delete(self, notification_ids: list[str]) -> int:
        return await self._repo.delete(self._user_id, notification_ids)
