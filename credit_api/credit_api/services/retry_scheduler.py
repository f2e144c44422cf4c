"""Daily retry pass for failed renewals.

Attempts follow the fixed schedule in :mod:`credit_engine.billing.retry_schedule`,
anchored at the invoice's first failure.  Each attempt charges the gateway
with its own id as the reference and records the transaction on the attempt,
so a resumed pass polls instead of charging twice.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from credit_engine.billing.plans import get_plan
from credit_engine.billing.retry_schedule import due_cutoff
from credit_engine.errors import PaymentGatewayError
from credit_engine.ledger.store import utcnow
from credit_engine.models.billing import (
    BatchItemResult,
    BatchResult,
    InvoiceStatus,
    PaymentStatus,
    RetryStatus,
    SubscriptionStatus,
)
from credit_engine.state.repository import InvoiceRepository, RetryAttemptRepository, SubscriptionRepository
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_api.services.audit_service import record_error
from credit_api.services.notification_service import NotificationEmitter
from credit_api.services.payment_gateway import PaymentGateway
from credit_api.services.settlement import apply_outcome, collect_payment, failure_reason

logger = logging.getLogger(__name__)


class RetryScheduler:
    """Runs due payment retry attempts.

    Parameters
    ----------
    session_factory:
        Factory for the per-phase sessions.
    gateway:
        Payment gateway client.
    notifier:
        Notification sink, called only after the relevant commit.
    clock:
        Returns the current UTC time; injectable for tests.
    batch_limit:
        Maximum attempts handled by one pass.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        notifier: NotificationEmitter,
        *,
        clock: Callable[[], datetime] = utcnow,
        batch_limit: int = 500,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._notifier = notifier
        self._clock = clock
        self._batch_limit = batch_limit

    async def run_retries(self) -> BatchResult:
        """Process every pending attempt dated today or earlier."""
        now = self._clock()
        async with self._session_factory() as session:
            due = await RetryAttemptRepository(session).list_due(due_cutoff(now), self._batch_limit)

        logger.info("Retry pass started: %d attempt(s) due", len(due))
        results: list[BatchItemResult] = []
        for attempt_id, subscription_id, user_id in due:
            try:
                status = await self._retry_one(attempt_id, now)
                results.append(BatchItemResult(id=subscription_id, status=status))
            except Exception as exc:
                logger.error(
                    "Retry attempt %s failed for subscription=%s: %s",
                    attempt_id,
                    subscription_id,
                    exc,
                    exc_info=True,
                )
                await record_error(
                    self._session_factory,
                    user_id=user_id,
                    stage="retry",
                    error=str(exc),
                    subscription_id=subscription_id,
                    now=now,
                )
                results.append(BatchItemResult(id=subscription_id, status="error", error=str(exc)))

        logger.info("Retry pass finished: %d attempt(s) processed", len(results))
        return BatchResult(processed_count=len(results), results=results)

    async def _retry_one(self, attempt_id: str, now: datetime) -> str:
        async with self._session_factory.begin() as session:
            retries = RetryAttemptRepository(session)
            attempt = await retries.get(attempt_id, for_update=True)
            if attempt is None or attempt.status != RetryStatus.PENDING.value or attempt.retry_date >= due_cutoff(now):
                return "skipped"

            sub = await SubscriptionRepository(session).get(attempt.subscription_id)
            invoice = await InvoiceRepository(session).get(attempt.invoice_id)
            if (
                sub is None
                or invoice is None
                or sub.status != SubscriptionStatus.PAST_DUE.value
                or invoice.status != InvoiceStatus.FAILED.value
            ):
                # Paid, cancelled or replaced by a plan change since it was scheduled.
                await retries.resolve(attempt, RetryStatus.FAILED.value, now, "Superseded")
                logger.info("Retry attempt %s superseded; subscription no longer past due", attempt_id)
                return "skipped"

            plan = get_plan(sub.plan_id)
            invoice_id = invoice.id
            user_id = sub.user_id
            amount = invoice.amount
            known_transaction = attempt.gateway_transaction_id
            attempt_number = attempt.attempt_number
            description = f"{plan.name} plan renewal {invoice.invoice_number} (retry {attempt_number})"

        reason: str | None = None
        try:
            outcome, transaction_id = await collect_payment(
                self._gateway,
                amount=amount,
                description=description,
                reference_id=attempt_id,
                user_id=user_id,
                transaction_id=known_transaction,
            )
        except PaymentGatewayError as exc:
            # Counts as this attempt failing so the schedule keeps moving.
            outcome, transaction_id, reason = PaymentStatus.FAILED, None, failure_reason(exc)
            if exc.transient:
                logger.warning("Gateway unavailable for retry attempt %s; treating as failed: %s", attempt_id, exc)

        if transaction_id is not None and transaction_id != known_transaction:
            async with self._session_factory.begin() as session:
                await RetryAttemptRepository(session).set_transaction(attempt_id, transaction_id)

        logger.info("Retry attempt %d for invoice %s: %s", attempt_number, invoice_id, outcome.value)
        return await apply_outcome(
            self._session_factory,
            self._notifier,
            invoice_id,
            outcome,
            now,
            transaction_id=transaction_id,
            reason=reason,
            attempt_id=attempt_id,
        )
