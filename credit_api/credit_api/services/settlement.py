"""Apply a final payment outcome to invoices, subscriptions and the ledger.

Shared by the renewal pass, the retry pass, the synchronous upgrade and
top-up flows, and the gateway webhook, so every path settles a payment the
same way.  Each function runs inside the caller's transaction, serializes on
the invoice first, and is a no-op for an invoice that is already settled.
Notifications are returned to the caller and sent after commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from credit_engine.billing.allocation import allocate_plan_credits
from credit_engine.billing.plans import CREDIT_PACKAGES, CreditPackageId, get_plan
from credit_engine.billing.retry_schedule import days_until, next_attempt_number, retry_date_for
from credit_engine.errors import PaymentGatewayError, SubscriptionError
from credit_engine.ledger.store import LedgerStore
from credit_engine.models.audit import AuditEvent, AuditStatus, PaymentDetails, RetryDetails
from credit_engine.models.billing import (
    InvoiceKind,
    InvoiceStatus,
    NotificationType,
    PaymentStatus,
    RetryStatus,
    SubscriptionStatus,
)
from credit_engine.models.credits import CreditCategory, LedgerSource
from credit_engine.state import locking
from credit_engine.state.repository import InvoiceRepository, RetryAttemptRepository, SubscriptionRepository
from credit_engine.state.tables import InvoiceTable, SubscriptionTable
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_api.services.audit_service import AuditService
from credit_api.services.notification_service import (
    NotificationEmitter,
    billing_failed_message,
    billing_success_message,
    subscription_cancelled_message,
    topup_success_message,
)
from credit_api.services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

_SETTLEABLE = frozenset({InvoiceStatus.PENDING.value, InvoiceStatus.FAILED.value})


@dataclass
class PendingNotification:
    user_id: str
    type: NotificationType
    title: str
    message: str


@dataclass
class Settlement:
    """What a settlement did, plus the notifications owed after commit.

    ``status`` is ``success``, ``failed``, ``cancelled`` or ``ignored`` (the
    invoice or attempt had already been settled).
    """

    invoice_id: str
    user_id: str
    status: str
    subscription_id: str | None = None
    notifications: list[PendingNotification] = field(default_factory=list)


async def send_notifications(notifier: NotificationEmitter, settlement: Settlement) -> None:
    for n in settlement.notifications:
        await notifier.notify(n.user_id, n.type, n.title, n.message)


async def _load_invoice(session: AsyncSession, invoice_id: str) -> InvoiceTable:
    # Concurrent settlements of one invoice (pass vs. webhook) queue here.
    await locking.acquire(session, locking.lock_key("invoice", invoice_id))
    invoice = await InvoiceRepository(session).get(invoice_id, for_update=True)
    if invoice is None:
        raise SubscriptionError(f"Invoice {invoice_id} not found")
    return invoice


async def _load_subscription(session: AsyncSession, invoice: InvoiceTable) -> SubscriptionTable:
    sub = None
    if invoice.subscription_id is not None:
        sub = await SubscriptionRepository(session).get(invoice.subscription_id, for_update=True)
    if sub is None:
        raise SubscriptionError(f"Invoice {invoice.id} has no subscription")
    return sub


# ---------------------------------------------------------------------------
# Success
# ---------------------------------------------------------------------------


async def settle_success(
    session: AsyncSession,
    invoice_id: str,
    transaction_id: str | None,
    now: datetime,
    *,
    attempt_id: str | None = None,
) -> Settlement:
    """Mark an invoice paid and grant what it paid for.

    Renewal and upgrade invoices activate the subscription for the invoiced
    period and allocate plan credits; top-up invoices credit scraper credits.
    Any pending retry attempts of the invoice are closed as processed.
    """
    invoice = await _load_invoice(session, invoice_id)
    if invoice.status not in _SETTLEABLE:
        logger.info("Invoice %s already %s; ignoring success", invoice.id, invoice.status)
        return Settlement(invoice_id=invoice.id, user_id=invoice.user_id, status="ignored")

    # Both accounts are locked before the first write of this transaction.
    await locking.lock_accounts(session, invoice.user_id, [c.value for c in CreditCategory])

    invoices = InvoiceRepository(session)
    if transaction_id and invoice.gateway_transaction_id is None:
        invoice.gateway_transaction_id = transaction_id
    await invoices.mark_paid(invoice, now)

    ledger = LedgerStore(session, clock=lambda: now)
    audit = AuditService(session)
    payment = PaymentDetails(
        invoice_id=invoice.id,
        amount=invoice.amount,
        transaction_id=transaction_id or invoice.gateway_transaction_id,
    )

    if InvoiceKind(invoice.kind) is InvoiceKind.TOPUP:
        package = CREDIT_PACKAGES[CreditPackageId(invoice.line_items_json["package_id"])]
        await ledger.append(
            invoice.user_id,
            CreditCategory.SCRAPER,
            package.scraper_credits,
            LedgerSource.TOPUP_PURCHASE,
            reference_id=invoice.id,
            description=f"{package.name} - {package.scraper_credits} scraper credits",
        )
        await audit.record(AuditEvent.TOPUP_PURCHASED, user_id=invoice.user_id, details=payment, now=now)
        title, message = topup_success_message(package.name, package.scraper_credits, invoice.amount)
        logger.info("Top-up settled: invoice=%s user=%s credits=%d", invoice.id, invoice.user_id, package.scraper_credits)
        return Settlement(
            invoice_id=invoice.id,
            user_id=invoice.user_id,
            status="success",
            notifications=[PendingNotification(invoice.user_id, NotificationType.BILLING_SUCCESS, title, message)],
        )

    sub = await _load_subscription(session, invoice)
    plan = get_plan(invoice.line_items_json["plan_id"])
    await SubscriptionRepository(session).update(
        sub,
        now,
        plan_id=plan.tier.value,
        status=SubscriptionStatus.ACTIVE.value,
        current_period_start=invoice.period_start,
        current_period_end=invoice.period_end,
        cancelled_at=None,
    )
    allocation = await allocate_plan_credits(session, ledger, invoice.user_id, plan, reference_id=invoice.id)

    retries = RetryAttemptRepository(session)
    for attempt in await retries.list_for_invoice(invoice.id):
        if attempt.status == RetryStatus.PENDING.value:
            await retries.resolve(attempt, RetryStatus.PROCESSED.value, now)

    if attempt_id is not None:
        event = AuditEvent.RETRY_SUCCEEDED
    elif InvoiceKind(invoice.kind) is InvoiceKind.UPGRADE:
        event = AuditEvent.PLAN_CHANGED
    else:
        event = AuditEvent.RENEWAL_SUCCEEDED
    await audit.record(event, user_id=invoice.user_id, details=payment, subscription_id=sub.id, now=now)
    await audit.record(
        AuditEvent.CREDITS_ALLOCATED,
        user_id=invoice.user_id,
        details=allocation,
        subscription_id=sub.id,
        now=now,
    )

    logger.info(
        "Payment settled: invoice=%s subscription=%s plan=%s period_end=%s",
        invoice.id,
        sub.id,
        plan.tier.value,
        sub.current_period_end.isoformat(),
    )
    title, message = billing_success_message(plan.name, invoice.amount, sub.current_period_end)
    return Settlement(
        invoice_id=invoice.id,
        user_id=invoice.user_id,
        subscription_id=sub.id,
        status="success",
        notifications=[PendingNotification(invoice.user_id, NotificationType.BILLING_SUCCESS, title, message)],
    )


# ---------------------------------------------------------------------------
# Failure
# ---------------------------------------------------------------------------


async def settle_failure(
    session: AsyncSession,
    invoice_id: str,
    reason: str,
    now: datetime,
    *,
    attempt_id: str | None = None,
) -> Settlement:
    """Record a failed payment.

    For a renewal invoice the first failure moves the subscription to
    ``past_due`` and schedules attempt 1; a failed attempt schedules the
    next one, anchored at the invoice's first failure, and the failure of
    the last attempt cancels the subscription.  Upgrade and top-up invoices
    are only marked failed.
    """
    invoice = await _load_invoice(session, invoice_id)
    invoices = InvoiceRepository(session)
    audit = AuditService(session)

    if invoice.status not in _SETTLEABLE:
        logger.info("Invoice %s already %s; ignoring failure", invoice.id, invoice.status)
        return Settlement(invoice_id=invoice.id, user_id=invoice.user_id, status="ignored")

    kind = InvoiceKind(invoice.kind)
    if kind is not InvoiceKind.RENEWAL:
        if invoice.status == InvoiceStatus.FAILED.value:
            return Settlement(invoice_id=invoice.id, user_id=invoice.user_id, status="ignored")
        await invoices.mark_failed(invoice, now, reason)
        event = AuditEvent.TOPUP_PURCHASED if kind is InvoiceKind.TOPUP else AuditEvent.PLAN_CHANGED
        await audit.record(
            event,
            user_id=invoice.user_id,
            status=AuditStatus.FAILED,
            details=PaymentDetails(invoice_id=invoice.id, amount=invoice.amount, error=reason),
            subscription_id=invoice.subscription_id,
            now=now,
        )
        logger.info("Payment failed: invoice=%s kind=%s reason=%s", invoice.id, kind.value, reason)
        return Settlement(invoice_id=invoice.id, user_id=invoice.user_id, status="failed")

    sub = await _load_subscription(session, invoice)
    subs = SubscriptionRepository(session)
    retries = RetryAttemptRepository(session)

    if attempt_id is None:
        if invoice.status == InvoiceStatus.FAILED.value:
            # Retries are already scheduled for this invoice.
            return Settlement(invoice_id=invoice.id, user_id=invoice.user_id, status="ignored")
        await invoices.mark_failed(invoice, now, reason)
        if sub.status != SubscriptionStatus.CANCELLED.value:
            await subs.update(sub, now, status=SubscriptionStatus.PAST_DUE.value)
        assert invoice.failed_at is not None  # noqa: S101
        retry_date = retry_date_for(invoice.failed_at, 1)
        await retries.schedule(
            subscription_id=sub.id,
            invoice_id=invoice.id,
            attempt_number=1,
            retry_date=retry_date,
            now=now,
        )
        await audit.record(
            AuditEvent.RENEWAL_FAILED,
            user_id=invoice.user_id,
            status=AuditStatus.FAILED,
            details=PaymentDetails(invoice_id=invoice.id, amount=invoice.amount, error=reason),
            subscription_id=sub.id,
            now=now,
        )
        await audit.record(
            AuditEvent.RETRY_SCHEDULED,
            user_id=invoice.user_id,
            details=RetryDetails(invoice_id=invoice.id, attempt_number=1, retry_date=retry_date),
            subscription_id=sub.id,
            now=now,
        )
        logger.warning(
            "Renewal failed: subscription=%s invoice=%s reason=%s; retry 1 at %s",
            sub.id,
            invoice.id,
            reason,
            retry_date.isoformat(),
        )
        title, message = billing_failed_message(invoice.amount, days_until(retry_date, now), 1)
        return Settlement(
            invoice_id=invoice.id,
            user_id=invoice.user_id,
            subscription_id=sub.id,
            status="failed",
            notifications=[PendingNotification(invoice.user_id, NotificationType.BILLING_FAILED, title, message)],
        )

    attempt = await retries.get(attempt_id, for_update=True)
    if attempt is None or attempt.status != RetryStatus.PENDING.value:
        return Settlement(invoice_id=invoice.id, user_id=invoice.user_id, status="ignored")

    await retries.resolve(attempt, RetryStatus.FAILED.value, now, reason)
    await invoices.mark_failed(invoice, now, reason)
    assert invoice.failed_at is not None  # noqa: S101

    following = next_attempt_number(attempt.attempt_number)
    if following is not None:
        retry_date = retry_date_for(invoice.failed_at, following)
        await retries.schedule(
            subscription_id=sub.id,
            invoice_id=invoice.id,
            attempt_number=following,
            retry_date=retry_date,
            now=now,
        )
        await audit.record(
            AuditEvent.RETRY_FAILED,
            user_id=invoice.user_id,
            status=AuditStatus.FAILED,
            details=RetryDetails(
                invoice_id=invoice.id,
                attempt_number=attempt.attempt_number,
                retry_date=attempt.retry_date,
                next_retry_date=retry_date,
                error=reason,
            ),
            subscription_id=sub.id,
            now=now,
        )
        logger.warning(
            "Retry %d failed: subscription=%s invoice=%s; retry %d at %s",
            attempt.attempt_number,
            sub.id,
            invoice.id,
            following,
            retry_date.isoformat(),
        )
        title, message = billing_failed_message(invoice.amount, days_until(retry_date, now), following)
        return Settlement(
            invoice_id=invoice.id,
            user_id=invoice.user_id,
            subscription_id=sub.id,
            status="failed",
            notifications=[PendingNotification(invoice.user_id, NotificationType.BILLING_FAILED, title, message)],
        )

    # Last attempt exhausted: cancellation is unconditional.
    await subs.update(sub, now, status=SubscriptionStatus.CANCELLED.value, cancelled_at=now)
    await invoices.mark_cancelled(invoice, now)
    retry_details = RetryDetails(
        invoice_id=invoice.id,
        attempt_number=attempt.attempt_number,
        retry_date=attempt.retry_date,
        error=reason,
    )
    await audit.record(
        AuditEvent.RETRY_FAILED,
        user_id=invoice.user_id,
        status=AuditStatus.FAILED,
        details=retry_details,
        subscription_id=sub.id,
        now=now,
    )
    await audit.record(
        AuditEvent.SUBSCRIPTION_CANCELLED,
        user_id=invoice.user_id,
        details=retry_details,
        subscription_id=sub.id,
        now=now,
    )
    logger.warning("Subscription %s cancelled after %d failed payment attempts", sub.id, attempt.attempt_number)
    title, message = subscription_cancelled_message(get_plan(sub.plan_id).name)
    return Settlement(
        invoice_id=invoice.id,
        user_id=invoice.user_id,
        subscription_id=sub.id,
        status="cancelled",
        notifications=[PendingNotification(invoice.user_id, NotificationType.SUBSCRIPTION_CANCELLED, title, message)],
    )


# ---------------------------------------------------------------------------
# Collect and apply
# ---------------------------------------------------------------------------


def failure_reason(exc: PaymentGatewayError) -> str:
    """Invoice failure reason for a gateway error raised while collecting."""
    if exc.transient:
        return f"Gateway unavailable: {exc}"
    return str(exc)


async def collect_payment(
    gateway: PaymentGateway,
    *,
    amount: int,
    description: str,
    reference_id: str,
    user_id: str,
    transaction_id: str | None,
) -> tuple[PaymentStatus, str | None]:
    """Charge once per reference, or poll the charge already made.

    Returns ``(status, transaction_id)``; the transaction id is new only
    when a payment was created by this call.
    """
    if transaction_id is not None:
        return await gateway.check_status(transaction_id), transaction_id
    result = await gateway.create_payment(amount, description, reference_id, {"user_id": user_id})
    return result.status, result.transaction_id


async def apply_outcome(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: NotificationEmitter,
    invoice_id: str,
    outcome: PaymentStatus,
    now: datetime,
    *,
    transaction_id: str | None = None,
    reason: str | None = None,
    attempt_id: str | None = None,
) -> str:
    """Settle a final outcome in its own transaction and notify after commit.

    Returns the batch result status: ``success``, ``failed``, ``pending``
    (nothing to settle yet) or ``skipped`` (already settled elsewhere).
    """
    if not outcome.is_final:
        return "pending"

    async with session_factory.begin() as session:
        if outcome is PaymentStatus.SUCCESS:
            settlement = await settle_success(
                session,
                invoice_id,
                transaction_id,
                now,
                attempt_id=attempt_id,
            )
        else:
            settlement = await settle_failure(
                session,
                invoice_id,
                reason or f"Payment {outcome.value}",
                now,
                attempt_id=attempt_id,
            )

    await send_notifications(notifier, settlement)
    if settlement.status == "ignored":
        return "skipped"
    if settlement.status == "cancelled":
        return "failed"
    return settlement.status
