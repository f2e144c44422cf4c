"""Subscription billing: renewals, trials, plan changes, top-ups and webhooks.

The renewal pass is an externally triggered, stateless batch.  Each
subscription runs a three-phase pipeline so a crash between phases resumes
safely on the next pass:

1. reserve: re-check the subscription and get-or-create the invoice keyed by
   ``(subscription, kind, period_start)``;
2. collect: charge the invoice once (reference ``invoice.id``), or poll the
   charge already recorded on it;
3. settle: apply a final outcome in one transaction and notify after commit.

Failures are isolated per subscription and audited as ``billing_error``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from credit_engine.billing.allocation import allocate_plan_credits
from credit_engine.billing.plans import (
    CREDIT_PACKAGES,
    PAID_TIERS,
    PLANS,
    TRIAL_PERIOD_DAYS,
    CreditPackageId,
    PlanTier,
    get_plan,
)
from credit_engine.billing.retry_schedule import due_cutoff
from credit_engine.errors import InvalidCreditRequest, PaymentGatewayError, SubscriptionError
from credit_engine.ledger.store import LedgerStore, utcnow
from credit_engine.models.audit import AuditEvent
from credit_engine.models.billing import (
    RENEWABLE_STATUSES,
    BatchItemResult,
    BatchResult,
    Invoice,
    InvoiceKind,
    InvoiceStatus,
    NotificationType,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from credit_engine.models.credits import CreditCategory, LedgerSource
from credit_engine.state import locking
from credit_engine.state.repository import InvoiceRepository, RetryAttemptRepository, SubscriptionRepository
from credit_engine.state.tables import InvoiceTable, SubscriptionTable
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_api.services.audit_service import AuditService, record_error
from credit_api.services.notification_service import NotificationEmitter, welcome_message
from credit_api.services.payment_gateway import PaymentGateway, WebhookEvent
from credit_api.services.settlement import apply_outcome, collect_payment, failure_reason

logger = logging.getLogger(__name__)


def to_subscription(row: SubscriptionTable) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
        trial_ends_at=row.trial_ends_at,
        cancelled_at=row.cancelled_at,
    )


def to_invoice(row: InvoiceTable) -> Invoice:
    return Invoice(
        id=row.id,
        invoice_number=row.invoice_number,
        user_id=row.user_id,
        subscription_id=row.subscription_id,
        kind=InvoiceKind(row.kind),
        amount=row.amount,
        currency=row.currency,
        status=InvoiceStatus(row.status),
        period_start=row.period_start,
        period_end=row.period_end,
        gateway_transaction_id=row.gateway_transaction_id,
        failure_reason=row.failure_reason,
        paid_at=row.paid_at,
        created_at=row.created_at,
        line_items=row.line_items_json,
    )


class BillingCycleService:
    """Drives subscription billing against the ledger and the payment gateway.

    Every method opens its own short transactions through *session_factory*;
    no transaction is held open across a gateway call.

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
        Maximum subscriptions handled by one renewal pass.
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

    # -- renewal pass --------------------------------------------------------

    async def run_renewals(self) -> BatchResult:
        """Renew every trial or active subscription whose period ends today or earlier."""
        now = self._clock()
        async with self._session_factory() as session:
            due = await SubscriptionRepository(session).list_due(
                due_cutoff(now),
                [s.value for s in RENEWABLE_STATUSES],
                self._batch_limit,
            )

        logger.info("Renewal pass started: %d subscription(s) due", len(due))
        results: list[BatchItemResult] = []
        for subscription_id, user_id in due:
            try:
                status = await self._renew_one(subscription_id, now)
                results.append(BatchItemResult(id=subscription_id, status=status))
            except Exception as exc:
                logger.error("Renewal failed for subscription=%s: %s", subscription_id, exc, exc_info=True)
                await record_error(
                    self._session_factory,
                    user_id=user_id,
                    stage="renewal",
                    error=str(exc),
                    subscription_id=subscription_id,
                    now=now,
                )
                results.append(BatchItemResult(id=subscription_id, status="error", error=str(exc)))

        summary: dict[str, int] = {}
        for r in results:
            summary[r.status] = summary.get(r.status, 0) + 1
        logger.info("Renewal pass finished: %s", summary or "nothing due")
        return BatchResult(processed_count=len(results), results=results)

    async def _renew_one(self, subscription_id: str, now: datetime) -> str:
        # Phase 1: reserve the invoice for the period being billed.
        async with self._session_factory.begin() as session:
            sub = await SubscriptionRepository(session).get(subscription_id, for_update=True)
            if sub is None or SubscriptionStatus(sub.status) not in RENEWABLE_STATUSES:
                return "skipped"
            if sub.current_period_end >= due_cutoff(now):
                return "skipped"

            plan = get_plan(sub.plan_id)
            period_start = sub.current_period_end
            invoice, created = await InvoiceRepository(session).get_or_create_for_period(
                user_id=sub.user_id,
                subscription_id=sub.id,
                kind=InvoiceKind.RENEWAL.value,
                amount=plan.price,
                period_start=period_start,
                period_end=period_start + timedelta(days=plan.period_days),
                now=now,
                line_items={"plan_id": plan.tier.value, "plan_name": plan.name, "period_days": plan.period_days},
            )
            if invoice.status != InvoiceStatus.PENDING.value:
                logger.info("Renewal invoice %s already %s; skipping", invoice.id, invoice.status)
                return "skipped"
            if created:
                logger.info("Renewal invoice %s created for subscription=%s", invoice.invoice_number, sub.id)
            invoice_id = invoice.id
            user_id = sub.user_id
            amount = invoice.amount
            known_transaction = invoice.gateway_transaction_id
            description = f"{plan.name} plan renewal {invoice.invoice_number}"

        # Phase 2: collect.
        reason: str | None = None
        try:
            outcome, transaction_id = await collect_payment(
                self._gateway,
                amount=amount,
                description=description,
                reference_id=invoice_id,
                user_id=user_id,
                transaction_id=known_transaction,
            )
        except PaymentGatewayError as exc:
            # A transient error fails this pass and enters the retry schedule.
            outcome, transaction_id, reason = PaymentStatus.FAILED, None, failure_reason(exc)
            if exc.transient:
                logger.warning("Gateway unavailable for invoice %s; treating as failed: %s", invoice_id, exc)

        if transaction_id is not None and transaction_id != known_transaction:
            async with self._session_factory.begin() as session:
                await InvoiceRepository(session).set_transaction(invoice_id, transaction_id, now)

        # Phase 3: settle.
        return await apply_outcome(
            self._session_factory,
            self._notifier,
            invoice_id,
            outcome,
            now,
            transaction_id=transaction_id,
            reason=reason,
        )

    # -- user-initiated flows ------------------------------------------------

    async def start_trial(self, user_id: str, plan: PlanTier = PlanTier.BASIC) -> Subscription:
        """Open a 14-day trial that converts to *plan* at its first renewal.

        Raises
        ------
        InvalidCreditRequest
            If *plan* is not a paid tier.
        SubscriptionError
            If the user already has a subscription.
        """
        if plan not in PAID_TIERS:
            raise InvalidCreditRequest(f"Trial must convert to a paid plan, got {plan.value!r}")

        now = self._clock()
        trial = PLANS[PlanTier.TRIAL]
        target = PLANS[plan]
        async with self._session_factory.begin() as session:
            await locking.acquire(session, locking.lock_key("subscription", user_id))
            subs = SubscriptionRepository(session)
            if await subs.get_by_user(user_id) is not None:
                raise SubscriptionError("User already has a subscription")
            # Both accounts are locked before the first write of this transaction.
            await locking.lock_accounts(session, user_id, [c.value for c in CreditCategory])

            trial_end = now + timedelta(days=TRIAL_PERIOD_DAYS)
            row = await subs.create(
                user_id=user_id,
                plan_id=target.tier.value,
                status=SubscriptionStatus.TRIAL.value,
                period_start=now,
                period_end=trial_end,
                trial_ends_at=trial_end,
            )
            allocation = await allocate_plan_credits(
                session,
                LedgerStore(session, clock=lambda: now),
                user_id,
                trial,
                reference_id=row.id,
                source=LedgerSource.TRIAL_ALLOCATION,
            )
            await AuditService(session).record(
                AuditEvent.TRIAL_STARTED,
                user_id=user_id,
                details=allocation,
                subscription_id=row.id,
                now=now,
            )
            subscription = to_subscription(row)

        logger.info("Trial started: user=%s converts_to=%s ends_at=%s", user_id, plan.value, trial_end.isoformat())
        title, message = welcome_message(target.name, TRIAL_PERIOD_DAYS)
        await self._notifier.notify(user_id, NotificationType.WELCOME, title, message)
        return subscription

    async def change_plan(self, user_id: str, plan: PlanTier) -> dict[str, Any]:
        """Charge for *plan* now and switch to it once paid.

        A cancelled subscription can be reactivated this way.  The
        subscription is only modified when the payment succeeds.

        Raises
        ------
        SubscriptionError
            If the user has no subscription or is already active on *plan*.
        PaymentGatewayError
            If the charge fails; the invoice is marked failed.
        """
        if plan not in PAID_TIERS:
            raise InvalidCreditRequest(f"Cannot change to non-paid plan {plan.value!r}")
        target = PLANS[plan]
        now = self._clock()

        async with self._session_factory.begin() as session:
            await locking.acquire(session, locking.lock_key("subscription", user_id))
            sub = await SubscriptionRepository(session).get_by_user(user_id, for_update=True)
            if sub is None:
                raise SubscriptionError("No subscription to change; start a trial first")
            if sub.plan_id == plan.value and sub.status == SubscriptionStatus.ACTIVE.value:
                raise SubscriptionError(f"Subscription is already on the {target.name} plan")
            invoice = await InvoiceRepository(session).create(
                user_id=user_id,
                kind=InvoiceKind.UPGRADE.value,
                amount=target.price,
                now=now,
                line_items={"plan_id": target.tier.value, "plan_name": target.name, "period_days": target.period_days},
                subscription_id=sub.id,
                period_start=now,
                period_end=now + timedelta(days=target.period_days),
            )
            invoice_id = invoice.id
            description = f"{target.name} plan {invoice.invoice_number}"

        status = await self._charge_now(invoice_id, user_id, target.price, description, now)
        return {"status": status, "invoice": await self._get_invoice(invoice_id)}

    async def purchase_topup(self, user_id: str, package_id: CreditPackageId) -> dict[str, Any]:
        """Buy a one-off scraper credit package.

        A pending payment is completed later by the gateway webhook.
        """
        package = CREDIT_PACKAGES[package_id]
        now = self._clock()
        async with self._session_factory.begin() as session:
            sub = await SubscriptionRepository(session).get_by_user(user_id)
            invoice = await InvoiceRepository(session).create(
                user_id=user_id,
                kind=InvoiceKind.TOPUP.value,
                amount=package.price,
                now=now,
                line_items={
                    "package_id": package.id.value,
                    "package_name": package.name,
                    "scraper_credits": package.scraper_credits,
                },
                subscription_id=sub.id if sub is not None else None,
            )
            invoice_id = invoice.id
            description = f"{package.name} {invoice.invoice_number}"

        status = await self._charge_now(invoice_id, user_id, package.price, description, now)
        return {
            "status": status,
            "credits_added": package.scraper_credits if status == "success" else 0,
            "invoice": await self._get_invoice(invoice_id),
        }

    async def _charge_now(self, invoice_id: str, user_id: str, amount: int, description: str, now: datetime) -> str:
        """Charge a freshly created invoice synchronously and settle the result."""
        try:
            outcome, transaction_id = await collect_payment(
                self._gateway,
                amount=amount,
                description=description,
                reference_id=invoice_id,
                user_id=user_id,
                transaction_id=None,
            )
        except PaymentGatewayError as exc:
            await apply_outcome(
                self._session_factory,
                self._notifier,
                invoice_id,
                PaymentStatus.FAILED,
                now,
                reason=str(exc),
            )
            raise

        if transaction_id is not None:
            async with self._session_factory.begin() as session:
                await InvoiceRepository(session).set_transaction(invoice_id, transaction_id, now)

        status = await apply_outcome(
            self._session_factory,
            self._notifier,
            invoice_id,
            outcome,
            now,
            transaction_id=transaction_id,
        )
        if status == "failed":
            raise PaymentGatewayError(f"Payment {outcome.value}", transient=False)
        return status

    # -- webhook -------------------------------------------------------------

    async def handle_gateway_webhook(self, event: WebhookEvent) -> str:
        """Settle an asynchronous gateway outcome.

        The caller has already verified the signature.  ``reference_id``
        names an invoice, or a retry attempt for retry charges.  Events for
        unknown or already-settled references are acknowledged and ignored.
        """
        now = self._clock()
        async with self._session_factory() as session:
            invoice = await InvoiceRepository(session).get(event.reference_id)
            attempt_id: str | None = None
            if invoice is not None:
                invoice_id = invoice.id
            else:
                attempt = await RetryAttemptRepository(session).get(event.reference_id)
                if attempt is None:
                    logger.warning("Webhook for unknown reference %s ignored", event.reference_id)
                    return "ignored"
                invoice_id = attempt.invoice_id
                attempt_id = attempt.id

        if attempt_id is not None:
            async with self._session_factory.begin() as session:
                await RetryAttemptRepository(session).set_transaction(attempt_id, event.transaction_id)

        status = await apply_outcome(
            self._session_factory,
            self._notifier,
            invoice_id,
            event.outcome,
            now,
            transaction_id=event.transaction_id,
            reason=f"Payment {event.outcome.value} (webhook)",
            attempt_id=attempt_id,
        )
        logger.info(
            "Webhook processed: reference=%s outcome=%s result=%s",
            event.reference_id,
            event.outcome.value,
            status,
        )
        return "ignored" if status == "skipped" else status

    # -- reads ---------------------------------------------------------------

    async def _get_invoice(self, invoice_id: str) -> Invoice:
        async with self._session_factory() as session:
            row = await InvoiceRepository(session).get(invoice_id)
            if row is None:
                raise SubscriptionError(f"Invoice {invoice_id} not found")
            return to_invoice(row)

    async def current_subscription(self, user_id: str) -> Subscription | None:
        async with self._session_factory() as session:
            row = await SubscriptionRepository(session).get_by_user(user_id)
            return to_subscription(row) if row is not None else None

    async def list_invoices(self, user_id: str, limit: int = 20, offset: int = 0) -> tuple[list[Invoice], int]:
        async with self._session_factory() as session:
            rows, total = await InvoiceRepository(session).list_for_user(user_id, limit=limit, offset=offset)
            return [to_invoice(r) for r in rows], total

    async def recent_renewals(self, limit: int = 10) -> list[Invoice]:
        async with self._session_factory() as session:
            rows = await InvoiceRepository(session).list_recent_paid(InvoiceKind.RENEWAL.value, limit)
            return [to_invoice(r) for r in rows]
