"""Payment gateway clients and webhook verification.

The billing services depend only on the :class:`PaymentGateway` protocol.
:class:`HTTPPaymentGateway` talks to the real gateway over HTTPS;
:class:`SandboxPaymentGateway` approves every payment and is only wired in
dev when no gateway URL is configured.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from collections import OrderedDict
from typing import Any, Protocol

import httpx
from credit_engine.errors import PaymentGatewayError
from credit_engine.models.billing import PaymentResult, PaymentStatus
from credit_engine.retry import RetryConfig, async_retry_with_backoff
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Gateway-Signature"


class PaymentGateway(Protocol):
    """Consumed payment-gateway interface."""

    async def create_payment(
        self,
        amount: int,
        description: str,
        reference_id: str,
        payer_info: dict[str, Any],
    ) -> PaymentResult: ...

    async def check_status(self, transaction_id: str) -> PaymentStatus: ...


class WebhookEvent(BaseModel):
    """Asynchronous payment outcome pushed by the gateway."""

    reference_id: str = Field(..., min_length=1, max_length=256)
    transaction_id: str = Field(..., min_length=1, max_length=256)
    outcome: PaymentStatus


# ---------------------------------------------------------------------------
# Webhook signature
# ---------------------------------------------------------------------------


def compute_webhook_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request *body*."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of the ``X-Gateway-Signature`` header.

    An empty *secret* never verifies, so a misconfigured deployment rejects
    every webhook instead of accepting forged ones.
    """
    if not secret or not signature:
        return False
    return hmac.compare_digest(compute_webhook_signature(body, secret), signature.strip())


# ---------------------------------------------------------------------------
# HTTP gateway
# ---------------------------------------------------------------------------


class _TransientGatewayFailure(Exception):
    """Internal marker for failures worth retrying."""


class HTTPPaymentGateway:
    """Async client for the payment gateway REST API.

    Timeouts, connection errors and 5xx responses are retried with
    exponential backoff and then raised as transient
    :class:`PaymentGatewayError`; 4xx responses are permanent and never
    retried.

    Parameters
    ----------
    base_url:
        Root URL of the gateway API.
    api_key:
        Bearer credential sent with every request.
    timeout:
        Per-request timeout in seconds.
    retry_config:
        Backoff parameters for transient failures.
    transport:
        Optional httpx transport, used by tests to stub the network.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        retry_config: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            transport=transport,
        )
        self._retry = retry_config or RetryConfig()

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, path: str, json_body: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json_body)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise _TransientGatewayFailure(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code >= 500:
            raise _TransientGatewayFailure(f"Gateway returned {response.status_code}")
        if response.status_code >= 400:
            detail = response.text[:200]
            raise PaymentGatewayError(
                f"Gateway rejected request ({response.status_code}): {detail}",
                transient=False,
            )
        return response.json()

    async def _request(self, method: str, path: str, json_body: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            return await async_retry_with_backoff(
                lambda: self._send(method, path, json_body),
                self._retry,
                retryable_exceptions=(_TransientGatewayFailure,),
            )
        except _TransientGatewayFailure as exc:
            logger.error("Payment gateway unavailable: %s %s: %s", method, path, exc)
            raise PaymentGatewayError(f"Payment gateway unavailable: {exc}", transient=True) from exc

    async def create_payment(
        self,
        amount: int,
        description: str,
        reference_id: str,
        payer_info: dict[str, Any],
    ) -> PaymentResult:
        # reference_id doubles as the gateway idempotency key.
        data = await self._request(
            "POST",
            "/payments",
            {
                "amount": amount,
                "currency": "IDR",
                "description": description,
                "reference_id": reference_id,
                "payer": payer_info,
            },
        )
        try:
            result = PaymentResult.model_validate(data)
        except ValidationError as exc:
            raise PaymentGatewayError(f"Malformed gateway response: {exc}", transient=True) from exc
        logger.info(
            "Payment created: reference=%s transaction=%s status=%s",
            reference_id,
            result.transaction_id,
            result.status.value,
        )
        return result

    async def check_status(self, transaction_id: str) -> PaymentStatus:
        data = await self._request("GET", f"/payments/{transaction_id}")
        try:
            return PaymentStatus(data.get("status"))
        except ValueError as exc:
            raise PaymentGatewayError(f"Unknown payment status {data.get('status')!r}", transient=True) from exc


# ---------------------------------------------------------------------------
# Sandbox gateway
# ---------------------------------------------------------------------------


class SandboxPaymentGateway:
    """In-process gateway that approves every payment immediately.

    Only the newest *max_tracked* transactions are remembered for
    :meth:`check_status`; older ids report ``expired`` like unknown ones.
    """

    def __init__(self, max_tracked: int = 1000) -> None:
        self._max_tracked = max_tracked
        self._payments: OrderedDict[str, PaymentStatus] = OrderedDict()

    async def create_payment(
        self,
        amount: int,
        description: str,
        reference_id: str,
        payer_info: dict[str, Any],
    ) -> PaymentResult:
        transaction_id = f"sbx_{uuid.uuid4().hex[:16]}"
        self._payments[transaction_id] = PaymentStatus.SUCCESS
        while len(self._payments) > self._max_tracked:
            self._payments.popitem(last=False)
        logger.info("Sandbox payment approved: reference=%s amount=%d", reference_id, amount)
        return PaymentResult(transaction_id=transaction_id, status=PaymentStatus.SUCCESS)

    async def check_status(self, transaction_id: str) -> PaymentStatus:
        return self._payments.get(transaction_id, PaymentStatus.EXPIRED)

    async def close(self) -> None:
        return None
