"""Router tests for the signed payment webhook and the health probes."""

from __future__ import annotations

import json

import pytest
from credit_engine.models.billing import PaymentStatus

from credit_api.services.payment_gateway import SIGNATURE_HEADER, compute_webhook_signature

WEBHOOK_PATH = "/api/v1/webhooks/payments"


def _signed(payload: dict, secret: str) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(payload).encode("utf-8")
    return body, {SIGNATURE_HEADER: compute_webhook_signature(body, secret), "Content-Type": "application/json"}


class TestWebhookSignature:
    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, client):
        resp = await client.post(
            WEBHOOK_PATH,
            content=b'{"reference_id": "x", "transaction_id": "t", "outcome": "success"}',
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, client, webhook_secret):
        body, headers = _signed({"reference_id": "x", "transaction_id": "t", "outcome": "success"}, webhook_secret)
        headers[SIGNATURE_HEADER] = "0" * 64
        resp = await client.post(WEBHOOK_PATH, content=body, headers=headers)
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_malformed_payload_with_valid_signature(self, client, webhook_secret):
        body, headers = _signed({"reference_id": "x", "outcome": "maybe"}, webhook_secret)
        resp = await client.post(WEBHOOK_PATH, content=body, headers=headers)
        assert resp.status_code == 400


class TestWebhookSettlement:
    @pytest.mark.asyncio
    async def test_unknown_reference_ignored(self, client, webhook_secret):
        body, headers = _signed(
            {"reference_id": "no-such-invoice", "transaction_id": "txn_x", "outcome": "success"},
            webhook_secret,
        )
        resp = await client.post(WEBHOOK_PATH, content=body, headers=headers)
        assert resp.status_code == 200
        assert resp.json() == {"received": True, "result": "ignored"}

    @pytest.mark.asyncio
    async def test_pending_topup_completed_by_webhook(self, client, auth_headers, gateway, webhook_secret):
        gateway.queue(PaymentStatus.PENDING)
        purchase = await client.post("/api/v1/billing/topup", json={"package_id": "pro"}, headers=auth_headers)
        assert purchase.status_code == 200
        assert purchase.json()["status"] == "pending"
        assert purchase.json()["credits_added"] == 0
        invoice = purchase.json()["invoice"]

        body, headers = _signed(
            {"reference_id": invoice["id"], "transaction_id": "txn_1", "outcome": "success"},
            webhook_secret,
        )
        resp = await client.post(WEBHOOK_PATH, content=body, headers=headers)
        assert resp.json() == {"received": True, "result": "success"}

        replay = await client.post(WEBHOOK_PATH, content=body, headers=headers)
        assert replay.json() == {"received": True, "result": "ignored"}

        balance = (await client.get("/api/v1/credits/balance", headers=auth_headers)).json()["balances"]
        assert balance["scraper"]["total"] == 50_000

        invoices = (await client.get("/api/v1/billing/invoices", headers=auth_headers)).json()["invoices"]
        assert invoices[0]["status"] == "paid"
        assert invoices[0]["gateway_transaction_id"] == "txn_1"

    @pytest.mark.asyncio
    async def test_failed_outcome_marks_invoice_failed(self, client, auth_headers, gateway, webhook_secret):
        gateway.queue(PaymentStatus.PENDING)
        invoice = (
            await client.post("/api/v1/billing/topup", json={"package_id": "starter"}, headers=auth_headers)
        ).json()["invoice"]

        body, headers = _signed(
            {"reference_id": invoice["id"], "transaction_id": "txn_1", "outcome": "expired"},
            webhook_secret,
        )
        resp = await client.post(WEBHOOK_PATH, content=body, headers=headers)
        assert resp.json()["result"] == "failed"

        balance = (await client.get("/api/v1/credits/balance", headers=auth_headers)).json()["balances"]
        assert balance["scraper"]["total"] == 0


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_needs_no_token(self, client):
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["db"] == "ok"

    @pytest.mark.asyncio
    async def test_ready(self, client):
        resp = await client.get("/ready")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ready"
        assert resp.json()["checks"] == {"db": "ok"}
