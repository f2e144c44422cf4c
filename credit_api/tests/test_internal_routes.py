"""Router tests for the cron-authenticated /api/v1/internal endpoints."""

from __future__ import annotations

import pytest


class TestCronSecret:
    @pytest.mark.asyncio
    async def test_missing_secret_rejected(self, client):
        resp = await client.post("/api/v1/internal/billing/renew")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, client):
        resp = await client.post(
            "/api/v1/internal/billing/renew",
            headers={"Authorization": "Bearer not-the-secret"},
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_user_token_is_not_a_cron_secret(self, client, auth_headers):
        resp = await client.post("/api/v1/internal/billing/retry", headers=auth_headers)
        assert resp.status_code == 401


class TestBillingPasses:
    @pytest.mark.asyncio
    async def test_renewal_pass_with_nothing_due(self, client, cron_headers, auth_headers):
        await client.post("/api/v1/subscriptions/trial", json={}, headers=auth_headers)

        resp = await client.post("/api/v1/internal/billing/renew", headers=cron_headers)
        assert resp.status_code == 200
        assert resp.json() == {"processed_count": 0, "results": []}

    @pytest.mark.asyncio
    async def test_retry_pass_with_nothing_due(self, client, cron_headers):
        resp = await client.post("/api/v1/internal/billing/retry", headers=cron_headers)
        assert resp.status_code == 200
        assert resp.json()["processed_count"] == 0

    @pytest.mark.asyncio
    async def test_recent_renewals_empty(self, client, cron_headers):
        resp = await client.get("/api/v1/internal/billing/renewals", headers=cron_headers)
        assert resp.status_code == 200
        assert resp.json() == {"renewals": []}


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_hold_cleanup_leaves_live_holds(self, client, cron_headers, auth_headers):
        await client.post("/api/v1/subscriptions/trial", json={}, headers=auth_headers)
        await client.post(
            "/api/v1/credits/holds",
            json={"category": "scraper", "amount": 10, "reference_id": "job-1"},
            headers=auth_headers,
        )

        resp = await client.post("/api/v1/internal/holds/cleanup", headers=cron_headers)
        assert resp.status_code == 200
        assert resp.json() == {"expired_count": 0}

        holds = (await client.get("/api/v1/credits/holds", headers=auth_headers)).json()
        assert holds["total"] == 1

    @pytest.mark.asyncio
    async def test_reconcile_reports_each_category(self, client, cron_headers, auth_headers):
        await client.post("/api/v1/subscriptions/trial", json={}, headers=auth_headers)

        resp = await client.post("/api/v1/internal/ledger/reconcile/user-1", headers=cron_headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["consistent"] is True
        by_category = {c["category"]: c for c in body["categories"]}
        assert by_category["scraper"]["ledger_sum"] == 100
        assert by_category["interaction"]["ledger_sum"] == 150

    @pytest.mark.asyncio
    async def test_audit_listing_verifies_chain(self, client, cron_headers, auth_headers):
        await client.post("/api/v1/subscriptions/trial", json={}, headers=auth_headers)
        await client.post("/api/v1/internal/ledger/reconcile/user-1", headers=cron_headers)

        resp = await client.get("/api/v1/internal/audit?user_id=user-1", headers=cron_headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["chain_valid"] is True
        assert body["entries_verified"] == len(body["entries"])
        events = [e["event_type"] for e in body["entries"]]
        assert events.count("ledger_reconciled") == 2
        assert "trial_started" in events

        filtered = await client.get(
            "/api/v1/internal/audit?user_id=user-1&event=ledger_reconciled",
            headers=cron_headers,
        )
        assert {e["event_type"] for e in filtered.json()["entries"]} == {"ledger_reconciled"}

    @pytest.mark.asyncio
    async def test_audit_requires_user_id(self, client, cron_headers):
        resp = await client.get("/api/v1/internal/audit", headers=cron_headers)
        assert resp.status_code == 422
