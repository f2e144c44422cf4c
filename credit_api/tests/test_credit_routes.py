"""Router tests for /api/v1/credits."""

from __future__ import annotations

import pytest


async def _start_trial(client, headers) -> None:
    resp = await client.post("/api/v1/subscriptions/trial", json={}, headers=headers)
    assert resp.status_code == 201


async def _hold(client, headers, amount: int, reference_id: str = "job-1", category: str = "scraper"):
    return await client.post(
        "/api/v1/credits/holds",
        json={"category": category, "amount": amount, "reference_id": reference_id},
        headers=headers,
    )


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_token_rejected(self, client):
        resp = await client.get("/api/v1/credits/balance")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_forged_token_rejected(self, client):
        resp = await client.get(
            "/api/v1/credits/balance",
            headers={"Authorization": "Bearer ctk.e30.deadbeef"},
        )
        assert resp.status_code == 401


class TestBalance:
    @pytest.mark.asyncio
    async def test_new_user_has_zero_balances(self, client, auth_headers):
        resp = await client.get("/api/v1/credits/balance", headers=auth_headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["user_id"] == "user-1"
        assert body["balances"]["scraper"] == {"total": 0, "held": 0, "available": 0}
        assert body["balances"]["interaction"] == {"total": 0, "held": 0, "available": 0}

    @pytest.mark.asyncio
    async def test_trial_credits_visible(self, client, auth_headers):
        await _start_trial(client, auth_headers)
        body = (await client.get("/api/v1/credits/balance", headers=auth_headers)).json()
        assert body["balances"]["scraper"]["total"] == 100
        assert body["balances"]["interaction"]["total"] == 150


class TestHolds:
    @pytest.mark.asyncio
    async def test_hold_convert_release_flow(self, client, auth_headers):
        await _start_trial(client, auth_headers)

        resp = await _hold(client, auth_headers, 50)
        assert resp.status_code == 201
        hold = resp.json()
        assert hold["status"] == "active"

        rejected = await _hold(client, auth_headers, 60, reference_id="job-2")
        assert rejected.status_code == 402
        assert rejected.json() == {
            "detail": "Insufficient credits: 50 available, 60 required",
            "code": "INSUFFICIENT_CREDITS",
            "available": 50,
            "required": 60,
            "shortfall": 10,
        }

        listed = (await client.get("/api/v1/credits/holds", headers=auth_headers)).json()
        assert listed["total"] == 1
        assert listed["holds"][0]["id"] == hold["hold_id"]

        converted = await client.post(
            "/api/v1/credits/holds/convert",
            json={"hold_id": hold["hold_id"], "actual_amount": 45},
            headers=auth_headers,
        )
        assert converted.status_code == 200
        result = converted.json()
        assert result["debited_amount"] == 45
        assert result["refunded_amount"] == 5
        assert result["remaining_balance"] == 55

        balance = (await client.get("/api/v1/credits/balance", headers=auth_headers)).json()
        assert balance["balances"]["scraper"] == {"total": 55, "held": 0, "available": 55}

        again = await client.post(
            "/api/v1/credits/holds/release",
            json={"hold_id": hold["hold_id"]},
            headers=auth_headers,
        )
        assert again.status_code == 404
        assert again.json()["code"] == "HOLD_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_release_returns_balance(self, client, auth_headers):
        await _start_trial(client, auth_headers)
        hold = (await _hold(client, auth_headers, 30, category="interaction")).json()

        resp = await client.post(
            "/api/v1/credits/holds/release",
            json={"hold_id": hold["hold_id"], "reason": "job cancelled"},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "released"
        assert body["amount_released"] == 30
        assert body["balance"] == {"total": 150, "held": 0, "available": 150}

    @pytest.mark.asyncio
    async def test_convert_crossing_threshold_notifies_credits_low(self, client, auth_headers):
        await _start_trial(client, auth_headers)
        hold = (await _hold(client, auth_headers, 20)).json()
        await client.post(
            "/api/v1/credits/holds/convert",
            json={"hold_id": hold["hold_id"], "actual_amount": 20},
            headers=auth_headers,
        )

        notifications = (await client.get("/api/v1/notifications", headers=auth_headers)).json()["notifications"]
        low = [n for n in notifications if n["type"] == "credits_low"]
        assert len(low) == 1
        assert "80 scraper credits" in low[0]["message"]

    @pytest.mark.asyncio
    async def test_other_users_hold_not_found(self, client, auth_headers, headers_for):
        await _start_trial(client, auth_headers)
        hold = (await _hold(client, auth_headers, 10)).json()

        resp = await client.post(
            "/api/v1/credits/holds/convert",
            json={"hold_id": hold["hold_id"], "actual_amount": 10},
            headers=headers_for("someone-else"),
        )
        assert resp.status_code == 404
        assert resp.json()["hold_id"] == hold["hold_id"]

    @pytest.mark.asyncio
    async def test_actual_amount_above_hold_is_400(self, client, auth_headers):
        await _start_trial(client, auth_headers)
        hold = (await _hold(client, auth_headers, 10)).json()

        resp = await client.post(
            "/api/v1/credits/holds/convert",
            json={"hold_id": hold["hold_id"], "actual_amount": 11},
            headers=auth_headers,
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "INVALID_REQUEST"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"category": "scraper", "amount": 0, "reference_id": "job"},
            {"category": "scraper", "amount": 5, "reference_id": "job", "ttl_minutes": 0},
            {"category": "scraper", "amount": 5, "reference_id": "job", "ttl_minutes": 1441},
            {"category": "gold", "amount": 5, "reference_id": "job"},
            {"category": "scraper", "amount": 5},
        ],
    )
    async def test_invalid_hold_requests(self, client, auth_headers, payload):
        resp = await client.post("/api/v1/credits/holds", json=payload, headers=auth_headers)
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_convert_requires_actual_amount(self, client, auth_headers):
        resp = await client.post(
            "/api/v1/credits/holds/convert",
            json={"hold_id": "abc"},
            headers=auth_headers,
        )
        assert resp.status_code == 422


class TestLedgerHistory:
    @pytest.mark.asyncio
    async def test_history_newest_first(self, client, auth_headers):
        await _start_trial(client, auth_headers)
        hold = (await _hold(client, auth_headers, 40)).json()
        await client.post(
            "/api/v1/credits/holds/convert",
            json={"hold_id": hold["hold_id"], "actual_amount": 30, "description": "Scrape"},
            headers=auth_headers,
        )

        resp = await client.get("/api/v1/credits/ledger?category=scraper", headers=auth_headers)
        assert resp.status_code == 200
        entries = resp.json()["entries"]
        assert [(e["amount"], e["source"]) for e in entries] == [
            (10, "refund"),
            (-40, "usage"),
            (100, "trial_allocation"),
        ]
        assert entries[0]["balance_after"] == 70

    @pytest.mark.asyncio
    async def test_packages_listed(self, client, auth_headers):
        resp = await client.get("/api/v1/credits/packages", headers=auth_headers)
        assert resp.status_code == 200
        assert {p["id"] for p in resp.json()["packages"]} == {"starter", "growth", "pro", "enterprise"}


class TestNotifications:
    @pytest.mark.asyncio
    async def test_mark_read_and_delete(self, client, auth_headers, headers_for):
        await _start_trial(client, auth_headers)

        listed = (await client.get("/api/v1/notifications", headers=auth_headers)).json()["notifications"]
        assert [n["type"] for n in listed] == ["welcome"]
        notification_id = listed[0]["id"]
        assert listed[0]["is_read"] is False

        foreign = await client.post(
            "/api/v1/notifications/mark-read",
            json={"notification_ids": [notification_id]},
            headers=headers_for("someone-else"),
        )
        assert foreign.json() == {"updated": 0}

        marked = await client.post(
            "/api/v1/notifications/mark-read",
            json={"notification_ids": [notification_id]},
            headers=auth_headers,
        )
        assert marked.json() == {"updated": 1}
        unread = (await client.get("/api/v1/notifications?unread_only=true", headers=auth_headers)).json()
        assert unread["notifications"] == []

        deleted = await client.post(
            "/api/v1/notifications/delete",
            json={"notification_ids": [notification_id]},
            headers=auth_headers,
        )
        assert deleted.json() == {"deleted": 1}
        assert (await client.get("/api/v1/notifications", headers=auth_headers)).json()["notifications"] == []

    @pytest.mark.asyncio
    async def test_empty_id_list_rejected(self, client, auth_headers):
        resp = await client.post("/api/v1/notifications/mark-read", json={"notification_ids": []}, headers=auth_headers)
        assert resp.status_code == 422
