"""Tests for request logging, correlation ids and the JSON formatter."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from credit_api.middleware.json_formatter import JSONFormatter


class TestRequestLogging:
    @pytest.mark.asyncio
    async def test_correlation_id_echoed(self, client):
        resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "corr-123"})
        assert resp.headers["X-Correlation-ID"] == "corr-123"

    @pytest.mark.asyncio
    async def test_correlation_id_generated(self, client):
        resp = await client.get("/api/v1/health")
        assert len(resp.headers["X-Correlation-ID"]) == 36

    @pytest.mark.asyncio
    async def test_access_record_masks_credentials(self, client, auth_headers, caplog):
        with caplog.at_level(logging.INFO, logger="credit_api.access"):
            await client.get("/api/v1/credits/balance", headers=auth_headers)

        records = [r for r in caplog.records if r.name == "credit_api.access"]
        assert records
        request_data = records[-1].request
        assert request_data["path"] == "/api/v1/credits/balance"
        assert request_data["status_code"] == 200
        assert request_data["user_id"] == "user-1"
        assert request_data["headers"]["authorization"] == "***"


class TestJSONFormatter:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord("credit_api.access", logging.WARNING, __file__, 1, "request %s", ("completed",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_basic_fields(self):
        line = JSONFormatter().format(self._record())
        payload = json.loads(line)
        assert payload["level"] == "WARNING"
        assert payload["logger"] == "credit_api.access"
        assert payload["message"] == "request completed"
        assert "request" not in payload

    def test_request_context_promoted(self):
        payload = json.loads(
            JSONFormatter().format(self._record(request={"correlation_id": "abc", "status_code": 404}))
        )
        assert payload["correlation_id"] == "abc"
        assert payload["request"]["status_code"] == 404

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        payload = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in payload["exc_info"]
