"""Shared fixtures for the credit API tests.

Each test runs against its own SQLite file, a scripted payment gateway and
an ``httpx`` client bound to the ASGI app.  The application lifespan does
not run under ``ASGITransport``, so the fixtures initialise the engine and
billing collaborators themselves.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Secrets must be in the environment before the app module builds its
# module-level instance.
_TEST_TOKEN_SECRET = "test-token-secret-for-credit-core"
_TEST_CRON_SECRET = "test-cron-secret"
_TEST_WEBHOOK_SECRET = "test-webhook-secret"
os.environ.setdefault("CREDIT_API_TOKEN_SECRET", _TEST_TOKEN_SECRET)
os.environ.setdefault("CREDIT_API_BILLING_CRON_SECRET", _TEST_CRON_SECRET)
os.environ.setdefault("CREDIT_API_GATEWAY_WEBHOOK_SECRET", _TEST_WEBHOOK_SECRET)
os.environ.setdefault("CREDIT_API_HOLD_SWEEP_INTERVAL_SECONDS", "0")

from credit_engine.models.billing import PaymentResult, PaymentStatus
from credit_engine.state.sqlite_adapter import create_local_tables
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_api import dependencies
from credit_api.config import APISettings
from credit_api.dependencies import get_settings
from credit_api.main import create_app
from credit_api.security import TokenManager
from credit_api.services.billing_cycle_service import BillingCycleService
from credit_api.services.notification_service import NotificationEmitter
from credit_api.services.retry_scheduler import RetryScheduler

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FrozenClock:
    """Callable clock that only moves when a test sets or advances it."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    """Scripted payment gateway.

    Each ``create_payment`` call consumes the next scripted outcome (a
    :class:`PaymentStatus` or an exception to raise); with an empty script
    every payment succeeds.  ``check_status`` answers from ``statuses``,
    which tests may edit to simulate a payment settling later.
    """

    def __init__(self) -> None:
        self.script: list[PaymentStatus | Exception] = []
        self.calls: list[dict[str, Any]] = []
        self.status_checks: list[str] = []
        self.statuses: dict[str, PaymentStatus] = {}

    def queue(self, *outcomes: PaymentStatus | Exception) -> None:
        self.script.extend(outcomes)

    async def create_payment(
        self,
        amount: int,
        description: str,
        reference_id: str,
        payer_info: dict[str, Any],
    ) -> PaymentResult:
        self.calls.append(
            {
                "amount": amount,
                "description": description,
                "reference_id": reference_id,
                "payer_info": payer_info,
            }
        )
        outcome = self.script.pop(0) if self.script else PaymentStatus.SUCCESS
        if isinstance(outcome, Exception):
            raise outcome
        transaction_id = f"txn_{len(self.calls)}"
        self.statuses[transaction_id] = outcome
        return PaymentResult(transaction_id=transaction_id, status=outcome)

    async def check_status(self, transaction_id: str) -> PaymentStatus:
        self.status_checks.append(transaction_id)
        return self.statuses.get(transaction_id, PaymentStatus.PENDING)


# ---------------------------------------------------------------------------
# Application fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 1, 9, 0, tzinfo=UTC))


@pytest.fixture
def api_settings(tmp_path) -> APISettings:
    return APISettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        token_secret=SecretStr(_TEST_TOKEN_SECRET),
        billing_cron_secret=SecretStr(_TEST_CRON_SECRET),
        gateway_webhook_secret=SecretStr(_TEST_WEBHOOK_SECRET),
        hold_sweep_interval_seconds=0,
        credits_low_threshold=100,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture
async def session_factory(
    api_settings: APISettings,
    gateway: FakeGateway,
) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Initialise the process-wide engine and billing collaborators."""
    engine = dependencies.init_engine(api_settings)
    await create_local_tables(engine)
    dependencies.init_billing(api_settings, gateway)
    yield dependencies.get_session_factory()
    await dependencies.close_billing()
    await dependencies.dispose_engine()


@pytest.fixture
def notifier(session_factory: async_sessionmaker[AsyncSession]) -> NotificationEmitter:
    return NotificationEmitter(session_factory)


@pytest.fixture
def billing(session_factory, gateway: FakeGateway, notifier, clock: FrozenClock) -> BillingCycleService:
    return BillingCycleService(session_factory, gateway, notifier, clock=clock)


@pytest.fixture
def retries(session_factory, gateway: FakeGateway, notifier, clock: FrozenClock) -> RetryScheduler:
    return RetryScheduler(session_factory, gateway, notifier, clock=clock)


@pytest_asyncio.fixture
async def client(api_settings: APISettings, session_factory) -> AsyncIterator[AsyncClient]:
    app = create_app(api_settings)
    app.dependency_overrides[get_settings] = lambda: api_settings
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def headers_for():
    """Return a function building bearer headers for a user id."""
    manager = TokenManager(SecretStr(_TEST_TOKEN_SECRET))

    def _headers(sub: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {manager.issue_token(sub)}"}

    return _headers


@pytest.fixture
def auth_headers(headers_for) -> dict[str, str]:
    return headers_for("user-1")


@pytest.fixture
def cron_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {_TEST_CRON_SECRET}"}


@pytest.fixture
def webhook_secret() -> str:
    return _TEST_WEBHOOK_SECRET
