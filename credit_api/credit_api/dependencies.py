"""FastAPI dependency injection for settings, sessions, identity and billing collaborators."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from credit_engine.retry import RetryConfig
from credit_engine.state.database import get_engine, get_session_factory as _engine_session_factory
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from credit_api.config import APISettings, load_api_settings
from credit_api.services.billing_cycle_service import BillingCycleService
from credit_api.services.notification_service import NotificationEmitter
from credit_api.services.payment_gateway import HTTPPaymentGateway, PaymentGateway, SandboxPaymentGateway
from credit_api.services.retry_scheduler import RetryScheduler

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )
    _session_factory = _engine_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by the billing services, which open their own short transactions
    instead of sharing the request session.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` for the request.

    The session commits on clean exit and rolls back on exception.  Routes
    that must notify after commit call ``session.commit()`` themselves; the
    final commit is then a no-op.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


def get_current_user(request: Request) -> str:
    """Return the user id set by :class:`AuthenticationMiddleware`."""
    sub = getattr(request.state, "sub", None)
    if not sub:
        raise HTTPException(status_code=401, detail="Authentication required")
    return sub


UserDep = Annotated[str, Depends(get_current_user)]


def require_cron_secret(request: Request, settings: SettingsDep) -> None:
    """Authenticate an internal scheduler call against ``billing_cron_secret``.

    An unset secret rejects every call.
    """
    expected = settings.billing_cron_secret.get_secret_value()
    header = request.headers.get("authorization", "")
    scheme, _, presented = header.partition(" ")
    if not expected or scheme.lower() != "bearer" or not hmac.compare_digest(presented.strip(), expected):
        logger.warning("Rejected internal call to %s", request.url.path)
        raise HTTPException(status_code=401, detail="Invalid or missing cron secret")


# ---------------------------------------------------------------------------
# Billing collaborators
# ---------------------------------------------------------------------------

_gateway: PaymentGateway | None = None
_notifier: NotificationEmitter | None = None


def build_gateway(settings: APISettings) -> PaymentGateway:
    """Build the configured gateway client; the sandbox when no URL is set."""
    if not settings.gateway_url:
        logger.warning("No gateway_url configured; using the sandbox payment gateway")
        return SandboxPaymentGateway()
    return HTTPPaymentGateway(
        settings.gateway_url,
        settings.gateway_api_key.get_secret_value(),
        timeout=settings.gateway_timeout,
        retry_config=RetryConfig(max_retries=settings.gateway_max_retries),
    )


def init_billing(settings: APISettings, gateway: PaymentGateway | None = None) -> None:
    """Create the process-wide gateway and notification emitter."""
    global _gateway, _notifier  # noqa: PLW0603
    _gateway = gateway if gateway is not None else build_gateway(settings)
    _notifier = NotificationEmitter(get_session_factory())


async def close_billing() -> None:
    global _gateway, _notifier  # noqa: PLW0603
    close = getattr(_gateway, "close", None)
    if close is not None:
        await close()
    _gateway = None
    _notifier = None


def get_gateway() -> PaymentGateway:
    if _gateway is None:
        raise RuntimeError("Payment gateway has not been initialised. Ensure init_billing() runs at startup.")
    return _gateway


def get_notifier() -> NotificationEmitter:
    if _notifier is None:
        raise RuntimeError("Notification emitter has not been initialised. Ensure init_billing() runs at startup.")
    return _notifier


NotifierDep = Annotated[NotificationEmitter, Depends(get_notifier)]


def get_billing_service(
    settings: SettingsDep,
    session_factory: SessionFactoryDep,
) -> BillingCycleService:
    return BillingCycleService(
        session_factory,
        get_gateway(),
        get_notifier(),
        batch_limit=settings.billing_batch_limit,
    )


def get_retry_scheduler(
    settings: SettingsDep,
    session_factory: SessionFactoryDep,
) -> RetryScheduler:
    return RetryScheduler(
        session_factory,
        get_gateway(),
        get_notifier(),
        batch_limit=settings.billing_batch_limit,
    )


BillingServiceDep = Annotated[BillingCycleService, Depends(get_billing_service)]
RetrySchedulerDep = Annotated[RetryScheduler, Depends(get_retry_scheduler)]
