"""FastAPI application entry-point for the credit accounting service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from credit_engine.errors import (
    DatabaseError,
    HoldNotFound,
    InsufficientCredits,
    InvalidCreditRequest,
    LedgerInvariantViolation,
    PaymentGatewayError,
    SubscriptionError,
)
from credit_engine.state.sqlite_adapter import create_local_tables
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from credit_api import __version__
from credit_api.config import APISettings, PlatformEnv
from credit_api.dependencies import (
    close_billing,
    dispose_engine,
    get_session_factory,
    get_settings,
    init_billing,
    init_engine,
)
from credit_api.middleware.auth import AuthenticationMiddleware
from credit_api.middleware.logging import RequestLoggingMiddleware
from credit_api.routers import (
    billing,
    credits,
    health,
    internal,
    notifications,
    subscriptions,
    webhooks,
)
from credit_api.security import TokenManager
from credit_api.services.hold_sweeper import HoldSweeper

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Own the engine, billing collaborators and hold sweeper for the app's lifetime.

    Tables are created on startup only for SQLite or the dev environment;
    every other deployment is migrated with Alembic beforehand.
    """
    settings: APISettings = get_settings()

    if settings.structured_logging:
        from credit_api.middleware.json_formatter import configure_json_logging

        configure_json_logging(logging.DEBUG if settings.debug else logging.INFO)

    engine = init_engine(settings)
    local = engine.dialect.name == "sqlite"
    if local or settings.platform_env == PlatformEnv.DEV:
        await create_local_tables(engine)

    init_billing(settings)
    logger.info(
        "Credit API starting: env=%s db=%s gateway=%s",
        settings.platform_env.value,
        engine.dialect.name,
        "http" if settings.gateway_url else "sandbox",
    )

    sweeper: HoldSweeper | None = None
    if settings.hold_sweep_interval_seconds > 0:
        sweeper = HoldSweeper(get_session_factory(), settings.hold_sweep_interval_seconds)
        await sweeper.start()

    try:
        yield
    finally:
        if sweeper is not None:
            await sweeper.stop()
        await close_billing()
        await dispose_engine()
        logger.info("Credit API stopped")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: APISettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Credit Core API",
        description="Credit ledger, holds and subscription billing.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost last) -----------------------------------------

    app.add_middleware(AuthenticationMiddleware, token_manager=TokenManager(settings.token_secret))
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID"],
    )

    # -- Routers -------------------------------------------------------------

    for module in (health, credits, subscriptions, billing, notifications, internal, webhooks):
        app.include_router(module.router, prefix=API_PREFIX)
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(InsufficientCredits)
    async def insufficient_credits_handler(request: Request, exc: InsufficientCredits) -> JSONResponse:
        return JSONResponse(
            status_code=402,
            content={
                "detail": exc.message,
                "code": exc.code,
                "available": exc.available,
                "required": exc.required,
                "shortfall": exc.shortfall,
            },
        )

    @app.exception_handler(HoldNotFound)
    async def hold_not_found_handler(request: Request, exc: HoldNotFound) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={"detail": exc.message, "code": exc.code, "hold_id": exc.hold_id},
        )

    @app.exception_handler(InvalidCreditRequest)
    async def invalid_request_handler(request: Request, exc: InvalidCreditRequest) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": exc.message, "code": exc.code})

    @app.exception_handler(SubscriptionError)
    async def subscription_error_handler(request: Request, exc: SubscriptionError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": exc.message, "code": exc.code})

    @app.exception_handler(PaymentGatewayError)
    async def gateway_error_handler(request: Request, exc: PaymentGatewayError) -> JSONResponse:
        logger.warning("Payment failed on %s: %s", request.url.path, exc)
        if exc.transient:
            return JSONResponse(
                status_code=503,
                content={"detail": "Payment gateway unavailable, try again later", "code": exc.code},
            )
        return JSONResponse(status_code=402, content={"detail": exc.message, "code": exc.code})

    @app.exception_handler(LedgerInvariantViolation)
    async def invariant_handler(request: Request, exc: LedgerInvariantViolation) -> JSONResponse:
        logger.error("Ledger invariant violated on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "Internal ledger error", "code": exc.code})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("Rejected request on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(DatabaseError)
    async def database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error", "code": exc.code})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn credit_api.main:app``.
app = create_app()
