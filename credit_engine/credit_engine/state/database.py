"""Engine construction, session helpers and dialect detection.

The backend follows the URL: ``postgresql+asyncpg`` gets a pooled engine
with server-side statement and lock timeouts, ``sqlite+aiosqlite`` is
handed to :mod:`credit_engine.state.sqlite_adapter`.  Code that needs
dialect-specific SQL (advisory locks, ``ON CONFLICT``) asks
:func:`is_postgresql` rather than inspecting URLs.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# Milliseconds, applied per connection on PostgreSQL.
STATEMENT_TIMEOUT_MS = 30_000
LOCK_TIMEOUT_MS = 10_000


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create the async engine for *database_url*.

    Parameters
    ----------
    database_url:
        ``postgresql+asyncpg://...`` or ``sqlite+aiosqlite:///path``.  A
        SQLite URL without a path opens a shared in-memory database.
    pool_size, max_overflow:
        PostgreSQL connection pool bounds; ignored for SQLite.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        from credit_engine.state.sqlite_adapter import get_local_engine

        return get_local_engine(url.database or ":memory:")

    engine = create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={
            "server_settings": {
                "statement_timeout": str(STATEMENT_TIMEOUT_MS),
                "lock_timeout": str(LOCK_TIMEOUT_MS),
            }
        },
    )
    logger.info(
        "PostgreSQL engine ready host=%s db=%s pool_size=%d max_overflow=%d",
        url.host,
        url.database,
        pool_size,
        max_overflow,
    )
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory for *engine*; objects stay usable after commit."""
    return async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: commit on success, roll back on any exception."""
    async with get_session_factory(engine)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def dialect_name(session: AsyncSession) -> str:
    """Name of the dialect *session* is bound to, e.g. ``postgresql``."""
    return session.get_bind().dialect.name


def is_postgresql(session: AsyncSession) -> bool:
    return dialect_name(session) == "postgresql"
