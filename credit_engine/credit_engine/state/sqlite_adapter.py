"""SQLite backend for local development and the test suite.

The ORM models and repositories are shared with PostgreSQL; what changes
locally is:

* file databases use ``NullPool`` and rely on SQLite's busy timeout for
  writer contention, while ``:memory:`` uses one shared connection;
* account locks come from :mod:`credit_engine.state.locking`'s in-process
  registry instead of advisory locks;
* ``JSONB`` columns are stored as JSON text.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_DB = Path(".credit_core") / "credits.db"
MEMORY = ":memory:"

_CONNECTION_PRAGMAS: tuple[str, ...] = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=30000",
)


def _apply_pragmas(dbapi_connection: object, _record: object) -> None:
    cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
    try:
        for pragma in _CONNECTION_PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


def get_local_engine(db_path: Path | str = DEFAULT_LOCAL_DB) -> AsyncEngine:
    """Async aiosqlite engine for *db_path*.

    Parameters
    ----------
    db_path:
        Database file; missing parent directories are created.  ``":memory:"``
        gives an in-memory database shared by every session of the engine.
    """
    if str(db_path) == MEMORY:
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{MEMORY}",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        location = MEMORY
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{path}",
            poolclass=NullPool,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        location = str(path)

    event.listen(engine.sync_engine, "connect", _apply_pragmas)
    logger.info("Local SQLite engine at %s", location)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create any missing credit tables; existing tables are left alone."""
    from credit_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Credit tables ensured on %s", engine.url)
