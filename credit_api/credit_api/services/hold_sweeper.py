"""Background task expiring overdue credit holds.

Runs as an ``asyncio`` task started from the application lifespan.  The same
sweep is exposed as ``POST /api/v1/internal/holds/cleanup`` for deployments
that drive it from an external scheduler instead.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import datetime

from credit_engine.ledger.holds import HoldManager
from credit_engine.ledger.store import utcnow
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


async def sweep_expired_holds(
    session_factory: async_sessionmaker[AsyncSession],
    clock: Callable[[], datetime] = utcnow,
) -> int:
    """Expire every overdue hold in one transaction.  Returns the count."""
    async with session_factory.begin() as session:
        return await HoldManager(session, clock=clock).cleanup_expired()


class HoldSweeper:
    """Periodically runs :func:`sweep_expired_holds` on the event loop.

    One session is opened per sweep from *session_factory*; sweeps are
    *interval_seconds* apart.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: int = 300,
    ) -> None:
        self._session_factory = session_factory
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            logger.warning("Hold sweeper is already running")
            return
        self._task = asyncio.create_task(self._sweep_forever(), name="hold-sweeper")
        logger.info("Hold sweeper scheduled every %ds", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Hold sweeper stopped")

    async def _sweep_forever(self) -> None:
        while True:
            try:
                expired = await sweep_expired_holds(self._session_factory)
            except (OperationalError, InterfaceError) as exc:
                # Database unreachable; try again on the next tick.
                logger.error("Hold sweep failed: %s", exc, exc_info=True)
            else:
                if expired:
                    logger.info("Expired %d overdue hold(s)", expired)
            await asyncio.sleep(self._interval)
