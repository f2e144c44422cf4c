"""Exponential backoff for calls to external collaborators.

Used by the HTTP payment gateway client; database work is never retried here
because a failed transaction must surface to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Backoff parameters for one logical request."""

    max_retries: int = Field(default=2, ge=0, description="Retries after the first attempt.")
    base_delay: float = Field(default=0.5, gt=0.0, description="Delay before the first retry, in seconds.")
    max_delay: float = Field(default=8.0, gt=0.0, description="Upper bound on a single delay, in seconds.")
    jitter: bool = Field(default=True, description="Scale each delay by a random factor in [0.5, 1.5].")


def compute_delay(attempt: int, config: RetryConfig) -> float:
    """Seconds to wait after the zero-based *attempt* failed."""
    capped = min(config.base_delay * 2**attempt, config.max_delay)
    if not config.jitter:
        return capped
    return capped * random.uniform(0.5, 1.5)  # noqa: S311


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``fn()`` until it succeeds or ``config.max_retries`` is spent.

    *fn* is a zero-argument coroutine factory called afresh on every
    attempt.  Exceptions outside *retryable_exceptions* propagate at once;
    the last retryable one is re-raised when the budget runs out.  *sleep*
    is injectable so tests can skip the real delay.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except retryable_exceptions as exc:
            if attempt == config.max_retries:
                raise
            delay = compute_delay(attempt, config)
            attempt += 1
            logger.warning(
                "Attempt %d of %d failed, retrying in %.2fs: %s",
                attempt,
                config.max_retries + 1,
                delay,
                exc,
            )
            await sleep(delay)
