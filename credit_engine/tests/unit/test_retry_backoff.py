"""Unit tests for async_retry_with_backoff."""

from __future__ import annotations

import pytest
from credit_engine.retry import RetryConfig, async_retry_with_backoff, compute_delay


class _Flaky:
    def __init__(self, failures: int, exc: Exception) -> None:
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "ok"


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class TestComputeDelay:
    def test_exponential_growth_without_jitter(self):
        config = RetryConfig(base_delay=0.5, max_delay=8.0, jitter=False)
        assert [compute_delay(a, config) for a in range(6)] == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0]

    def test_jitter_stays_within_bounds(self):
        config = RetryConfig(base_delay=1.0, max_delay=8.0, jitter=True)
        for _ in range(50):
            assert 0.5 <= compute_delay(0, config) <= 1.5


class TestAsyncRetry:
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        fn = _Flaky(2, ConnectionError("reset"))
        sleep = _RecordingSleep()
        config = RetryConfig(max_retries=3, base_delay=0.1, jitter=False)

        assert await async_retry_with_backoff(fn, config, (ConnectionError,), sleep=sleep) == "ok"
        assert fn.calls == 3
        assert sleep.delays == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_raises_last_error_when_budget_spent(self):
        fn = _Flaky(10, TimeoutError("slow"))
        sleep = _RecordingSleep()
        config = RetryConfig(max_retries=2, jitter=False)

        with pytest.raises(TimeoutError):
            await async_retry_with_backoff(fn, config, (TimeoutError,), sleep=sleep)
        assert fn.calls == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_immediately(self):
        fn = _Flaky(1, KeyError("bad"))
        sleep = _RecordingSleep()

        with pytest.raises(KeyError):
            await async_retry_with_backoff(fn, RetryConfig(max_retries=5), (ConnectionError,), sleep=sleep)
        assert fn.calls == 1
        assert sleep.delays == []
