"""
Tests for Resilience Patterns.

Tests:
- Timeout wrapper
- Retry with exponential backoff
- Circuit breaker state machine
"""

import asyncio

import pytest

from auditpulse.services.resilience import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    call_with_timeout,
    retry_with_backoff,
)


class FakeMonotonic:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


async def _fail():
    raise RuntimeError("boom")


async def _ok():
    return "ok"


# ============================================================================
# TIMEOUT TESTS
# ============================================================================


class TestCallWithTimeout:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        assert await call_with_timeout(_ok, timeout=1.0) == "ok"

    @pytest.mark.asyncio
    async def test_times_out(self):
        async def _slow():
            await asyncio.sleep(1)

        with pytest.raises(asyncio.TimeoutError):
            await call_with_timeout(_slow, timeout=0.01)

    @pytest.mark.asyncio
    async def test_timeout_counts_as_breaker_failure(self):
        async def _slow():
            await asyncio.sleep(1)

        breaker = CircuitBreaker("slow", failure_threshold=1)
        with pytest.raises(asyncio.TimeoutError):
            await call_with_timeout(_slow, timeout=0.01, breaker=breaker)
        assert breaker.state == CircuitState.OPEN


# ============================================================================
# RETRY TESTS
# ============================================================================


class TestRetry:
    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self):
        attempts = []

        async def _flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("reset")
            return "ok"

        result = await retry_with_backoff(_flaky, max_retries=3, base_delay=0.0, jitter=0.0)

        assert result == "ok"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_exhausted_reraises(self):
        attempts = []

        async def _always():
            attempts.append(1)
            raise ConnectionError("reset")

        with pytest.raises(ConnectionError):
            await retry_with_backoff(_always, max_retries=2, base_delay=0.0, jitter=0.0)
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_non_retryable_not_retried(self):
        attempts = []

        async def _bad():
            attempts.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await retry_with_backoff(
                _bad, max_retries=3, base_delay=0.0, jitter=0.0, retry_on=(ConnectionError,)
            )
        assert len(attempts) == 1


# ============================================================================
# CIRCUIT BREAKER TESTS
# ============================================================================


class TestCircuitBreaker:
    @pytest.fixture
    def clock(self):
        return FakeMonotonic()

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(
            "test", failure_threshold=3, window_seconds=60.0, recovery_timeout=30.0, clock=clock
        )

    @pytest.mark.asyncio
    async def test_starts_closed(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert await breaker.call(_ok) == "ok"

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, breaker):
        for _ in range(3):
            with pytest.raises(RuntimeError):
                await breaker.call(_fail)
        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.call(_ok)

    @pytest.mark.asyncio
    async def test_failures_outside_window_forgotten(self, breaker, clock):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.call(_fail)
        clock.now = 61.0
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_probe_closes(self, breaker, clock):
        for _ in range(3):
            with pytest.raises(RuntimeError):
                await breaker.call(_fail)
        clock.now = 30.0
        assert breaker.state == CircuitState.HALF_OPEN
        assert await breaker.call(_ok) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_probe_failure_reopens(self, breaker, clock):
        for _ in range(3):
            with pytest.raises(RuntimeError):
                await breaker.call(_fail)
        clock.now = 30.0
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)
        assert breaker.state == CircuitState.OPEN

    def test_reset(self, breaker):
        breaker._state = CircuitState.OPEN
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
