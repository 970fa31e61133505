"""
Resilience Patterns — Timeout, Retry with Backoff, Circuit Breaker.

Applied to all external calls: audit source, metadata, LLM, publisher.
Breakers are plain objects created at startup and injected where needed.
"""

import asyncio
import random
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitOpenError(Exception):
    """Raised when a circuit breaker is open and rejects a call."""


# ── Timeout ─────────────────────────────────────────────────────────────────


async def call_with_timeout(
    fn: Callable[[], Awaitable[T]],
    timeout: float,
    breaker: Optional["CircuitBreaker"] = None,
) -> T:
    """
    Run fn() under asyncio.wait_for, optionally through a circuit breaker.

    A timeout counts as a breaker failure and surfaces as asyncio.TimeoutError.
    """
    async def _bounded() -> T:
        return await asyncio.wait_for(fn(), timeout=timeout)

    if breaker is None:
        return await _bounded()
    return await breaker.call(_bounded)


# ── Retry with Exponential Backoff ─────────────────────────────────────────


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 16.0,
    jitter: float = 0.5,
    retry_on: tuple = (Exception,),
    operation_name: str = "operation",
) -> T:
    """
    Retry an async function with exponential backoff and jitter.

    Strategy: base_delay * 2^attempt + random(0, jitter), capped at max_delay.
    The last exception is re-raised once retries are exhausted.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except retry_on as exc:
            if attempt >= max_retries:
                logger.error(
                    "retry_exhausted",
                    operation=operation_name,
                    attempts=attempt + 1,
                    error=str(exc),
                )
                raise
            delay = min(base_delay * (2 ** attempt), max_delay) + random.uniform(0, jitter)
            attempt += 1
            logger.warning(
                "retry_attempt",
                operation=operation_name,
                attempt=attempt,
                max_retries=max_retries,
                delay=round(delay, 2),
                error=str(exc),
            )
            await asyncio.sleep(delay)


# ── Circuit Breaker ─────────────────────────────────────────────────────────


class CircuitState(str, Enum):
    CLOSED = "closed"       # Normal operation
    OPEN = "open"           # Rejecting all requests
    HALF_OPEN = "half_open" # Testing with one request


class CircuitBreaker:
    """
    Stop hammering a collaborator that keeps failing.

    States: CLOSED → OPEN → HALF_OPEN → CLOSED
    - CLOSED: normal. `failure_threshold` failures within `window_seconds` → OPEN
    - OPEN: reject immediately for `recovery_timeout` seconds
    - HALF_OPEN: let one probe through. Success → CLOSED; failure → OPEN
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        window_seconds: float = 60.0,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures: list[float] = []
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._clock() - self._opened_at >= self.recovery_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            logger.info("circuit_half_open", breaker=self.name)
        return self._state

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Execute fn through the circuit breaker."""
        state = self.state
        if state == CircuitState.OPEN:
            raise CircuitOpenError(f"Circuit breaker '{self.name}' is OPEN")
        if state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError(f"Circuit breaker '{self.name}' is testing")
            self._probe_in_flight = True

        try:
            result = await fn()
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def _record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("circuit_closed", breaker=self.name)
        self._state = CircuitState.CLOSED
        self._failures.clear()
        self._probe_in_flight = False

    def _record_failure(self) -> None:
        now = self._clock()
        self._probe_in_flight = False

        if self._state == CircuitState.HALF_OPEN:
            self._open(now)
            return

        cutoff = now - self.window_seconds
        self._failures = [t for t in self._failures if t > cutoff]
        self._failures.append(now)
        if len(self._failures) >= self.failure_threshold:
            self._open(now)

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        logger.warning(
            "circuit_opened",
            breaker=self.name,
            failures=len(self._failures),
            threshold=self.failure_threshold,
        )

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        self._state = CircuitState.CLOSED
        self._failures.clear()
        self._probe_in_flight = False
