"""
In-Memory Coalescing Store.

Same contract as the Redis store, held in dicts and driven by an injectable
clock. Nothing expires on its own: expire_due() fires the timers whose
deadline has passed, either from a background loop (poll_interval) or
directly from tests. notify_expired() re-delivers an expiry to simulate a
transport that delivers more than once.

Every operation completes without awaiting, so each one is atomic with
respect to other coroutines on the loop.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog

from auditpulse.ports import ExpiryCallback
from auditpulse.schemas import CoalescingKey

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryCoalescingStore:
    """Process-local coalescing store."""

    def __init__(
        self,
        clock: Callable[[], datetime] = _utcnow,
        retention_seconds: int = 86_400,
        poll_interval: Optional[float] = None,
    ):
        self._clock = clock
        self._retention_seconds = retention_seconds
        self._poll_interval = poll_interval
        self._bodies: dict[CoalescingKey, tuple[list[str], datetime]] = {}
        self._timers: dict[CoalescingKey, datetime] = {}
        self._threads: dict[tuple[str, str, str], tuple[str, datetime]] = {}
        self._callbacks: list[ExpiryCallback] = []
        self._poll_task: Optional[asyncio.Task] = None
        self.writes = 0

    # ── Session operations ────────────────────────────────────────────

    def _live_entries(self, key: CoalescingKey) -> list[str]:
        entry = self._bodies.get(key)
        if entry is None:
            return []
        values, deadline = entry
        if deadline <= self._clock():
            del self._bodies[key]
            return []
        return values

    async def read(self, key: CoalescingKey) -> list[str]:
        return list(self._live_entries(key))

    async def append(self, key: CoalescingKey, value: str, ttl_seconds: int) -> int:
        values = self._live_entries(key)
        values.append(value)
        self._bodies[key] = (values, self._body_deadline(ttl_seconds))
        self._timers[key] = self._clock() + timedelta(seconds=ttl_seconds)
        self.writes += 1
        return len(values)

    async def renew(self, key: CoalescingKey, ttl_seconds: int) -> None:
        values = self._live_entries(key)
        if not values:
            return
        self._bodies[key] = (values, self._body_deadline(ttl_seconds))
        self._timers[key] = self._clock() + timedelta(seconds=ttl_seconds)
        self.writes += 1

    async def claim_and_delete(self, key: CoalescingKey) -> list[str]:
        values = self._live_entries(key)
        self._timers.pop(key, None)
        self._bodies.pop(key, None)
        return values

    def _body_deadline(self, ttl_seconds: int) -> datetime:
        body_ttl = max(self._retention_seconds, ttl_seconds * 2)
        return self._clock() + timedelta(seconds=body_ttl)

    async def orphaned_keys(self) -> list[CoalescingKey]:
        return [k for k in self._bodies if k not in self._timers]

    def timer_deadline(self, key: CoalescingKey) -> Optional[datetime]:
        return self._timers.get(key)

    def session_count(self) -> int:
        return len(self._bodies)

    # ── Thread references ─────────────────────────────────────────────

    async def get_thread_ref(self, key: CoalescingKey) -> Optional[str]:
        entry = self._threads.get((key.org_id, key.metadata_name, key.actor_id))
        if entry is None or entry[1] <= self._clock():
            return None
        return entry[0]

    async def set_thread_ref(self, key: CoalescingKey, ref: str, ttl_seconds: int) -> None:
        self._threads[(key.org_id, key.metadata_name, key.actor_id)] = (
            ref,
            self._clock() + timedelta(seconds=ttl_seconds),
        )

    # ── Expiry notifications ──────────────────────────────────────────

    async def subscribe_expiry(self, callback: ExpiryCallback) -> None:
        self._callbacks.append(callback)
        if self._poll_interval and self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll())

    async def expire_due(self) -> int:
        """Drop timers past their deadline and deliver their expiries."""
        now = self._clock()
        due = [k for k, deadline in self._timers.items() if deadline <= now]
        for key in due:
            del self._timers[key]
        for key in due:
            await self.notify_expired(key)
        return len(due)

    async def notify_expired(self, key: CoalescingKey) -> None:
        for callback in self._callbacks:
            await callback(key)

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            await self.expire_due()

    async def close(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        self._callbacks.clear()
