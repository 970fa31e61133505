"""
Redis Coalescing Store.

Session bodies are lists of serialized changes and timers are plain string
keys (see store.keys). Append pushes one change and re-arms the timer in a
single MULTI/EXEC, so it never rewrites what is already buffered. The claim
reads and deletes the list in one MULTI/EXEC, so two deliveries of the same
expiry can never both see it.

Expiry notifications come from keyevent pub/sub (notify-keyspace-events Ex).
Redis delivers them at most once and only to connected subscribers, so the
orphan sweep (orphaned_keys) covers anything missed while disconnected.
"""

import asyncio
from typing import Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from auditpulse.exceptions import StoreUnavailableError
from auditpulse.ports import ExpiryCallback
from auditpulse.schemas import CoalescingKey
from auditpulse.store.keys import (
    SESSION_NS,
    TIMER_NS,
    parse_key,
    session_key,
    thread_key,
    timer_key,
)

logger = structlog.get_logger(__name__)

RESUBSCRIBE_DELAY_SECONDS = 1.0


class RedisCoalescingStore:
    """Coalescing store backed by a single Redis database."""

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "auditpulse",
        retention_seconds: int = 86_400,
        client: Optional[aioredis.Redis] = None,
    ):
        self._redis = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=3,
        )
        self._prefix = key_prefix
        self._retention_seconds = retention_seconds
        self._listen_task: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()

    # ── Session operations ────────────────────────────────────────────

    async def read(self, key: CoalescingKey) -> list[str]:
        try:
            return await self._redis.lrange(session_key(self._prefix, key), 0, -1)
        except RedisError as e:
            raise StoreUnavailableError(f"read failed for {key}", cause=e) from e

    async def append(self, key: CoalescingKey, value: str, ttl_seconds: int) -> int:
        body = session_key(self._prefix, key)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.rpush(body, value)
                pipe.expire(body, self._body_ttl(ttl_seconds))
                pipe.set(timer_key(self._prefix, key), "1", ex=ttl_seconds)
                length, _, _ = await pipe.execute()
        except RedisError as e:
            raise StoreUnavailableError(f"append failed for {key}", cause=e) from e
        return int(length)

    async def renew(self, key: CoalescingKey, ttl_seconds: int) -> None:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.expire(session_key(self._prefix, key), self._body_ttl(ttl_seconds))
                pipe.set(timer_key(self._prefix, key), "1", ex=ttl_seconds)
                await pipe.execute()
        except RedisError as e:
            raise StoreUnavailableError(f"renew failed for {key}", cause=e) from e

    async def claim_and_delete(self, key: CoalescingKey) -> list[str]:
        body = session_key(self._prefix, key)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.lrange(body, 0, -1)
                pipe.delete(body)
                pipe.delete(timer_key(self._prefix, key))
                values, _, _ = await pipe.execute()
        except RedisError as e:
            raise StoreUnavailableError(f"claim failed for {key}", cause=e) from e
        return values or []

    def _body_ttl(self, ttl_seconds: int) -> int:
        return max(self._retention_seconds, ttl_seconds * 2)

    async def orphaned_keys(self) -> list[CoalescingKey]:
        orphans: list[CoalescingKey] = []
        try:
            async for raw in self._redis.scan_iter(match=f"{self._prefix}:{SESSION_NS}:*"):
                key = parse_key(self._prefix, SESSION_NS, raw)
                if key is None:
                    continue
                if not await self._redis.exists(timer_key(self._prefix, key)):
                    orphans.append(key)
        except RedisError as e:
            raise StoreUnavailableError("orphan scan failed", cause=e) from e
        return orphans

    # ── Thread references ─────────────────────────────────────────────

    async def get_thread_ref(self, key: CoalescingKey) -> Optional[str]:
        try:
            return await self._redis.get(thread_key(self._prefix, key))
        except RedisError as e:
            raise StoreUnavailableError("thread lookup failed", cause=e) from e

    async def set_thread_ref(self, key: CoalescingKey, ref: str, ttl_seconds: int) -> None:
        try:
            await self._redis.set(thread_key(self._prefix, key), ref, ex=ttl_seconds)
        except RedisError as e:
            raise StoreUnavailableError("thread store failed", cause=e) from e

    # ── Expiry notifications ──────────────────────────────────────────

    async def subscribe_expiry(self, callback: ExpiryCallback) -> None:
        if self._listen_task is not None:
            return  # Already subscribed
        await self._enable_expired_notifications()
        self._listen_task = asyncio.create_task(self._listen(callback))
        logger.info("expiry_subscription_started", prefix=self._prefix)

    async def _enable_expired_notifications(self) -> None:
        """Best effort: managed Redis often forbids CONFIG, set it in redis.conf."""
        try:
            await self._redis.config_set("notify-keyspace-events", "Ex")
        except RedisError as e:
            logger.warning("redis_notify_config_failed", error=str(e))

    def _expired_channel(self) -> str:
        db = self._redis.connection_pool.connection_kwargs.get("db", 0)
        return f"__keyevent@{db}__:expired"

    async def _listen(self, callback: ExpiryCallback) -> None:
        channel = self._expired_channel()
        while True:
            pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
            try:
                await pubsub.subscribe(channel)
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    key = parse_key(self._prefix, TIMER_NS, message["data"])
                    if key is None:
                        continue
                    self._spawn(callback(key))
            except RedisError as e:
                logger.error("expiry_subscription_lost", error=str(e))
            finally:
                await pubsub.aclose()
            await asyncio.sleep(RESUBSCRIBE_DELAY_SECONDS)

    def _spawn(self, coro) -> None:
        # Handlers run as tasks so a slow claim never stalls delivery
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def close(self) -> None:
        if self._listen_task is not None:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
            self._listen_task = None
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        await self._redis.aclose()
