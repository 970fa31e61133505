"""
Expiry Listener — turns timer expiries into exactly one claimed session.

The claim is the store's atomic read-and-delete, so whichever caller gets a
non-empty result owns the session; duplicate expiry deliveries, the orphan
sweep and forced flushes all race through the same primitive and at most
one of them wins.

Once claimed, the session is gone from the store. A failure while
processing it is logged and dropped: delivery is at-most-once.
"""

from typing import Awaitable, Callable, Optional

import structlog

from auditpulse.aggregation.buffer import build_session, decode_changes
from auditpulse.exceptions import StoreUnavailableError
from auditpulse.ports import CoalescingStore
from auditpulse.schemas import CoalescingKey, Session

logger = structlog.get_logger(__name__)

SessionHandler = Callable[[Session], Awaitable[None]]


class ExpiryListener:
    """Claims expired sessions and hands them to a handler."""

    def __init__(self, store: CoalescingStore, handler: SessionHandler):
        self._store = store
        self._handler = handler
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self._store.subscribe_expiry(self.on_expired)
        self._started = True

    async def claim(self, key: CoalescingKey) -> Optional[Session]:
        """
        Atomically take the session for key, ordered by occurrence time.

        Returns None when there is nothing to claim (already claimed,
        never existed, or no readable change). Duplicate events collapse
        to their first copy.

        Raises:
            StoreUnavailableError: the claim could not be executed
        """
        values = await self._store.claim_and_delete(key)
        if not values:
            return None
        return build_session(key, decode_changes(key, values))

    async def on_expired(self, key: CoalescingKey) -> bool:
        """
        Handle one expiry delivery. Never raises.

        Returns:
            True if this delivery claimed and processed a session
        """
        try:
            session = await self.claim(key)
        except StoreUnavailableError as e:
            logger.error(
                "session_claim_failed",
                org_id=key.org_id,
                metadata_name=key.metadata_name,
                error=str(e),
            )
            return False

        if session is None:
            logger.debug(
                "session_already_claimed",
                org_id=key.org_id,
                metadata_name=key.metadata_name,
            )
            return False

        logger.info(
            "session_claimed",
            org_id=key.org_id,
            metadata_type=key.metadata_type,
            metadata_name=key.metadata_name,
            actor_id=key.actor_id,
            change_count=len(session.changes),
        )

        try:
            await self._handler(session)
        except Exception as e:
            logger.error(
                "session_processing_failed",
                org_id=key.org_id,
                metadata_name=key.metadata_name,
                change_count=len(session.changes),
                error=str(e),
                exc_info=True,
            )
        return True

    async def sweep(self) -> int:
        """
        Claim sessions whose timer vanished without a delivered expiry.

        Returns:
            Number of sessions claimed by this sweep
        """
        try:
            orphans = await self._store.orphaned_keys()
        except StoreUnavailableError as e:
            logger.error("orphan_sweep_failed", error=str(e))
            return 0

        claimed = 0
        for key in orphans:
            if await self.on_expired(key):
                claimed += 1
        if claimed:
            logger.info("orphan_sweep_completed", claimed=claimed, scanned=len(orphans))
        return claimed
