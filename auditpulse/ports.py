"""
Collaborator Protocols.

The aggregation core depends only on these structural interfaces; concrete
adapters live in auditpulse.store and auditpulse.services, and tests supply
their own doubles.
"""

from datetime import datetime
from typing import Awaitable, Callable, Optional, Protocol

from auditpulse.schemas import (
    CoalescingKey,
    Definition,
    DiffSummary,
    NotificationPayload,
    RawEvent,
    ReferencingItem,
)

ExpiryCallback = Callable[[CoalescingKey], Awaitable[None]]


class CoalescingStore(Protocol):
    """
    TTL-scoped store holding an ordered list of serialized changes per key.

    The only mutation paths for a session are append (additive, one entry,
    renews the timer), renew (timer only) and claim_and_delete (destructive,
    single winner). Append never rewrites earlier entries.
    """

    async def read(self, key: CoalescingKey) -> list[str]:
        """Entries buffered under key, oldest first. Empty when there are none."""
        ...

    async def append(self, key: CoalescingKey, value: str, ttl_seconds: int) -> int:
        """
        Atomically push one entry and (re)arm the expiry timer to ttl_seconds.

        Returns the number of entries under key after the push.
        """
        ...

    async def renew(self, key: CoalescingKey, ttl_seconds: int) -> None:
        """(Re)arm the expiry timer without adding an entry."""
        ...

    async def claim_and_delete(self, key: CoalescingKey) -> list[str]:
        """Atomically take and delete every entry. Empty if already gone."""
        ...

    async def subscribe_expiry(self, callback: ExpiryCallback) -> None:
        """Start delivering timer expiries to callback (possibly more than once)."""
        ...

    async def orphaned_keys(self) -> list[CoalescingKey]:
        """Keys whose body remains but whose timer is gone."""
        ...

    async def get_thread_ref(self, key: CoalescingKey) -> Optional[str]:
        ...

    async def set_thread_ref(self, key: CoalescingKey, ref: str, ttl_seconds: int) -> None:
        ...

    async def close(self) -> None:
        ...


class AuditSource(Protocol):
    async def fetch_since(self, org_id: str, cursor: datetime) -> list[RawEvent]:
        """Events with occurred_at strictly after cursor."""
        ...

    async def fetch_window(self, org_id: str, hours: int) -> list[RawEvent]:
        """Events from the last `hours` hours (manual lookback)."""
        ...


class OrgDirectory(Protocol):
    async def list_org_ids(self) -> list[str]:
        ...

    async def instance_url(self, org_id: str) -> str:
        ...


class MetadataService(Protocol):
    async def get_current(
        self, org_id: str, item_name: str, metadata_type: str = ""
    ) -> Definition:
        ...

    async def get_previous(
        self,
        org_id: str,
        item_name: str,
        before_time: datetime,
        metadata_type: str = "",
    ) -> Optional[Definition]:
        ...

    async def find_referencing_parents(
        self, org_id: str, item_name: str
    ) -> list[ReferencingItem]:
        ...


class SummarizationService(Protocol):
    async def summarize_diff(
        self,
        previous: Optional[Definition],
        current: Definition,
        context: dict,
    ) -> DiffSummary:
        """Explain previous → current; with previous=None, explain current alone."""
        ...


class Publisher(Protocol):
    async def publish(self, payload: NotificationPayload) -> Optional[str]:
        """Send the notification. May return a thread reference for follow-ups."""
        ...
