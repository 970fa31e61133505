"""
Session Buffer — sliding-window debounce over the coalescing store.

Every append pushes one change and re-arms the timer to W seconds, so a
session only closes after W seconds of silence on its key. The push and the
timer are one atomic store write; earlier changes are never rewritten, so
an expiry racing an append can only split changes across two sessions,
never notify the same change twice. Duplicates are resolved when the
session is assembled at claim time.
"""

from datetime import datetime, timezone
from typing import Callable, NamedTuple, Optional

import structlog
from pydantic import ValidationError

from auditpulse.aggregation.classifier import metadata_type_for
from auditpulse.aggregation.extractor import extract_identifier
from auditpulse.ports import CoalescingStore
from auditpulse.schemas import (
    BufferedChange,
    ChangeCategory,
    CoalescingKey,
    RawEvent,
    Session,
)

logger = structlog.get_logger(__name__)

UNKNOWN_NAME = "unknown"


class AppendResult(NamedTuple):
    is_new_session: bool
    change_count: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def prepare_change(
    org_id: str,
    event: RawEvent,
    category: ChangeCategory,
    buffered_at: datetime,
) -> tuple[CoalescingKey, BufferedChange]:
    """
    Derive the coalescing key and buffered change for a classified event.

    The item name comes from the display text when an identifier can be
    extracted, otherwise from the section hint.
    """
    metadata_type = metadata_type_for(category)
    identifier = extract_identifier(event.display_text, metadata_type)
    if identifier is not None:
        name = identifier.qualified_name
        version = identifier.version
    else:
        name = event.section_hint or UNKNOWN_NAME
        version = None

    key = CoalescingKey(
        org_id=org_id,
        metadata_type=metadata_type,
        metadata_name=name,
        actor_id=event.actor_id,
    )
    change = BufferedChange(
        raw_event=event,
        category=category,
        buffered_at=buffered_at,
        version_hint=version,
    )
    return key, change


def decode_changes(key: CoalescingKey, values: list[str]) -> list[BufferedChange]:
    """Parse stored change entries. Unreadable entries are logged and skipped."""
    changes: list[BufferedChange] = []
    for raw in values:
        try:
            changes.append(BufferedChange.model_validate_json(raw))
        except ValidationError as e:
            logger.error(
                "session_buffer_corrupt_entry",
                metadata_name=key.metadata_name,
                error=str(e),
            )
    return changes


def build_session(key: CoalescingKey, changes: list[BufferedChange]) -> Optional[Session]:
    """
    Session over the first copy of each event, ordered by occurrence time.

    A re-fetched event can land in the list twice when two appends race on
    the same key; only its first copy counts. None when nothing is left.
    """
    seen: set[str] = set()
    unique: list[BufferedChange] = []
    for change in changes:
        if change.raw_event.id in seen:
            continue
        seen.add(change.raw_event.id)
        unique.append(change)
    if not unique:
        return None
    session = Session(
        key=key,
        changes=unique,
        first_change_time=min(c.buffered_at for c in unique),
        last_change_time=max(c.buffered_at for c in unique),
    )
    return session.sorted_by_occurrence()


class SessionBuffer:
    """Appends changes to per-key sessions and renews their timers."""

    def __init__(
        self,
        store: CoalescingStore,
        window_seconds: int = 300,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._window_seconds = window_seconds
        self._clock = clock

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    def now(self) -> datetime:
        return self._clock()

    async def append(self, key: CoalescingKey, change: BufferedChange) -> AppendResult:
        """
        Add a change to the session for key, creating it if needed.

        A change whose event is already buffered is not added twice, but the
        timer is still renewed.

        Raises:
            StoreUnavailableError: read or write against the store failed
        """
        buffered = decode_changes(key, await self._store.read(key))

        if any(c.raw_event.id == change.raw_event.id for c in buffered):
            logger.debug(
                "session_buffer_duplicate_event",
                event_id=change.raw_event.id,
                metadata_name=key.metadata_name,
            )
            await self._store.renew(key, self._window_seconds)
            return AppendResult(is_new_session=False, change_count=len(buffered))

        count = await self._store.append(key, change.model_dump_json(), self._window_seconds)

        logger.info(
            "session_buffer_appended",
            org_id=key.org_id,
            metadata_type=key.metadata_type,
            metadata_name=key.metadata_name,
            actor_id=key.actor_id,
            is_new_session=count == 1,
            change_count=count,
            window_seconds=self._window_seconds,
        )
        return AppendResult(is_new_session=count == 1, change_count=count)
