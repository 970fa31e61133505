"""
Test fixtures for AuditPulse tests.

Provides:
- ManualClock: injectable clock advanced explicitly by tests
- In-memory coalescing store bound to the manual clock
- Collaborator doubles (audit source, org directory, metadata,
  summarizer, publisher) built on AsyncMock
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from auditpulse.schemas import Definition, DiffSummary, RawEvent
from auditpulse.store.memory import InMemoryCoalescingStore

T0 = datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)


class ManualClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.start = start
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now

    def at(self, seconds: float) -> datetime:
        """Absolute time `seconds` after the start."""
        self.now = self.start + timedelta(seconds=seconds)
        return self.now


class FakeAuditSource:
    """Serves whatever events were recorded, filtered like the real gateway."""

    def __init__(self):
        self.events: dict[str, list[RawEvent]] = {}
        self.since_calls: list[tuple[str, datetime]] = []
        self.window_calls: list[tuple[str, int]] = []
        self.failures: dict[str, Exception] = {}

    def add(self, org_id: str, *events: RawEvent) -> None:
        self.events.setdefault(org_id, []).extend(events)

    async def fetch_since(self, org_id: str, cursor: datetime) -> list[RawEvent]:
        self.since_calls.append((org_id, cursor))
        if org_id in self.failures:
            raise self.failures[org_id]
        return [e for e in self.events.get(org_id, []) if e.occurred_at > cursor]

    async def fetch_window(self, org_id: str, hours: int) -> list[RawEvent]:
        self.window_calls.append((org_id, hours))
        if org_id in self.failures:
            raise self.failures[org_id]
        return list(self.events.get(org_id, []))


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(clock):
    return InMemoryCoalescingStore(clock=clock)


@pytest.fixture
def audit_source():
    return FakeAuditSource()


@pytest.fixture
def org_directory():
    directory = AsyncMock()
    directory.list_org_ids.return_value = ["org-1"]
    directory.instance_url.return_value = "https://acme.example.com"
    return directory


@pytest.fixture
def metadata():
    service = AsyncMock()
    service.get_current.return_value = Definition(
        name="Approve_Discount", version=3, body={"decisions": ["Over_20_Percent"]}
    )
    service.get_previous.return_value = Definition(
        name="Approve_Discount", version=2, body={"decisions": []}
    )
    service.find_referencing_parents.return_value = []
    return service


@pytest.fixture
def summarizer():
    service = AsyncMock()
    service.summarize_diff.return_value = DiffSummary(
        summary_text="Adds an approval step for large discounts",
        change_list=["Added decision Over_20_Percent"],
    )
    return service


@pytest.fixture
def publisher():
    service = AsyncMock()
    service.publish.return_value = None
    return service
