"""
Tests for the Dispatcher.

Covers:
- One payload per session with every change in time order
- Summary, risk, target URL and unresolved count
- Publisher called exactly once; failure is logged, not retried
- Thread references read before publish and saved after
- Org directory failures do not block publishing
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from auditpulse.aggregation.dispatcher import Dispatcher, build_payload
from auditpulse.exceptions import PublishError, StoreUnavailableError
from auditpulse.schemas import (
    BufferedChange,
    ChangeCategory,
    CoalescingKey,
    Definition,
    EnrichedChange,
    RawEvent,
    ReferencingItem,
    RiskLevel,
    Session,
)

BASE = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _make_session(count: int = 2) -> Session:
    changes = [
        BufferedChange(
            raw_event=RawEvent(
                id=f"c{i}",
                action_code="ChangedFlow",
                display_text=f"Created version {i + 1} of flow Approve_Discount",
                actor_id="U1",
                actor_name="Ada",
                occurred_at=BASE + timedelta(minutes=2 * i),
            ),
            category=ChangeCategory.FLOW,
            buffered_at=BASE + timedelta(minutes=2 * i),
            version_hint=i + 1,
        )
        for i in range(count)
    ]
    return Session(
        key=CoalescingKey(
            org_id="org-1",
            metadata_type="FlowDefinition",
            metadata_name="Approve_Discount",
            actor_id="U1",
        ),
        changes=changes,
        first_change_time=changes[0].buffered_at,
        last_change_time=changes[-1].buffered_at,
    )


def _enrich(session: Session, resolved: bool = True) -> list[EnrichedChange]:
    *earlier, latest = session.changes
    enriched = [
        EnrichedChange(change=c, explanation="earlier", risk_level=RiskLevel.LOW, fully_resolved=resolved)
        for c in earlier
    ]
    enriched.append(
        EnrichedChange(
            change=latest,
            explanation="Adds an approval step" if resolved else "fallback",
            risk_level=RiskLevel.HIGH,
            change_list=["Added decision"] if resolved else [],
            current_definition=Definition(name="Approve_Discount", version=2) if resolved else None,
            referencing_parents=[ReferencingItem(name="Quote_Master")],
            fully_resolved=resolved,
        )
    )
    return enriched


# ── Payload ────────────────────────────────────────────────────────────


class TestBuildPayload:
    def test_all_changes_in_order(self):
        session = _make_session(count=3)
        payload = build_payload(session, _enrich(session))

        assert payload.change_count == 3
        assert payload.change_summaries[0].startswith("[2026-01-05 09:00:00]")
        assert payload.change_summaries[0].endswith("(v1)")
        assert payload.change_summaries[2].startswith("[2026-01-05 09:04:00]")
        assert payload.first_change_time == BASE
        assert payload.last_change_time == BASE + timedelta(minutes=4)

    def test_summary_and_risk(self):
        session = _make_session()
        payload = build_payload(session, _enrich(session))

        assert payload.summary == "Adds an approval step"
        assert payload.details == ["Added decision"]
        assert payload.risk_level == RiskLevel.HIGH
        assert payload.referencing_parents == ["Quote_Master"]
        assert payload.actor_name == "Ada"
        assert payload.subject_name == "Approve_Discount"

    def test_unresolved_session(self):
        session = _make_session(count=2)
        payload = build_payload(session, _enrich(session, resolved=False))

        assert payload.unresolved_count == 2
        assert payload.summary == "2 changes to Approve_Discount"
        assert all(line.endswith("[unresolved]") for line in payload.change_summaries)

    def test_target_url(self):
        session = _make_session()
        payload = build_payload(session, _enrich(session), instance_url="https://acme.example.com/")
        assert payload.target_url == "https://acme.example.com/lightning/setup/Flows/home"

    def test_no_instance_url(self):
        session = _make_session()
        assert build_payload(session, _enrich(session)).target_url == ""


# ── Dispatch ───────────────────────────────────────────────────────────


class TestDispatch:
    @pytest.mark.asyncio
    async def test_publishes_once(self, publisher, store, org_directory):
        dispatcher = Dispatcher(publisher, store, org_directory)
        session = _make_session()

        await dispatcher.dispatch(session, _enrich(session))

        publisher.publish.assert_awaited_once()
        payload = publisher.publish.await_args.args[0]
        assert payload.target_url.startswith("https://acme.example.com")
        assert payload.thread_ref is None

    @pytest.mark.asyncio
    async def test_publish_failure_not_retried(self, publisher, store):
        publisher.publish.side_effect = PublishError("HTTP 503")
        dispatcher = Dispatcher(publisher, store)
        session = _make_session()

        await dispatcher.dispatch(session, _enrich(session))

        publisher.publish.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_enrichment_skipped(self, publisher, store):
        dispatcher = Dispatcher(publisher, store)
        await dispatcher.dispatch(_make_session(), [])
        publisher.publish.assert_not_called()

    @pytest.mark.asyncio
    async def test_thread_ref_saved_and_reused(self, publisher, store):
        publisher.publish.return_value = "1736067600.000100"
        dispatcher = Dispatcher(publisher, store, thread_ttl_seconds=3600)
        session = _make_session()

        await dispatcher.dispatch(session, _enrich(session))
        assert await store.get_thread_ref(session.key) == "1736067600.000100"

        await dispatcher.dispatch(session, _enrich(session))
        second = publisher.publish.await_args.args[0]
        assert second.thread_ref == "1736067600.000100"

    @pytest.mark.asyncio
    async def test_thread_store_failure_still_publishes(self, publisher):
        store = AsyncMock()
        store.get_thread_ref.side_effect = StoreUnavailableError("down")
        store.set_thread_ref.side_effect = StoreUnavailableError("down")
        publisher.publish.return_value = "ts-1"
        dispatcher = Dispatcher(publisher, store)
        session = _make_session()

        await dispatcher.dispatch(session, _enrich(session))

        publisher.publish.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_org_directory_failure_still_publishes(self, publisher, store, org_directory):
        org_directory.instance_url.side_effect = RuntimeError("registry down")
        dispatcher = Dispatcher(publisher, store, org_directory)
        session = _make_session()

        await dispatcher.dispatch(session, _enrich(session))

        assert publisher.publish.await_args.args[0].target_url == ""
