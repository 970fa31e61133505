"""
Tests for change event schemas.

Covers:
- Risk escalation and max
- Session helpers (category, contains_event, sorted_by_occurrence)
- Session JSON survives the store round trip
- Offset-less occurrence times are read as UTC
"""

from datetime import datetime, timedelta, timezone

from auditpulse.schemas import (
    BufferedChange,
    ChangeCategory,
    CoalescingKey,
    RawEvent,
    RiskLevel,
    Session,
    escalate_risk,
    max_risk,
)

BASE = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _make_change(event_id: str, minute: int) -> BufferedChange:
    return BufferedChange(
        raw_event=RawEvent(
            id=event_id,
            action_code="PermSetAssign",
            occurred_at=BASE + timedelta(minutes=minute),
        ),
        category=ChangeCategory.PERMISSION,
        buffered_at=BASE,
    )


def _make_session(*changes: BufferedChange) -> Session:
    return Session(
        key=CoalescingKey(
            org_id="org-1", metadata_type="PermissionSet", metadata_name="Sales_Ops", actor_id="U1"
        ),
        changes=list(changes),
        first_change_time=BASE,
        last_change_time=BASE,
    )


class TestRisk:
    def test_escalate(self):
        assert escalate_risk(RiskLevel.LOW) == RiskLevel.MEDIUM
        assert escalate_risk(RiskLevel.MEDIUM) == RiskLevel.HIGH
        assert escalate_risk(RiskLevel.HIGH) == RiskLevel.HIGH

    def test_max_risk(self):
        assert max_risk([RiskLevel.MEDIUM, RiskLevel.LOW]) == RiskLevel.MEDIUM
        assert max_risk([]) == RiskLevel.LOW


class TestRawEvent:
    def test_naive_occurred_at_assumed_utc(self):
        event = RawEvent(id="a", action_code="PermSetAssign", occurred_at=datetime(2026, 1, 5, 9, 0))
        assert event.occurred_at == BASE

    def test_aware_occurred_at_kept(self):
        plus_two = timezone(timedelta(hours=2))
        event = RawEvent(
            id="a", action_code="PermSetAssign", occurred_at=datetime(2026, 1, 5, 11, 0, tzinfo=plus_two)
        )
        assert event.occurred_at.utcoffset() == timedelta(hours=2)
        assert event.occurred_at == BASE


class TestSession:
    def test_category_and_contains(self):
        session = _make_session(_make_change("a", 0))
        assert session.category == ChangeCategory.PERMISSION
        assert session.contains_event("a")
        assert not session.contains_event("b")

    def test_empty_session_category(self):
        assert _make_session().category == ChangeCategory.IGNORED

    def test_sorted_by_occurrence_is_a_copy(self):
        session = _make_session(_make_change("c", 3), _make_change("a", 1), _make_change("b", 2))
        ordered = session.sorted_by_occurrence()
        assert [c.raw_event.id for c in ordered.changes] == ["a", "b", "c"]
        assert [c.raw_event.id for c in session.changes] == ["c", "a", "b"]

    def test_json_round_trip(self):
        session = _make_session(_make_change("a", 0))
        restored = Session.model_validate_json(session.model_dump_json())
        assert restored == session
        assert restored.changes[0].raw_event.actor_id == "unknown"
