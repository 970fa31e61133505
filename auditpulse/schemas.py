"""
Change Event Schemas.

Defines raw audit events, change categories, coalescing sessions,
enriched changes and the outbound notification payload.
"""

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Enums ──────────────────────────────────────────────────────────────


class ChangeCategory(StrEnum):
    FLOW = "Flow"
    PERMISSION = "Permission"
    OBJECT = "Object"
    VALIDATION_RULE = "ValidationRule"
    FORMULA_FIELD = "FormulaField"
    METADATA = "Metadata"
    IGNORED = "Ignored"             # Valid outcome, not an error


class RiskLevel(StrEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH]


def escalate_risk(level: RiskLevel) -> RiskLevel:
    """Raise a risk level by one tier (High stays High)."""
    idx = _RISK_ORDER.index(level)
    return _RISK_ORDER[min(idx + 1, len(_RISK_ORDER) - 1)]


def max_risk(levels: list[RiskLevel]) -> RiskLevel:
    """Highest tier in the list; Low for an empty list."""
    if not levels:
        return RiskLevel.LOW
    return max(levels, key=_RISK_ORDER.index)


# ── Audit Events ───────────────────────────────────────────────────────


class RawEvent(BaseModel):
    """
    One audit record, immutable once read from the audit source.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    action_code: str                # Opaque vendor identifier
    display_text: str = ""
    actor_id: str = "unknown"
    actor_name: str = ""
    occurred_at: datetime
    section_hint: str = ""

    @field_validator("occurred_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        """Offset-less timestamps are UTC; cursors compare aware times only."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class CoalescingKey(BaseModel):
    """Identifies one debounce session."""
    model_config = ConfigDict(frozen=True)

    org_id: str
    metadata_type: str
    metadata_name: str
    actor_id: str


# ── Session ────────────────────────────────────────────────────────────


class BufferedChange(BaseModel):
    raw_event: RawEvent
    category: ChangeCategory
    buffered_at: datetime
    version_hint: Optional[int] = None
    precomputed_summary: Optional[str] = None


class Session(BaseModel):
    """
    Buffered, not-yet-dispatched changes for one coalescing key.

    Owned by the session buffer until claimed; after the claim it belongs
    to exactly one consumer.
    """
    key: CoalescingKey
    changes: list[BufferedChange] = Field(default_factory=list)
    first_change_time: datetime
    last_change_time: datetime

    @property
    def category(self) -> ChangeCategory:
        return self.changes[0].category if self.changes else ChangeCategory.IGNORED

    def contains_event(self, event_id: str) -> bool:
        return any(c.raw_event.id == event_id for c in self.changes)

    def sorted_by_occurrence(self) -> "Session":
        """Copy of this session with changes ordered by occurred_at ascending."""
        ordered = sorted(self.changes, key=lambda c: c.raw_event.occurred_at)
        return self.model_copy(update={"changes": ordered})


# ── Collaborator Results ───────────────────────────────────────────────


class Definition(BaseModel):
    """A metadata item's definition at one point in time."""
    name: str
    version: Optional[int] = None
    body: Any = None
    last_modified: Optional[datetime] = None


class ReferencingItem(BaseModel):
    """An item that references (calls, embeds) another item."""
    name: str
    item_type: str = ""


class DiffSummary(BaseModel):
    summary_text: str
    change_list: list[str] = Field(default_factory=list)
    risk_signals: list[str] = Field(default_factory=list)


# ── Enrichment ─────────────────────────────────────────────────────────


class EnrichedChange(BaseModel):
    """
    A buffered change plus resolved context. In-memory only, never persisted.
    """
    change: BufferedChange
    explanation: str
    risk_level: RiskLevel = RiskLevel.LOW
    change_list: list[str] = Field(default_factory=list)
    previous_definition: Optional[Definition] = None
    current_definition: Optional[Definition] = None
    referencing_parents: list[ReferencingItem] = Field(default_factory=list)
    escalated: bool = False
    fully_resolved: bool = True

    @property
    def category(self) -> ChangeCategory:
        return self.change.category


# ── Notification ───────────────────────────────────────────────────────


class NotificationPayload(BaseModel):
    """
    Final externally-published artifact. Write-once, fire-and-forget.
    """
    model_config = ConfigDict(frozen=True)

    org_id: str
    category: ChangeCategory
    metadata_type: str
    subject_name: str
    summary: str
    change_summaries: list[str]
    details: list[str] = Field(default_factory=list)
    risk_level: RiskLevel
    actor_id: str
    actor_name: str = ""
    first_change_time: datetime
    last_change_time: datetime
    change_count: int
    target_url: str = ""
    referencing_parents: list[str] = Field(default_factory=list)
    unresolved_count: int = 0
    thread_ref: Optional[str] = None


class CycleResult(BaseModel):
    """Outcome of one poll / manual cycle."""
    success: bool = True
    changes_found: int = 0
    errors: list[str] = Field(default_factory=list)
