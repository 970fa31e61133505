"""
Enrichment Router — per-category context for a claimed session.

Strategies:
- Flow: current + prior version, referencing parents, then a diff summary
  told about those parents (any parent escalates the risk one tier)
- ValidationRule / FormulaField: current definition, diff against the prior
  one when it resolves, otherwise a standalone explanation
- Permission / Object / Metadata: display text with a fixed risk tier

Definitions are resolved once per session (prior = last version before the
session's first change), and the resulting explanation is attached to the
latest change. Any metadata or summarization failure degrades the whole
session to display-text fallbacks; it never aborts or suppresses it.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from auditpulse.exceptions import EnrichmentError
from auditpulse.ports import MetadataService, SummarizationService
from auditpulse.schemas import (
    BufferedChange,
    ChangeCategory,
    Definition,
    DiffSummary,
    EnrichedChange,
    ReferencingItem,
    RiskLevel,
    Session,
    escalate_risk,
)
from auditpulse.services.resilience import CircuitBreaker, call_with_timeout

logger = structlog.get_logger(__name__)

T = TypeVar("T")

UNRESOLVED_NOTE = "(could not be fully resolved)"

# Tier used when no summary is available to assess
CATEGORY_BASE_RISK: dict[ChangeCategory, RiskLevel] = {
    ChangeCategory.FLOW: RiskLevel.MEDIUM,
    ChangeCategory.PERMISSION: RiskLevel.MEDIUM,
    ChangeCategory.OBJECT: RiskLevel.MEDIUM,
    ChangeCategory.VALIDATION_RULE: RiskLevel.MEDIUM,
    ChangeCategory.FORMULA_FIELD: RiskLevel.LOW,
    ChangeCategory.METADATA: RiskLevel.LOW,
}

_HIGH_RISK_TERMS = ("security", "permission", "access", "risk", "delete", "remove", "critical")
_MEDIUM_RISK_TERMS = ("update", "modify", "change")


def assess_risk(diff: DiffSummary) -> RiskLevel:
    """Risk tier from the summary's risk signals and wording."""
    if diff.risk_signals:
        return RiskLevel.HIGH
    text = diff.summary_text.lower()
    if any(term in text for term in _HIGH_RISK_TERMS):
        return RiskLevel.HIGH
    if any(term in text for term in _MEDIUM_RISK_TERMS):
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def describe(change: BufferedChange) -> str:
    """One-line description of a buffered change."""
    if change.precomputed_summary:
        return change.precomputed_summary
    event = change.raw_event
    return event.display_text or event.action_code


class EnrichmentRouter:
    """Resolves before/after context for each change of a session."""

    def __init__(
        self,
        metadata: MetadataService,
        summarizer: SummarizationService,
        metadata_timeout: float = 15.0,
        summarization_timeout: float = 60.0,
        metadata_breaker: Optional[CircuitBreaker] = None,
        summarizer_breaker: Optional[CircuitBreaker] = None,
    ):
        self._metadata = metadata
        self._summarizer = summarizer
        self._metadata_timeout = metadata_timeout
        self._summarization_timeout = summarization_timeout
        self._metadata_breaker = metadata_breaker
        self._summarizer_breaker = summarizer_breaker

    async def enrich(self, session: Session) -> list[EnrichedChange]:
        """
        Enrich every change of a (sorted) session. Never raises.

        Returns:
            One EnrichedChange per buffered change, in session order
        """
        if not session.changes:
            return []

        category = session.category
        if category == ChangeCategory.FLOW:
            strategy = self._enrich_flow
        elif category in (ChangeCategory.VALIDATION_RULE, ChangeCategory.FORMULA_FIELD):
            strategy = self._enrich_definition
        else:
            return [self._format_only(c) for c in session.changes]

        try:
            return await strategy(session)
        except Exception as e:
            logger.warning(
                "enrichment_degraded",
                org_id=session.key.org_id,
                category=category.value,
                metadata_name=session.key.metadata_name,
                error=str(e),
            )
            return [self._fallback(c) for c in session.changes]

    # ── Strategies ────────────────────────────────────────────────────

    async def _enrich_flow(self, session: Session) -> list[EnrichedChange]:
        current = await self._get_current(session)
        previous = await self._get_previous(session)
        parents = await self._find_parents(session)
        diff = await self._summarize(session, previous, current, parents)

        risk = assess_risk(diff)
        escalated = bool(parents)
        if escalated:
            risk = escalate_risk(risk)
            logger.info(
                "risk_escalated_by_parents",
                metadata_name=session.key.metadata_name,
                parents=[p.name for p in parents],
                risk_level=risk.value,
            )
        return self._attach(session, diff, previous, current, risk, parents, escalated)

    async def _enrich_definition(self, session: Session) -> list[EnrichedChange]:
        current = await self._get_current(session)
        try:
            previous = await self._get_previous(session)
        except EnrichmentError as e:
            # Prior value is optional here: explain the current one alone
            logger.info(
                "previous_definition_unresolved",
                metadata_name=session.key.metadata_name,
                error=str(e),
            )
            previous = None
        diff = await self._summarize(session, previous, current)
        return self._attach(session, diff, previous, current, assess_risk(diff), [], False)

    def _attach(
        self,
        session: Session,
        diff: DiffSummary,
        previous: Optional[Definition],
        current: Definition,
        risk: RiskLevel,
        parents: list[ReferencingItem],
        escalated: bool,
    ) -> list[EnrichedChange]:
        *earlier, latest = session.changes
        enriched = [
            EnrichedChange(change=c, explanation=describe(c), risk_level=risk)
            for c in earlier
        ]
        enriched.append(
            EnrichedChange(
                change=latest,
                explanation=diff.summary_text or describe(latest),
                risk_level=risk,
                change_list=diff.change_list,
                previous_definition=previous,
                current_definition=current,
                referencing_parents=parents,
                escalated=escalated,
            )
        )
        return enriched

    def _format_only(self, change: BufferedChange) -> EnrichedChange:
        return EnrichedChange(
            change=change,
            explanation=describe(change),
            risk_level=CATEGORY_BASE_RISK.get(change.category, RiskLevel.LOW),
        )

    def _fallback(self, change: BufferedChange) -> EnrichedChange:
        return EnrichedChange(
            change=change,
            explanation=f"{describe(change)} {UNRESOLVED_NOTE}",
            risk_level=CATEGORY_BASE_RISK.get(change.category, RiskLevel.LOW),
            fully_resolved=False,
        )

    # ── Collaborator calls ────────────────────────────────────────────

    async def _get_current(self, session: Session) -> Definition:
        key = session.key
        return await self._guarded(
            "metadata",
            lambda: self._metadata.get_current(
                key.org_id, key.metadata_name, metadata_type=key.metadata_type
            ),
            self._metadata_timeout,
            self._metadata_breaker,
        )

    async def _get_previous(self, session: Session) -> Optional[Definition]:
        key = session.key
        before = session.changes[0].raw_event.occurred_at
        return await self._guarded(
            "metadata",
            lambda: self._metadata.get_previous(
                key.org_id, key.metadata_name, before, metadata_type=key.metadata_type
            ),
            self._metadata_timeout,
            self._metadata_breaker,
        )

    async def _find_parents(self, session: Session) -> list[ReferencingItem]:
        key = session.key
        try:
            return await self._guarded(
                "metadata",
                lambda: self._metadata.find_referencing_parents(key.org_id, key.metadata_name),
                self._metadata_timeout,
                self._metadata_breaker,
            )
        except EnrichmentError as e:
            logger.warning(
                "parent_lookup_failed",
                metadata_name=key.metadata_name,
                error=str(e),
            )
            return []

    async def _summarize(
        self,
        session: Session,
        previous: Optional[Definition],
        current: Definition,
        parents: Optional[list[ReferencingItem]] = None,
    ) -> DiffSummary:
        key = session.key
        context = {
            "category": session.category.value,
            "metadata_type": key.metadata_type,
            "item_name": key.metadata_name,
            "actor": session.changes[-1].raw_event.actor_name or key.actor_id,
            "changes": [describe(c) for c in session.changes],
        }
        if parents:
            context["referencing_parents"] = [p.name for p in parents]
        return await self._guarded(
            "summarization",
            lambda: self._summarizer.summarize_diff(previous, current, context),
            self._summarization_timeout,
            self._summarizer_breaker,
        )

    async def _guarded(
        self,
        service: str,
        fn: Callable[[], Awaitable[T]],
        timeout: float,
        breaker: Optional[CircuitBreaker],
    ) -> T:
        try:
            return await call_with_timeout(fn, timeout, breaker)
        except asyncio.TimeoutError as e:
            raise EnrichmentError(f"{service} call timed out after {timeout}s", service=service, cause=e) from e
        except EnrichmentError:
            raise
        except Exception as e:
            raise EnrichmentError(f"{service} call failed: {e}", service=service, cause=e) from e
