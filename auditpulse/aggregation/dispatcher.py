"""
Dispatcher — one notification per session.

Builds a single payload from the whole enriched, time-ordered session and
calls the publisher exactly once. The publish step is never retried: a
transient error could otherwise produce a duplicate notification. When the
publisher hands back a thread reference it is remembered per
(org, item, actor) so the next session for the same item continues the
same conversation.
"""

from typing import Optional

import structlog

from auditpulse.exceptions import StoreUnavailableError
from auditpulse.ports import CoalescingStore, OrgDirectory, Publisher
from auditpulse.schemas import (
    ChangeCategory,
    EnrichedChange,
    NotificationPayload,
    Session,
    max_risk,
)
from auditpulse.services.resilience import call_with_timeout

logger = structlog.get_logger(__name__)

CATEGORY_TARGET_PATHS: dict[ChangeCategory, str] = {
    ChangeCategory.FLOW: "/lightning/setup/Flows/home",
    ChangeCategory.PERMISSION: "/lightning/setup/PermSets/home",
    ChangeCategory.OBJECT: "/lightning/setup/ObjectManager/home",
    ChangeCategory.VALIDATION_RULE: "/lightning/setup/ObjectManager/home",
    ChangeCategory.FORMULA_FIELD: "/lightning/setup/ObjectManager/home",
    ChangeCategory.METADATA: "/lightning/setup/SetupOneHome/home",
}


def _change_line(enriched: EnrichedChange) -> str:
    change = enriched.change
    when = change.raw_event.occurred_at.strftime("%Y-%m-%d %H:%M:%S")
    line = change.precomputed_summary or change.raw_event.display_text or change.raw_event.action_code
    if change.version_hint is not None:
        line = f"{line} (v{change.version_hint})"
    if not enriched.fully_resolved:
        line = f"{line} [unresolved]"
    return f"[{when}] {line}"


def build_payload(
    session: Session,
    enriched: list[EnrichedChange],
    instance_url: str = "",
    thread_ref: Optional[str] = None,
) -> NotificationPayload:
    """Assemble the notification for a session from its enriched changes."""
    key = session.key
    first_event = enriched[0].change.raw_event
    last_event = enriched[-1].change.raw_event

    resolved = [e for e in enriched if e.current_definition is not None or e.change_list]
    if resolved:
        summary = resolved[-1].explanation
    elif len(enriched) == 1:
        summary = enriched[0].explanation
    else:
        summary = f"{len(enriched)} changes to {key.metadata_name}"

    parents: list[str] = []
    details: list[str] = []
    for e in enriched:
        parents.extend(p.name for p in e.referencing_parents if p.name not in parents)
        details.extend(e.change_list)

    path = CATEGORY_TARGET_PATHS.get(session.category, "")
    return NotificationPayload(
        org_id=key.org_id,
        category=session.category,
        metadata_type=key.metadata_type,
        subject_name=key.metadata_name,
        summary=summary,
        change_summaries=[_change_line(e) for e in enriched],
        details=details,
        risk_level=max_risk([e.risk_level for e in enriched]),
        actor_id=key.actor_id,
        actor_name=last_event.actor_name,
        first_change_time=first_event.occurred_at,
        last_change_time=last_event.occurred_at,
        change_count=len(enriched),
        target_url=f"{instance_url.rstrip('/')}{path}" if instance_url else "",
        referencing_parents=parents,
        unresolved_count=sum(1 for e in enriched if not e.fully_resolved),
        thread_ref=thread_ref,
    )


class Dispatcher:
    """Publishes one payload per claimed session."""

    def __init__(
        self,
        publisher: Publisher,
        store: CoalescingStore,
        org_directory: Optional[OrgDirectory] = None,
        publish_timeout: float = 10.0,
        thread_ttl_seconds: int = 7 * 24 * 3600,
    ):
        self._publisher = publisher
        self._store = store
        self._org_directory = org_directory
        self._publish_timeout = publish_timeout
        self._thread_ttl_seconds = thread_ttl_seconds

    async def dispatch(self, session: Session, enriched: list[EnrichedChange]) -> None:
        """
        Publish the session's notification. Never raises on publish failure;
        the session is closed either way.
        """
        if not enriched:
            logger.warning("dispatch_skipped_empty", metadata_name=session.key.metadata_name)
            return

        key = session.key
        payload = build_payload(
            session,
            enriched,
            instance_url=await self._instance_url(key.org_id),
            thread_ref=await self._thread_ref(session),
        )

        try:
            ref = await call_with_timeout(
                lambda: self._publisher.publish(payload), self._publish_timeout
            )
        except Exception as e:
            logger.error(
                "publish_failed",
                org_id=key.org_id,
                category=payload.category.value,
                subject=payload.subject_name,
                change_count=payload.change_count,
                error=str(e),
            )
            return

        logger.info(
            "notification_dispatched",
            org_id=key.org_id,
            category=payload.category.value,
            subject=payload.subject_name,
            change_count=payload.change_count,
            risk_level=payload.risk_level.value,
            threaded=payload.thread_ref is not None,
        )

        if ref:
            try:
                await self._store.set_thread_ref(key, ref, self._thread_ttl_seconds)
            except StoreUnavailableError as e:
                logger.warning("thread_ref_not_saved", subject=payload.subject_name, error=str(e))

    async def _instance_url(self, org_id: str) -> str:
        if self._org_directory is None:
            return ""
        try:
            return await self._org_directory.instance_url(org_id)
        except Exception as e:
            logger.warning("instance_url_unavailable", org_id=org_id, error=str(e))
            return ""

    async def _thread_ref(self, session: Session) -> Optional[str]:
        try:
            return await self._store.get_thread_ref(session.key)
        except StoreUnavailableError as e:
            logger.warning("thread_ref_unavailable", error=str(e))
            return None
