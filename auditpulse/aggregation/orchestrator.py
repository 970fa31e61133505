"""
Orchestrator — the poll loop.

Per tick: Idle → Fetching → Classifying → Routing → Idle.

- Fetching pulls events after the org's cursor (or a fixed lookback window
  for manual cycles). The cursor only moves once the whole batch has been
  routed, so a failed tick is re-fetched on the next one; re-fetched events
  are de-duplicated by the session buffer.
- Classifying runs the classifier over every event.
- Routing drops Ignored events, appends the rest to the session buffer, or,
  for forced cycles, enriches and dispatches a one-change session at once.

One APScheduler job drives the loop (max_instances=1), a second one sweeps
orphaned sessions. stop() pauses both (dormant); start() resumes them.
"""

from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Callable, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from auditpulse.aggregation.buffer import SessionBuffer, prepare_change
from auditpulse.aggregation.classifier import CATEGORY_METADATA_TYPES, classify
from auditpulse.aggregation.dispatcher import Dispatcher
from auditpulse.aggregation.enrichment import EnrichmentRouter
from auditpulse.aggregation.listener import ExpiryListener
from auditpulse.exceptions import AuditSourceError
from auditpulse.ports import AuditSource, CoalescingStore, OrgDirectory
from auditpulse.schemas import (
    ChangeCategory,
    CoalescingKey,
    CycleResult,
    RawEvent,
    Session,
)
from auditpulse.services.resilience import call_with_timeout, retry_with_backoff

logger = structlog.get_logger(__name__)

POLL_JOB_ID = "audit_poll"
SWEEP_JOB_ID = "orphan_sweep"


class OrchestratorState(StrEnum):
    IDLE = "idle"
    FETCHING = "fetching"
    CLASSIFYING = "classifying"
    ROUTING = "routing"
    DORMANT = "dormant"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Orchestrator:
    """
    Drives polling, buffering and the expiry listener for all orgs.

    Usage:
        orchestrator = Orchestrator(...)
        await orchestrator.start()          # subscribe + schedule
        await orchestrator.run_cycle(lookback_hours=24, force_immediate=True)
        orchestrator.stop()                 # dormant until start()
    """

    def __init__(
        self,
        audit_source: AuditSource,
        org_directory: OrgDirectory,
        store: CoalescingStore,
        buffer: SessionBuffer,
        router: EnrichmentRouter,
        dispatcher: Dispatcher,
        poll_interval_seconds: int = 600,
        sweep_interval_seconds: int = 60,
        manual_lookback_hours: int = 24,
        audit_timeout: float = 30.0,
        audit_retry_attempts: int = 2,
        audit_retry_base_delay: float = 1.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._audit_source = audit_source
        self._org_directory = org_directory
        self._store = store
        self._buffer = buffer
        self._router = router
        self._dispatcher = dispatcher
        self._poll_interval_seconds = poll_interval_seconds
        self._sweep_interval_seconds = sweep_interval_seconds
        self._manual_lookback_hours = manual_lookback_hours
        self._audit_timeout = audit_timeout
        self._audit_retry_attempts = audit_retry_attempts
        self._audit_retry_base_delay = audit_retry_base_delay
        self._clock = clock

        self.listener = ExpiryListener(store, self.process_session)
        self._cursors: dict[str, datetime] = {}
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._active = False
        self._phase = OrchestratorState.IDLE

    @property
    def state(self) -> OrchestratorState:
        """Current phase, or DORMANT while stopped (manual cycles still run)."""
        if not self._active:
            return OrchestratorState.DORMANT
        return self._phase

    @property
    def scheduler(self) -> Optional[AsyncIOScheduler]:
        return self._scheduler

    def cursor(self, org_id: str) -> Optional[datetime]:
        """Last routed occurrence time for org_id (None before its first cycle)."""
        return self._cursors.get(org_id)

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def start(self) -> None:
        """Subscribe to expiries and (re)start the scheduled jobs."""
        await self.listener.start()

        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler()
            self._scheduler.add_job(
                self._scheduled_poll,
                IntervalTrigger(seconds=self._poll_interval_seconds),
                id=POLL_JOB_ID,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            self._scheduler.add_job(
                self.listener.sweep,
                IntervalTrigger(seconds=self._sweep_interval_seconds),
                id=SWEEP_JOB_ID,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            self._scheduler.start()
        else:
            self._scheduler.resume_job(POLL_JOB_ID)
            self._scheduler.resume_job(SWEEP_JOB_ID)

        self._active = True
        logger.info(
            "orchestrator_started",
            poll_interval_seconds=self._poll_interval_seconds,
            window_seconds=self._buffer.window_seconds,
        )

    def stop(self) -> None:
        """Prevent the next tick from starting. A running tick completes."""
        if self._scheduler is not None:
            self._scheduler.pause_job(POLL_JOB_ID)
            self._scheduler.pause_job(SWEEP_JOB_ID)
        self._active = False
        logger.info("orchestrator_stopped")

    async def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        self._active = False
        await self._store.close()

    async def _scheduled_poll(self) -> None:
        result = await self.run_cycle()
        if result.errors:
            logger.warning("poll_cycle_errors", errors=result.errors)

    # ── Cycles ────────────────────────────────────────────────────────

    async def run_cycle(
        self,
        lookback_hours: Optional[int] = None,
        force_immediate: bool = False,
    ) -> CycleResult:
        """
        Run one cycle over every registered org. Never raises.

        Args:
            lookback_hours: Fetch a fixed window instead of since-cursor
            force_immediate: Skip buffering; enrich and dispatch each change now

        Returns:
            CycleResult with the number of routed changes and per-org errors
        """
        errors: list[str] = []
        changes_found = 0

        try:
            org_ids = await self._org_directory.list_org_ids()
        except Exception as e:
            logger.error("org_directory_unavailable", error=str(e))
            return CycleResult(success=False, errors=[f"Org directory error: {e}"])

        if not org_ids:
            logger.info("no_registered_orgs")
            return CycleResult()

        logger.info(
            "cycle_started",
            orgs=len(org_ids),
            lookback_hours=lookback_hours,
            force_immediate=force_immediate,
        )

        for org_id in org_ids:
            try:
                changes_found += await self._process_org(org_id, lookback_hours, force_immediate)
            except Exception as e:
                errors.append(f"Error processing org {org_id}: {e}")
                logger.error("org_cycle_failed", org_id=org_id, error=str(e))
            finally:
                self._phase = OrchestratorState.IDLE

        logger.info("cycle_completed", changes_found=changes_found, errors=len(errors))
        return CycleResult(success=not errors, changes_found=changes_found, errors=errors)

    async def _process_org(
        self,
        org_id: str,
        lookback_hours: Optional[int],
        force_immediate: bool,
    ) -> int:
        manual = lookback_hours is not None or force_immediate

        self._phase = OrchestratorState.FETCHING
        if manual:
            hours = lookback_hours or self._manual_lookback_hours
            events = await self._fetch(
                org_id, lambda: self._audit_source.fetch_window(org_id, hours)
            )
            cursor = None
        else:
            cursor = self._cursors.get(org_id) or (
                self._clock() - timedelta(seconds=self._poll_interval_seconds)
            )
            events = await self._fetch(
                org_id, lambda: self._audit_source.fetch_since(org_id, cursor)
            )

        self._phase = OrchestratorState.CLASSIFYING
        classified = [(event, classify(event)) for event in events]

        self._phase = OrchestratorState.ROUTING
        routed = 0
        for event, category in classified:
            if category == ChangeCategory.IGNORED:
                logger.debug("event_ignored", event_id=event.id, action_code=event.action_code)
                continue
            if force_immediate:
                await self._dispatch_now(org_id, event, category)
            else:
                key, change = prepare_change(org_id, event, category, self._buffer.now())
                await self._buffer.append(key, change)
            routed += 1

        if cursor is not None:
            self._cursors[org_id] = max((e.occurred_at for e in events), default=cursor)

        if events:
            logger.info(
                "org_events_routed",
                org_id=org_id,
                fetched=len(events),
                routed=routed,
                mode="immediate" if force_immediate else "aggregated",
            )
        return routed

    async def _fetch(self, org_id: str, fn) -> list[RawEvent]:
        try:
            return await retry_with_backoff(
                lambda: call_with_timeout(fn, self._audit_timeout),
                max_retries=self._audit_retry_attempts,
                base_delay=self._audit_retry_base_delay,
                operation_name=f"audit_fetch:{org_id}",
            )
        except Exception as e:
            raise AuditSourceError(f"Audit fetch failed: {e}", org_id=org_id, cause=e) from e

    async def _dispatch_now(self, org_id: str, event: RawEvent, category: ChangeCategory) -> None:
        key, change = prepare_change(org_id, event, category, self._buffer.now())
        session = Session(
            key=key,
            changes=[change],
            first_change_time=change.buffered_at,
            last_change_time=change.buffered_at,
        )
        await self.process_session(session)

    # ── Session processing ────────────────────────────────────────────

    async def process_session(self, session: Session) -> None:
        """Enrich a claimed (or synthetic) session and dispatch it once."""
        enriched = await self._router.enrich(session)
        await self._dispatcher.dispatch(session, enriched)

    async def force_flush(
        self, org_id: str, metadata_name: str, actor_id: str
    ) -> Optional[Session]:
        """
        Claim and dispatch the open session(s) for an item and actor now.

        Sessions are keyed by metadata type as well, so every known type is
        tried; each claimed session is dispatched on its own.

        Returns:
            The last session claimed, or None if nothing was buffered

        Raises:
            StoreUnavailableError: the store could not be reached
        """
        claimed: Optional[Session] = None
        for metadata_type in CATEGORY_METADATA_TYPES.values():
            key = CoalescingKey(
                org_id=org_id,
                metadata_type=metadata_type,
                metadata_name=metadata_name,
                actor_id=actor_id,
            )
            session = await self.listener.claim(key)
            if session is None:
                continue
            logger.info(
                "session_force_flushed",
                org_id=org_id,
                metadata_type=metadata_type,
                metadata_name=metadata_name,
                change_count=len(session.changes),
            )
            await self.process_session(session)
            claimed = session
        return claimed
