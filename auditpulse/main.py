"""
AuditPulse Entry Point.

Usage:
    python -m auditpulse.main

Runs the poll loop, the expiry listener and the orphan sweep in one
process. There is no web server. A REDIS_URL starting with "memory://"
runs against the in-process store (single instance, local testing).
"""

import asyncio
import signal

import structlog

from auditpulse.aggregation.buffer import SessionBuffer
from auditpulse.aggregation.dispatcher import Dispatcher
from auditpulse.aggregation.enrichment import EnrichmentRouter
from auditpulse.aggregation.orchestrator import Orchestrator
from auditpulse.config import Settings, settings
from auditpulse.exceptions import ConfigurationError
from auditpulse.logging_config import configure_logging
from auditpulse.ports import CoalescingStore
from auditpulse.services.audit_client import AuditGatewayClient
from auditpulse.services.publisher import WebhookPublisher
from auditpulse.services.resilience import CircuitBreaker
from auditpulse.services.summarizer import LLMSummarizer
from auditpulse.store.memory import InMemoryCoalescingStore
from auditpulse.store.redis_store import RedisCoalescingStore

logger = structlog.get_logger(__name__)

MEMORY_STORE_POLL_SECONDS = 1.0
SUPPORTED_STORE_SCHEMES = ("redis", "rediss", "unix", "memory")


def build_store(config: Settings) -> CoalescingStore:
    scheme = config.redis_url.split("://", 1)[0]
    if scheme not in SUPPORTED_STORE_SCHEMES:
        raise ConfigurationError(
            f"Unsupported store URL scheme '{scheme}'", config_key="REDIS_URL"
        )
    if scheme == "memory":
        logger.warning("memory_store_selected", msg="Sessions are lost on restart")
        return InMemoryCoalescingStore(
            retention_seconds=config.session_retention_seconds,
            poll_interval=MEMORY_STORE_POLL_SECONDS,
        )
    return RedisCoalescingStore(
        config.redis_url,
        key_prefix=config.redis_key_prefix,
        retention_seconds=config.session_retention_seconds,
    )


def build_orchestrator(config: Settings) -> Orchestrator:
    """Wire every component from settings by constructor injection."""
    store = build_store(config)
    gateway = AuditGatewayClient(
        base_url=config.audit_source_url,
        api_key=config.audit_source_api_key,
        timeout=config.audit_timeout_seconds,
    )
    summarizer = LLMSummarizer(
        api_key=config.anthropic_api_key,
        model=config.summarization_model,
        timeout=config.summarization_timeout_seconds,
    )
    publisher = WebhookPublisher(
        url=config.publisher_webhook_url,
        timeout=config.publish_timeout_seconds,
    )

    router = EnrichmentRouter(
        metadata=gateway,
        summarizer=summarizer,
        metadata_timeout=config.metadata_timeout_seconds,
        summarization_timeout=config.summarization_timeout_seconds,
        metadata_breaker=CircuitBreaker("metadata", failure_threshold=5, recovery_timeout=30.0),
        summarizer_breaker=CircuitBreaker("summarizer", failure_threshold=3, recovery_timeout=60.0),
    )
    dispatcher = Dispatcher(
        publisher=publisher,
        store=store,
        org_directory=gateway,
        publish_timeout=config.publish_timeout_seconds,
        thread_ttl_seconds=config.thread_ttl_seconds,
    )
    return Orchestrator(
        audit_source=gateway,
        org_directory=gateway,
        store=store,
        buffer=SessionBuffer(store, window_seconds=config.coalescing_window_seconds),
        router=router,
        dispatcher=dispatcher,
        poll_interval_seconds=config.poll_interval_seconds,
        sweep_interval_seconds=config.orphan_sweep_interval_seconds,
        manual_lookback_hours=config.manual_lookback_hours,
        audit_timeout=config.audit_timeout_seconds,
        audit_retry_attempts=config.audit_retry_attempts,
    )


async def main():
    """Initialize and run the aggregation loop until signalled."""
    configure_logging(settings.log_level, settings.log_format)
    logger.info("auditpulse_starting", version=settings.app_version, env=settings.environment)

    orchestrator = build_orchestrator(settings)
    await orchestrator.start()

    # Run an initial cycle on startup instead of waiting a full interval
    logger.info("running_initial_cycle")
    result = await orchestrator.run_cycle()
    logger.info("initial_cycle_done", changes_found=result.changes_found, errors=len(result.errors))

    stop_event = asyncio.Event()

    def _handle_signal(signum, frame):
        logger.info("shutdown_signal_received", signal=signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    logger.info("auditpulse_running", msg="Waiting for changes... Ctrl+C to stop.")
    await stop_event.wait()

    orchestrator.stop()
    try:
        await asyncio.wait_for(orchestrator.shutdown(), timeout=settings.graceful_shutdown_seconds)
    except asyncio.TimeoutError:
        logger.warning("shutdown_timeout", seconds=settings.graceful_shutdown_seconds)
    logger.info("auditpulse_shutdown_complete")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
