"""
AuditPulse Configuration.

Pydantic Settings v2 — loads from .env, environment variables.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ── Application ──────────────────────────────────────────────────────
    app_name: str = "AuditPulse"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # ── Redis (coalescing store) ─────────────────────────────────────────
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    redis_key_prefix: str = Field(default="auditpulse", alias="AUDITPULSE_KEY_PREFIX")

    # ── Coalescing ───────────────────────────────────────────────────────
    coalescing_window_seconds: int = Field(
        default=300, alias="COALESCING_WINDOW_SECONDS",
        description="Sliding debounce window W; every append resets it",
    )
    session_retention_seconds: int = Field(
        default=86_400, alias="SESSION_RETENTION_SECONDS",
        description="Safety TTL on the session body, long after W",
    )
    thread_ttl_seconds: int = Field(default=7 * 24 * 3600, alias="THREAD_TTL_SECONDS")

    # ── Polling ──────────────────────────────────────────────────────────
    poll_interval_seconds: int = Field(default=600, alias="POLL_INTERVAL_SECONDS")
    orphan_sweep_interval_seconds: int = Field(default=60, alias="ORPHAN_SWEEP_INTERVAL_SECONDS")
    manual_lookback_hours: int = Field(default=24, alias="MANUAL_LOOKBACK_HOURS")

    # ── External Services ────────────────────────────────────────────────
    audit_source_url: str = Field(default="http://localhost:8080", alias="AUDIT_SOURCE_URL")
    audit_source_api_key: str = Field(default="", alias="AUDIT_SOURCE_API_KEY")
    audit_timeout_seconds: float = Field(default=30.0, alias="AUDIT_TIMEOUT_SECONDS")
    audit_retry_attempts: int = Field(default=2, alias="AUDIT_RETRY_ATTEMPTS")
    metadata_timeout_seconds: float = Field(default=15.0, alias="METADATA_TIMEOUT_SECONDS")

    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    summarization_model: str = Field(
        default="claude-haiku-4-5-20251001", alias="SUMMARIZATION_MODEL"
    )
    summarization_timeout_seconds: float = Field(
        default=60.0, alias="SUMMARIZATION_TIMEOUT_SECONDS"
    )

    publisher_webhook_url: str = Field(default="", alias="PUBLISHER_WEBHOOK_URL")
    publish_timeout_seconds: float = Field(default=10.0, alias="PUBLISH_TIMEOUT_SECONDS")

    # ── Operational ──────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="console", alias="LOG_FORMAT")
    graceful_shutdown_seconds: int = Field(default=30, alias="GRACEFUL_SHUTDOWN_SECONDS")


settings = Settings()
