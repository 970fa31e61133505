"""
Custom exceptions for AuditPulse.

Provides structured error handling with error codes. Collaborator adapters
translate transport errors (Redis, HTTP, timeouts) into these types so the
handling sites only deal with one taxonomy.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Standard error codes for AuditPulse."""
    # General errors (1xxx)
    UNKNOWN_ERROR = "E1000"
    CONFIGURATION_ERROR = "E1002"

    # Service errors (4xxx)
    STORE_UNAVAILABLE = "E4000"
    AUDIT_SOURCE_ERROR = "E4001"
    ENRICHMENT_FAILED = "E4002"
    PUBLISH_FAILED = "E4003"


class AuditPulseError(Exception):
    """
    Base exception for AuditPulse.

    All custom exceptions should inherit from this class.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        result: Dict[str, Any] = {
            "error_code": self.error_code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __str__(self) -> str:
        return f"[{self.error_code.value}] {self.message}"


class ConfigurationError(AuditPulseError):
    """Error raised when configuration is invalid."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        super().__init__(message, error_code=ErrorCode.CONFIGURATION_ERROR, **kwargs)
        self.config_key = config_key


class StoreUnavailableError(AuditPulseError):
    """The coalescing store could not be reached or refused the operation."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code=ErrorCode.STORE_UNAVAILABLE, **kwargs)


class AuditSourceError(AuditPulseError):
    """Fetching audit events for an org failed."""

    def __init__(self, message: str, org_id: Optional[str] = None, **kwargs):
        super().__init__(message, error_code=ErrorCode.AUDIT_SOURCE_ERROR, **kwargs)
        self.org_id = org_id


class EnrichmentError(AuditPulseError):
    """A metadata or summarization call failed while enriching a change."""

    def __init__(self, message: str, service: str = "", **kwargs):
        super().__init__(message, error_code=ErrorCode.ENRICHMENT_FAILED, **kwargs)
        self.service = service


class PublishError(AuditPulseError):
    """The publisher rejected or could not deliver a notification."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code=ErrorCode.PUBLISH_FAILED, **kwargs)
