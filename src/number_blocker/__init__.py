"""
Number Blocker - resilient bulk block operations against an operator portal.

This package replays the portal's block/release form workflow for batches of
phone numbers over one shared authenticated session, with retries, circuit
breaking, rate limiting and session-expiry recovery.
"""

__version__ = "0.1.0"
__author__ = "Number Blocker Team"

from number_blocker.exceptions import (
    NumberBlockerError,
    ValidationError,
    AuthenticationError,
    TransportError,
    PortalHTTPError,
    CircuitOpenError,
    BatchFileError,
    ReportError,
)
from number_blocker.enums import (
    OutcomeAction,
    ActionKind,
    CircuitState,
    LogLevel,
)
from number_blocker.config import (
    Credentials,
    PortalEndpoints,
    PortalConfig,
    RetryConfig,
    CircuitBreakerConfig,
    RateLimitConfig,
    BatchConfig,
    ReportConfig,
    LoggingConfig,
    SystemConfig,
    validate_config,
)
from number_blocker.models import (
    PortalSession,
    OperationOutcome,
    RefreshResult,
    BatchReport,
    CycleReport,
    RunSummary,
)
from number_blocker.audit_logger import (
    AuditLogger,
    LogEntry,
)
from number_blocker.classifier import (
    ClassificationRule,
    DEFAULT_RULES,
    ResponseClassifier,
)
from number_blocker.identifiers import (
    chunk,
    normalize_identifier,
    read_identifiers,
)
from number_blocker.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerSnapshot,
)
from number_blocker.retry_manager import (
    RetryManager,
    RetryResult,
)
from number_blocker.rate_limiter import (
    RateLimiter,
    RateLimitStatus,
)
from number_blocker.portal_client import PortalClient
from number_blocker.report_store import ReportStore
from number_blocker.orchestrator import BatchOrchestrator

__all__ = [
    # Exceptions
    "NumberBlockerError",
    "ValidationError",
    "AuthenticationError",
    "TransportError",
    "PortalHTTPError",
    "CircuitOpenError",
    "BatchFileError",
    "ReportError",
    # Enums
    "OutcomeAction",
    "ActionKind",
    "CircuitState",
    "LogLevel",
    # Config
    "Credentials",
    "PortalEndpoints",
    "PortalConfig",
    "RetryConfig",
    "CircuitBreakerConfig",
    "RateLimitConfig",
    "BatchConfig",
    "ReportConfig",
    "LoggingConfig",
    "SystemConfig",
    "validate_config",
    # Models
    "PortalSession",
    "OperationOutcome",
    "RefreshResult",
    "BatchReport",
    "CycleReport",
    "RunSummary",
    # Audit Logger
    "AuditLogger",
    "LogEntry",
    # Classification
    "ClassificationRule",
    "DEFAULT_RULES",
    "ResponseClassifier",
    # Identifiers
    "chunk",
    "normalize_identifier",
    "read_identifiers",
    # Resilience
    "CircuitBreaker",
    "CircuitBreakerSnapshot",
    "RetryManager",
    "RetryResult",
    "RateLimiter",
    "RateLimitStatus",
    # Components
    "PortalClient",
    "ReportStore",
    "BatchOrchestrator",
]
