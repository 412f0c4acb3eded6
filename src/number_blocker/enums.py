"""
Enumeration types for the number blocker system.

These enums provide type-safe constants for outcome actions, action kinds,
circuit breaker states and logging levels throughout the system.
"""

from enum import Enum


class OutcomeAction(Enum):
    """Classified result of one remote action attempt on one identifier."""

    BLOCKED = "blocked"
    UNBLOCKED = "unblocked"
    ALREADY_BLOCKED = "already_blocked"
    NO_RECORDS = "no_records"
    EXCEEDED_LIMIT = "exceeded_limit"
    SESSION_EXPIRED = "session_expired"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    MAINTENANCE = "maintenance"
    ERROR = "error"
    UNKNOWN = "unknown"


class ActionKind(Enum):
    """Remote operation submitted for each identifier."""

    BLOCK = "block"
    RELEASE = "release"


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _LEVEL_RANKS[self]


_LEVEL_RANKS = {
    LogLevel.DEBUG: 10,
    LogLevel.INFO: 20,
    LogLevel.WARN: 30,
    LogLevel.ERROR: 40,
}
