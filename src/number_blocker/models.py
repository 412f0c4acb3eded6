"""
Data models for the number blocker system.

This module defines the owned portal session state, per-identifier operation
outcomes and the per-batch, per-cycle and per-run aggregates handed to the
report sink.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .enums import ActionKind, OutcomeAction


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class PortalSession:
    """
    State of one authenticated connection to the portal.

    Exactly one instance is live per orchestration run. It is owned by the
    PortalClient and torn down wholesale by reset().
    """

    authenticated: bool = False
    handle: Optional[Any] = None  # httpx.AsyncClient
    session_cookies: list[str] = field(default_factory=list)
    action_token: Optional[str] = None
    token_expires_at: Optional[float] = None
    navigation_complete: bool = False
    # Bumped on every teardown so stale observers can tell sessions apart
    generation: int = 0

    def token_valid(self, now: float) -> bool:
        """True while a cached action token exists and has not expired."""
        return (
            self.action_token is not None
            and self.token_expires_at is not None
            and now < self.token_expires_at
        )

    def cache_token(self, token: str, now: float, ttl_seconds: float) -> None:
        self.action_token = token
        self.token_expires_at = now + ttl_seconds

    def invalidate(self) -> None:
        """Drop per-login state but keep the connection handle."""
        self.authenticated = False
        self.action_token = None
        self.token_expires_at = None
        self.navigation_complete = False
        self.generation += 1

    def reset(self) -> None:
        """Discard every piece of session state."""
        self.invalidate()
        self.handle = None
        self.session_cookies = []


@dataclass(frozen=True)
class OperationOutcome:
    """Result of one action attempt on one identifier. Never mutated."""

    identifier: str
    success: bool
    action: OutcomeAction
    message: str
    timestamp: str = field(default_factory=utc_now_iso)
    error: Optional[str] = None
    response_excerpt: Optional[str] = None

    @classmethod
    def classified(
        cls,
        identifier: str,
        action: OutcomeAction,
        message: str,
        response_excerpt: Optional[str] = None,
    ) -> "OperationOutcome":
        """
        Build an outcome for a remote call that completed.

        Every classified page counts as success, including error and expiry
        pages; success=False is reserved for calls that never got a page.
        """
        return cls(
            identifier=identifier,
            success=True,
            action=action,
            message=message,
            response_excerpt=response_excerpt,
        )

    @classmethod
    def failure(
        cls,
        identifier: str,
        message: str,
        error: Optional[str] = None,
    ) -> "OperationOutcome":
        """Build an outcome for a call that failed before it could be classified."""
        return cls(
            identifier=identifier,
            success=False,
            action=OutcomeAction.ERROR,
            message=message,
            error=error or message,
        )

    def to_dict(self) -> dict:
        data = {
            "phoneNumber": self.identifier,
            "success": self.success,
            "action": self.action.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class RefreshResult:
    """Result of a keep-alive heartbeat."""

    success: bool
    message: str
    error: Optional[str] = None


@dataclass
class BatchReport:
    """Aggregate of one batch file processed during one cycle."""

    test_name: str
    batch_file: str
    cycle: int
    batch_number: int
    started_at: str
    auth_success: bool
    credentials: dict
    total_numbers: int = 0
    outcomes: list[OperationOutcome] = field(default_factory=list)
    duration_ms: float = 0.0
    error: Optional[str] = None
    operation: ActionKind = ActionKind.BLOCK

    @property
    def success_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.success)

    def action_summary(self) -> dict[str, int]:
        counts = Counter(outcome.action for outcome in self.outcomes)
        return {action.value: counts.get(action, 0) for action in OutcomeAction}

    def to_dict(self) -> dict:
        """Serialize to the shape consumed by the report renderer."""
        return {
            "testName": self.test_name,
            "operation": self.operation.value,
            "phoneNumberFile": self.batch_file,
            "totalNumbers": self.total_numbers,
            "credentials": self.credentials,
            "testDate": self.started_at,
            "cycle": self.cycle,
            "batchNumber": self.batch_number,
            "durationMs": round(self.duration_ms, 1),
            "error": self.error,
            "results": {
                "authentication": self.auth_success,
                "blockOperations": [outcome.to_dict() for outcome in self.outcomes],
            },
            "summary": {
                "authSuccess": self.auth_success,
                "totalProcessed": len(self.outcomes),
                "successCount": self.success_count,
                "failureCount": self.failure_count,
                "actionSummary": self.action_summary(),
            },
        }


@dataclass
class CycleReport:
    """All batch reports produced by one pass over the batch files."""

    cycle_number: int
    started_at: str
    batch_reports: list[BatchReport] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def total_numbers(self) -> int:
        return sum(report.total_numbers for report in self.batch_reports)

    @property
    def successful(self) -> int:
        return sum(report.success_count for report in self.batch_reports)

    @property
    def failed(self) -> int:
        return sum(report.failure_count for report in self.batch_reports)


@dataclass
class RunSummary:
    """Totals for a complete orchestration run."""

    session_id: str
    started_at: str
    ended_at: str
    duration_seconds: float
    cycles: list[CycleReport] = field(default_factory=list)
    report_files: list[str] = field(default_factory=list)
    retry_stats: dict = field(default_factory=dict)

    @property
    def total_processed(self) -> int:
        return sum(
            len(report.outcomes)
            for cycle in self.cycles
            for report in cycle.batch_reports
        )

    @property
    def total_successful(self) -> int:
        return sum(cycle.successful for cycle in self.cycles)

    @property
    def total_failed(self) -> int:
        return sum(cycle.failed for cycle in self.cycles)

    @property
    def success_rate(self) -> float:
        if self.total_processed == 0:
            return 0.0
        return self.total_successful / self.total_processed * 100

    @property
    def numbers_per_minute(self) -> float:
        if self.duration_seconds <= 0:
            return 0.0
        return self.total_processed / (self.duration_seconds / 60)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_seconds": round(self.duration_seconds, 3),
            "cycles": len(self.cycles),
            "total_processed": self.total_processed,
            "total_successful": self.total_successful,
            "total_failed": self.total_failed,
            "success_rate": round(self.success_rate, 1),
            "numbers_per_minute": round(self.numbers_per_minute, 1),
            "report_files": list(self.report_files),
            "retry_stats": self.retry_stats,
        }
