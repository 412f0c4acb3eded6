"""
Batch Orchestrator for the number blocker system.

This module provides the orchestration layer that drives a whole run. It
integrates:
- Identifier loading and grouping into fixed-size concurrent batches
- Rate limiting and retry/circuit breaking around every portal call
- Periodic keep-alive refreshes of the portal session
- Session-expiry recovery by forced re-authentication and a single retry
- Per-batch, per-cycle reports and a run summary

Groups are a barrier: group N+1 is dispatched only after every operation of
group N has settled. A run deadline is only checked when a cycle starts.
"""

import asyncio
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

from .audit_logger import AuditLogger
from .config import SystemConfig
from .enums import ActionKind, LogLevel, OutcomeAction
from .exceptions import (
    AuthenticationError,
    BatchFileError,
    CircuitOpenError,
    NumberBlockerError,
    ReportError,
    ValidationError,
)
from .identifiers import chunk, read_identifiers
from .models import BatchReport, CycleReport, OperationOutcome, RunSummary, utc_now_iso
from .portal_client import PortalClient
from .rate_limiter import RateLimiter
from .report_store import ReportStore
from .retry_manager import RetryManager


def new_session_id() -> str:
    """Filesystem-safe timestamp identifying one run."""
    return datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")


class BatchOrchestrator:
    """
    Main orchestrator for bulk block or release operations.

    Owns one PortalClient for the whole run; all concurrent workers share its
    session, the RetryManager's breaker and the RateLimiter's windows.
    """

    def __init__(
        self,
        config: SystemConfig,
        client: Optional[PortalClient] = None,
        retry_manager: Optional[RetryManager] = None,
        rate_limiter: Optional[RateLimiter] = None,
        report_store: Optional[ReportStore] = None,
        logger: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.monotonic,
        session_id: Optional[str] = None,
    ) -> None:
        """
        Initialize the batch orchestrator.

        Args:
            config: System configuration
            client: Portal client; built from config.portal if omitted
            retry_manager: Retry manager; built from config.retry if omitted
            rate_limiter: Rate limiter; built from config.rate_limits if omitted
            report_store: Optional report sink; reports are not persisted without one
            logger: Optional audit logger
            clock: Monotonic clock for the run deadline
            session_id: Run identifier; a timestamp if omitted
        """
        self._config = config
        self._logger = logger
        self._clock = clock
        self._session_id = session_id or new_session_id()

        self._client = client or PortalClient(config.portal, logger=logger)
        self._retry_manager = retry_manager or RetryManager(
            config.retry, config.circuit_breaker, logger=logger
        )
        self._rate_limiter = rate_limiter or RateLimiter(config.rate_limits, logger=logger)
        self._report_store = report_store
        self._kind = ActionKind(config.batch.action)

        self._auth_success = False
        self._processed = 0
        self._refresh_mark = 0
        self._groups_dispatched = 0

    async def __aenter__(self) -> "BatchOrchestrator":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit; closes the portal connection."""
        await self._client.dispose()

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def client(self) -> PortalClient:
        return self._client

    @property
    def retry_manager(self) -> RetryManager:
        return self._retry_manager

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def kind(self) -> ActionKind:
        return self._kind

    @property
    def processed_count(self) -> int:
        return self._processed

    @property
    def groups_dispatched(self) -> int:
        return self._groups_dispatched

    async def start(self) -> None:
        """
        Authenticate once for the whole run.

        Raises:
            AuthenticationError: If the portal rejects the credentials
            TransportError: If the portal cannot be reached
        """
        credentials = self._config.credentials
        self._log_info("Authenticating for entire session", {"username": credentials.username})
        self._auth_success = await self._client.authenticate(credentials)
        if not self._auth_success:
            raise AuthenticationError(
                code="authentication_failed",
                message="Session authentication failed - cannot continue",
                details={"username": credentials.username},
            )

    async def _attempt(self, identifier: str, status_code: str) -> OperationOutcome:
        """One guarded call through the retry manager and rate limiter."""
        operation_name = f"{self._kind.value.capitalize()} {identifier}"

        async def rate_limited() -> OperationOutcome:
            return await self._rate_limiter.execute(
                lambda: self._client.lookup_and_act(identifier, status_code, self._kind),
                operation_name=operation_name,
            )

        try:
            return await self._retry_manager.execute(
                rate_limited,
                operation_name=operation_name,
                context={"identifier": identifier},
            )
        except CircuitOpenError as e:
            self._log_info(f"Skipped {identifier}: {e.message}", {"identifier": identifier})
            return OperationOutcome.failure(
                identifier,
                message=f"Circuit breaker open, {identifier} was not attempted",
                error=e.code,
            )
        except Exception as e:
            self._log_error(f"Failed to process {identifier}", e)
            message = e.message if isinstance(e, NumberBlockerError) else str(e)
            return OperationOutcome.failure(
                identifier,
                message=f"Failed to {self._kind.value} {identifier}: {message}",
                error=message,
            )

    async def _recover_session(self, identifier: str) -> bool:
        self._log_info(
            f"Session expired for {identifier}, forcing re-authentication",
            {"identifier": identifier},
        )
        try:
            recovered = await self._client.authenticate(
                self._config.credentials, force_reinit=True
            )
        except NumberBlockerError as e:
            self._log_error("Re-authentication raised", e)
            return False

        if not recovered:
            self._log(LogLevel.WARN, "Re-authentication failed", {"identifier": identifier})
        return recovered

    async def process_identifier(
        self,
        identifier: str,
        status_code: Optional[str] = None,
    ) -> OperationOutcome:
        """
        Block or release one identifier, recovering once from an expired session.

        Never raises; every failure is returned as an outcome.
        """
        status_code = status_code or self._config.batch.status_code
        outcome = await self._attempt(identifier, status_code)

        if outcome.action == OutcomeAction.SESSION_EXPIRED:
            if await self._recover_session(identifier):
                outcome = await self._attempt(identifier, status_code)
                self._log_info(
                    f"Retry after re-authentication for {identifier}: {outcome.action.value}",
                    {"identifier": identifier},
                )

        return outcome

    async def _maybe_refresh(self) -> None:
        mark = self._processed // self._config.batch.refresh_every
        if mark <= self._refresh_mark:
            return
        self._refresh_mark = mark

        self._log_info(f"Proactive session refresh after {self._processed} operations")
        try:
            result = await self._client.refresh_session()
        except AuthenticationError as e:
            self._log_error("Session refresh skipped", e)
            return
        if not result.success:
            self._log(LogLevel.WARN, "Session refresh failed, continuing with existing session",
                      {"message": result.message, "error": result.error})

    async def process_identifiers(
        self,
        identifiers: Sequence[str],
        status_code: Optional[str] = None,
    ) -> list[OperationOutcome]:
        """
        Process identifiers in groups of batch_size.

        Returns:
            One outcome per identifier, in input order
        """
        outcomes: list[OperationOutcome] = []
        batch_size = self._config.batch.batch_size

        for group_index, group in enumerate(chunk(identifiers, batch_size), start=1):
            await self._maybe_refresh()

            self._groups_dispatched += 1
            self._log(
                LogLevel.DEBUG,
                f"Processing group {group_index} ({len(group)} numbers)",
            )
            results = await asyncio.gather(
                *(self.process_identifier(identifier, status_code) for identifier in group)
            )
            outcomes.extend(results)
            self._processed += len(group)

        return outcomes

    async def process_batch_file(
        self,
        path: Union[str, Path],
        cycle: int = 1,
        batch_number: int = 1,
    ) -> BatchReport:
        """
        Process every identifier of one batch file.

        An unreadable file is recorded in the report's error field.
        """
        start_time = time.perf_counter()
        report = BatchReport(
            test_name=self._config.batch.test_name,
            batch_file=str(path),
            cycle=cycle,
            batch_number=batch_number,
            started_at=utc_now_iso(),
            auth_success=self._auth_success,
            credentials=self._config.credentials.redacted(),
            operation=self._kind,
        )

        try:
            identifiers = read_identifiers(path)
        except BatchFileError as e:
            self._log_error(f"Batch {batch_number} failed", e)
            report.error = e.message
        else:
            report.total_numbers = len(identifiers)
            self._log_info(
                f"Processing batch {batch_number}: {path}",
                {"numbers": len(identifiers), "cycle": cycle},
            )
            report.outcomes = await self.process_identifiers(identifiers)

        report.duration_ms = (time.perf_counter() - start_time) * 1000
        return report

    async def run(
        self,
        batch_files: Optional[Sequence[Union[str, Path]]] = None,
        duration_seconds: Optional[float] = None,
        max_cycles: Optional[int] = None,
    ) -> RunSummary:
        """
        Run cycles over the batch files until the deadline or cycle limit.

        Without a duration or cycle limit exactly one cycle runs.

        Args:
            batch_files: Files to process each cycle; config.batch.batch_files if omitted
            duration_seconds: Wall-clock budget; checked only when a cycle starts
            max_cycles: Upper bound on the number of cycles

        Returns:
            Totals of the run

        Raises:
            ValidationError: If there are no batch files
            AuthenticationError: If the initial authentication fails
        """
        files = list(batch_files if batch_files is not None else self._config.batch.batch_files)
        if not files:
            raise ValidationError(code="no_batch_files", message="No batch files to process")

        if duration_seconds is None:
            duration_seconds = self._config.batch.duration_seconds
        if max_cycles is None:
            max_cycles = self._config.batch.max_cycles
        if duration_seconds is None and max_cycles is None:
            max_cycles = 1

        started_at = utc_now_iso()
        start = self._clock()
        deadline = start + duration_seconds if duration_seconds is not None else None

        self._log_info(
            "Starting run",
            {
                "session_id": self._session_id,
                "action": self._kind.value,
                "batch_files": [str(path) for path in files],
                "duration_seconds": duration_seconds,
                "max_cycles": max_cycles,
            },
        )

        if not self._client.is_authenticated:
            await self.start()
        else:
            self._auth_success = True

        cycles: list[CycleReport] = []
        report_files: list[str] = []

        while True:
            if max_cycles is not None and len(cycles) >= max_cycles:
                break
            if deadline is not None and self._clock() >= deadline:
                self._log_info("Time limit reached, no new cycle started")
                break

            cycle = await self._run_cycle(len(cycles) + 1, files, report_files)
            cycles.append(cycle)

        summary = RunSummary(
            session_id=self._session_id,
            started_at=started_at,
            ended_at=utc_now_iso(),
            duration_seconds=self._clock() - start,
            cycles=cycles,
            report_files=report_files,
            retry_stats=self._retry_manager.get_stats(),
        )
        self._log_info("Run complete", summary.to_dict())
        return summary

    async def _run_cycle(
        self,
        cycle_number: int,
        files: list,
        report_files: list[str],
    ) -> CycleReport:
        start_time = time.perf_counter()
        cycle = CycleReport(cycle_number=cycle_number, started_at=utc_now_iso())
        self._log_info(f"Cycle {cycle_number} started")

        for batch_number, path in enumerate(files, start=1):
            report = await self.process_batch_file(path, cycle_number, batch_number)
            cycle.batch_reports.append(report)

            if self._report_store is not None:
                try:
                    report_files.append(str(self._report_store.write(report)))
                except ReportError as e:
                    self._log_error(f"Could not save report for batch {batch_number}", e)

        cycle.duration_ms = (time.perf_counter() - start_time) * 1000
        self._log_info(
            f"Cycle {cycle_number} complete",
            {
                "total_numbers": cycle.total_numbers,
                "successful": cycle.successful,
                "failed": cycle.failed,
                "duration_ms": round(cycle.duration_ms, 1),
            },
        )
        return cycle

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, "Orchestrator", message, data or {})

    def _log_info(self, message: str, data: Optional[dict] = None) -> None:
        self._log(LogLevel.INFO, message, data)

    def _log_error(self, message: str, error: Exception) -> None:
        if self._logger:
            self._logger.log_error("Orchestrator", message, error=error)

    @property
    def config(self) -> SystemConfig:
        """Get the system configuration."""
        return self._config
