"""
Report Store module for per-batch, per-cycle result files.

Each processed batch file produces one JSON document per cycle, named
<prefix><batch>-cycle<cycle>-test-<session_id>.json. The store can later
merge every such file in its directory into one consolidated summary and
remove the consumed files.
"""

import json
import re
from collections import Counter
from pathlib import Path
from typing import Optional

from .audit_logger import AuditLogger
from .config import ReportConfig
from .enums import LogLevel, OutcomeAction
from .exceptions import ReportError
from .models import BatchReport, utc_now_iso


class ReportStore:
    """
    File-based report sink.

    Reports are written once and never modified; consolidation only reads them.
    """

    def __init__(
        self,
        config: ReportConfig,
        session_id: str = "",
        logger: Optional[AuditLogger] = None,
    ) -> None:
        """
        Initialize the report store.

        Args:
            config: Output directory and file name prefix
            session_id: Run identifier embedded in every file name
            logger: Optional audit logger
        """
        self._config = config
        self._session_id = session_id
        self._logger = logger
        self._file_pattern = re.compile(
            rf"^{re.escape(config.file_prefix)}(\d+)-cycle(\d+)-test-.*\.json$"
        )

    @property
    def output_dir(self) -> Path:
        return Path(self._config.output_dir)

    def report_path(self, report: BatchReport) -> Path:
        file_name = (
            f"{self._config.file_prefix}{report.batch_number}"
            f"-cycle{report.cycle}-test-{self._session_id}.json"
        )
        return self.output_dir / file_name

    def write(self, report: BatchReport) -> Path:
        """
        Persist one batch report.

        Returns:
            Path of the written file

        Raises:
            ReportError: If the file cannot be written
        """
        path = self.report_path(report)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(report.to_dict(), f, indent=2)
        except OSError as e:
            raise ReportError(
                code="io_error",
                message=f"Failed to write report file: {e}",
                details={"file_path": str(path)},
            ) from e

        self._log(LogLevel.INFO, f"Report saved: {path}", {"file_path": str(path)})
        return path

    def report_files(self) -> list[Path]:
        """All report files in the output directory, sorted by name."""
        if not self.output_dir.is_dir():
            return []
        return sorted(
            path for path in self.output_dir.iterdir()
            if path.is_file() and self._file_pattern.match(path.name)
        )

    def load(self, path: Path) -> dict:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ReportError(
                code="parse_error",
                message=f"Failed to parse report file: {e}",
                details={"file_path": str(path)},
            ) from e
        except OSError as e:
            raise ReportError(
                code="io_error",
                message=f"Failed to read report file: {e}",
                details={"file_path": str(path)},
            ) from e

    def load_all(self) -> list[tuple[Path, dict]]:
        """Every report file with its parsed content, sorted by file name."""
        return [(path, self.load(path)) for path in self.report_files()]

    def consolidate(self) -> dict:
        """
        Merge every report file into per-batch and overall totals.

        Raises:
            ReportError: If there are no report files or one cannot be read
        """
        reports = self.load_all()
        if not reports:
            raise ReportError(
                code="no_reports",
                message=f"No batch report files found in {self.output_dir}",
                details={"output_dir": str(self.output_dir)},
            )

        batches: dict[str, dict] = {}
        overall_actions: Counter = Counter()
        overall = {"totalProcessed": 0, "successCount": 0, "failureCount": 0}

        for path, report in reports:
            batch_number = int(self._file_pattern.match(path.name).group(1))
            summary = report.get("summary", {})
            key = f"batch{batch_number}"
            entry = batches.setdefault(key, {
                "files": 0,
                "totalProcessed": 0,
                "successCount": 0,
                "failureCount": 0,
                "actionSummary": Counter(),
            })

            entry["files"] += 1
            for field_name in overall:
                value = int(summary.get(field_name, 0))
                entry[field_name] += value
                overall[field_name] += value
            actions = summary.get("actionSummary", {})
            entry["actionSummary"].update(actions)
            overall_actions.update(actions)

        for entry in batches.values():
            entry["actionSummary"] = self._complete_actions(entry["actionSummary"])

        return {
            "generatedAt": utc_now_iso(),
            "reportCount": len(reports),
            "batches": dict(sorted(batches.items(), key=lambda item: int(item[0][5:]))),
            "overall": {**overall, "actionSummary": self._complete_actions(overall_actions)},
        }

    @staticmethod
    def _complete_actions(counts: Counter) -> dict[str, int]:
        return {action.value: int(counts.get(action.value, 0)) for action in OutcomeAction}

    def cleanup(self, files: Optional[list[Path]] = None) -> int:
        """
        Delete report files.

        Args:
            files: Files to delete; every report file if omitted

        Returns:
            Number of files actually removed
        """
        targets = self.report_files() if files is None else files
        removed = 0
        for path in targets:
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                self._log(
                    LogLevel.WARN,
                    f"Could not delete {path}: {e}",
                    {"file_path": str(path)},
                )
        return removed

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, "ReportStore", message, data or {})
