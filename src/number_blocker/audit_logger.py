"""
Audit Logger module for the number blocker system.

One AuditLogger is created per run and handed to every component. Entries
are kept in memory and written to a stream as JSON lines, text lines or
both. Passwords, cookies, captcha values and portal tokens are masked
before an entry is stored.
"""

import json
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, TextIO

from number_blocker.enums import LogLevel

OUTPUT_FORMATS = ("json", "text", "both")


@dataclass
class LogEntry:
    """One structured log record."""

    timestamp: str
    level: LogLevel
    component: str
    message: str
    data: dict = field(default_factory=dict)


class AuditLogger:
    """
    Structured logger shared by every component of one run.

    Entries below min_level are dropped before they are masked, stored or
    written.
    """

    # Substrings that mark a data key as secret
    SENSITIVE_KEYS = frozenset({
        'password', 'secret', 'token', 'captcha', 'cookie',
        'credential', 'authorization', 'auth_header', 'api_key',
    })

    MASK_VALUE = "***MASKED***"

    def __init__(
        self,
        output_format: str = "text",
        output_stream: Optional[TextIO] = None,
        min_level: LogLevel = LogLevel.INFO,
    ):
        """
        Args:
            output_format: 'json', 'text' or 'both'
            output_stream: Where entries are written (sys.stderr if omitted)
            min_level: Lowest level that is kept

        Raises:
            ValueError: If output_format is not one of OUTPUT_FORMATS
        """
        if output_format not in OUTPUT_FORMATS:
            raise ValueError(f"Invalid output_format: {output_format}")

        self._output_format = output_format
        self._output_stream = output_stream or sys.stderr
        self._min_level = min_level
        self._entries: list[LogEntry] = []

    @classmethod
    def from_level_name(
        cls,
        level: str,
        output_format: str = "text",
        output_stream: Optional[TextIO] = None,
    ) -> "AuditLogger":
        """Build a logger from a configured level name such as 'info'."""
        try:
            min_level = LogLevel(level.lower())
        except ValueError:
            raise ValueError(f"Invalid log level: {level}") from None
        return cls(output_format=output_format, output_stream=output_stream, min_level=min_level)

    @property
    def output_format(self) -> str:
        return self._output_format

    @property
    def min_level(self) -> LogLevel:
        return self._min_level

    @property
    def entries(self) -> list[LogEntry]:
        """Copy of every entry kept so far."""
        return list(self._entries)

    def clear_entries(self) -> None:
        self._entries.clear()

    def log(
        self,
        level: LogLevel,
        component: str,
        message: str,
        data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        """
        Record one entry.

        Args:
            level: Severity
            component: Name of the emitting component, e.g. 'PortalClient'
            message: Human-readable message
            data: Structured context; sensitive keys are masked

        Returns:
            The stored LogEntry, or None if level is below min_level
        """
        if level.rank < self._min_level.rank:
            return None

        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            component=component,
            message=message,
            data=self.mask_sensitive_data(data or {}),
        )
        self._entries.append(entry)
        self._write(entry)
        return entry

    def log_error(
        self,
        component: str,
        message: str,
        error: Optional[Exception] = None,
        request_url: Optional[str] = None,
        response_status_code: Optional[int] = None,
        additional_data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        """
        Record an error-level entry with the exception and request context.

        Context values that are None are left out of the entry.
        """
        data = dict(additional_data or {})
        if error is not None:
            data.update(error_message=str(error), error_type=type(error).__name__)

        request_context = {
            "request_url": request_url,
            "response_status_code": response_status_code,
        }
        data.update({key: value for key, value in request_context.items() if value is not None})

        return self.log(LogLevel.ERROR, component, message, data)

    def is_sensitive_key(self, key: Any) -> bool:
        key_lower = str(key).lower()
        return any(pattern in key_lower for pattern in self.SENSITIVE_KEYS)

    def mask_sensitive_data(self, data: dict) -> dict:
        """Return a copy of data with sensitive values replaced at any depth."""
        if not isinstance(data, dict):
            return data
        return {
            key: self.MASK_VALUE if self.is_sensitive_key(key) else self._mask_value(value)
            for key, value in data.items()
        }

    def _mask_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            return self.mask_sensitive_data(value)
        if isinstance(value, (list, tuple)):
            return [self._mask_value(item) for item in value]
        return value

    def _write(self, entry: LogEntry) -> None:
        lines = []
        if self._output_format != "text":
            lines.append(self.format_json(entry))
        if self._output_format != "json":
            lines.append(self.format_text(entry))

        self._output_stream.write("".join(line + "\n" for line in lines))
        self._output_stream.flush()

    def format_json(self, entry: LogEntry) -> str:
        """Single-line JSON object with the entry's fields."""
        record = {**asdict(entry), "level": entry.level.value}
        return json.dumps(record, ensure_ascii=False, default=str)

    def format_text(self, entry: LogEntry) -> str:
        """[timestamp] LEVEL [component] message {data}"""
        text = f"[{entry.timestamp}] {entry.level.value.upper()} [{entry.component}] {entry.message}"
        if entry.data:
            text += " " + json.dumps(entry.data, ensure_ascii=False, default=str)
        return text
