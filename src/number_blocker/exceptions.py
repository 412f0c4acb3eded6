"""
Exception classes for the number blocker system.

All exceptions inherit from NumberBlockerError and provide structured
error information with codes, messages, and optional details.
"""

from typing import Optional


class NumberBlockerError(Exception):
    """Base exception for all number blocker errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(NumberBlockerError):
    """Raised when configuration or identifier validation fails."""

    pass


class AuthenticationError(NumberBlockerError):
    """Raised when the portal rejects the credentials or no session exists."""

    pass


class TransportError(NumberBlockerError):
    """Raised when network operations fail (connection refused, timeouts)."""

    pass


class PortalHTTPError(NumberBlockerError):
    """Raised when the portal answers with an unexpected HTTP status."""

    def __init__(
        self,
        status: int,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.status = status
        super().__init__(code=f"http_{status}", message=message, details=details)


class CircuitOpenError(NumberBlockerError):
    """Raised when the circuit breaker refuses to call the remote system."""

    def __init__(self, operation_name: str, retry_after: float) -> None:
        self.retry_after = retry_after
        super().__init__(
            code="circuit_open",
            message=(
                f"Circuit breaker is OPEN for {operation_name}. "
                f"Retry after {retry_after:.1f}s"
            ),
            details={"operation": operation_name, "retry_after": retry_after},
        )


class BatchFileError(NumberBlockerError):
    """Raised when a batch file of identifiers cannot be read."""

    pass


class ReportError(NumberBlockerError):
    """Raised when report persistence fails (file I/O, malformed JSON)."""

    pass
