"""
Configuration dataclasses for the number blocker system.

This module defines all configuration structures used throughout the system,
including portal endpoints, retry and circuit breaker tunables, rate limiting,
batch processing, reporting and logging configuration.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .enums import ActionKind
from .exceptions import ValidationError

REDACTED = "***HIDDEN***"


@dataclass
class Credentials:
    """Portal login credentials."""

    username: str
    password: str

    def redacted(self) -> dict:
        """Return the credentials with the secret replaced."""
        return {"username": self.username, "password": REDACTED}


@dataclass
class PortalEndpoints:
    """Relative paths of every page the portal client talks to."""

    entry: str = "/"
    login: str = "/pkmslogin.form"
    landing_pages: list[str] = field(default_factory=lambda: [
        "/cPOSWeb/jsp/common/main.jsp",
        "/cPOSWeb/jsp/common/login.do?method=getTaskForUserProfile",
    ])
    navigation: str = (
        "/cPOSWeb/switchMod.do?prefix=/jsp/inventory"
        "&page=/cellNumberBlockRelease.do?method=getView&fromMenu=Y"
    )
    initial_search: str = (
        "/cPOSWeb/jsp/inventory/cellNumberBlockRelease.do?method=getViewAll&entityType=22"
    )
    action_token: str = (
        "/cPOSWeb/jsp/inventory/cellNumberBlockRelease.do?method=getCustTypeList&acttypeId=TEST"
    )
    search: str = "/cPOSWeb/jsp/inventory/cellNumberBlockRelease.do?method=getViewAll"
    action: str = (
        "/cPOSWeb/jsp/inventory/cellNumberBlockRelease.do?method=blockCellNumbers&entityType=22"
    )
    confirm: str = "/cPOSWeb/jsp/inventory/cellNumberBlockRelease.do?method=getView"
    release: str = "/numberManagement/unblock"
    profile: str = (
        "/cPOSWeb/jsp/inventory/switchMod.do?prefix=/jsp/login"
        "&page=/login.do?method=updateUserProfile&mode=view"
    )
    action_form: str = (
        "/cPOSWeb/jsp/login/switchMod.do?prefix=/jsp/inventory"
        "&page=/cellNumberBlockRelease.do?method=getView&fromMenu=Y"
    )


@dataclass
class PortalConfig:
    """Connection settings for the operator portal."""

    base_url: str = "https://cpos4.vodafoneidea.com"
    endpoints: PortalEndpoints = field(default_factory=PortalEndpoints)
    # Entity fields the portal expects on every search/action form
    form_defaults: dict[str, str] = field(default_factory=lambda: {
        "entityType": "22",
        "entityGroup": "1066",
        "entity": "194587289",
    })
    timeout_seconds: float = 30.0
    verify_tls: bool = False
    # A logged-in landing page is large; error pages are small
    auth_min_response_length: int = 50000
    token_ttl_seconds: float = 30.0
    fallback_action_token: str = "TEST"
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )


@dataclass
class RetryConfig:
    """Retry behavior configuration."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker thresholds."""

    failure_threshold: int = 10
    success_threshold: int = 3
    timeout_seconds: float = 60.0


@dataclass
class RateLimitConfig:
    """Concurrency and request-rate caps shared by all callers of one session."""

    max_concurrent: int = 5
    requests_per_second: int = 10
    requests_per_minute: int = 300
    poll_interval_seconds: float = 0.1


@dataclass
class BatchConfig:
    """Batch processing settings."""

    batch_size: int = 5
    status_code: str = "191"
    action: str = "block"  # 'block' or 'release'
    refresh_every: int = 10
    duration_seconds: Optional[float] = None
    max_cycles: Optional[int] = None
    test_name: str = "API Batch"
    batch_files: list[Path] = field(default_factory=list)


@dataclass
class ReportConfig:
    """Report sink configuration."""

    output_dir: Path = field(default_factory=lambda: Path("reports"))
    file_prefix: str = "api-batch"


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "info"
    output_format: str = "text"  # 'json', 'text', 'both'


@dataclass
class SystemConfig:
    """Main system configuration combining all sub-configurations."""

    credentials: Credentials
    portal: PortalConfig = field(default_factory=PortalConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    reports: ReportConfig = field(default_factory=ReportConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def validate_config(config: SystemConfig) -> None:
    """
    Check configuration values that would make a run meaningless.

    Raises:
        ValidationError: On the first invalid value found
    """
    problems: list[str] = []

    if not config.portal.base_url.startswith(("http://", "https://")):
        problems.append(f"portal.base_url must be an http(s) URL: {config.portal.base_url!r}")
    if config.portal.auth_min_response_length < 0:
        problems.append("portal.auth_min_response_length must be >= 0")
    if config.portal.token_ttl_seconds < 0:
        problems.append("portal.token_ttl_seconds must be >= 0")
    if config.retry.max_retries < 0:
        problems.append("retry.max_retries must be >= 0")
    if config.retry.base_delay_seconds < 0 or config.retry.max_delay_seconds < 0:
        problems.append("retry delays must be >= 0")
    if config.retry.exponential_base < 1:
        problems.append("retry.exponential_base must be >= 1")
    if config.circuit_breaker.failure_threshold < 1:
        problems.append("circuit_breaker.failure_threshold must be >= 1")
    if config.circuit_breaker.success_threshold < 1:
        problems.append("circuit_breaker.success_threshold must be >= 1")
    if config.rate_limits.max_concurrent < 1:
        problems.append("rate_limits.max_concurrent must be >= 1")
    if config.rate_limits.requests_per_second < 1 or config.rate_limits.requests_per_minute < 1:
        problems.append("rate limits must allow at least one request per window")
    if config.batch.batch_size < 1:
        problems.append("batch.batch_size must be >= 1")
    if config.batch.refresh_every < 1:
        problems.append("batch.refresh_every must be >= 1")
    if config.batch.action not in {kind.value for kind in ActionKind}:
        problems.append(f"batch.action must be 'block' or 'release': {config.batch.action!r}")
    if config.logging.output_format not in ("json", "text", "both"):
        problems.append(f"logging.output_format is invalid: {config.logging.output_format!r}")

    if problems:
        raise ValidationError(
            code="invalid_config",
            message=problems[0],
            details={"problems": problems},
        )
