"""
Command-line interface for the number blocker system.

This module provides the main CLI entry point with commands for:
- run: Process batch files for a number of cycles or a duration
- probe: Authenticate and block (or release) a single number
- summarize: Consolidate saved batch reports
- config: Configuration management

Credentials are read from the environment (PORTAL_USERNAME, PORTAL_PASSWORD,
PORTAL_BASE_URL), optionally loaded from a .env file.
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from . import __version__
from .audit_logger import AuditLogger
from .config import (
    BatchConfig,
    CircuitBreakerConfig,
    Credentials,
    LoggingConfig,
    PortalConfig,
    RateLimitConfig,
    ReportConfig,
    RetryConfig,
    SystemConfig,
    validate_config,
)
from .enums import ActionKind
from .exceptions import NumberBlockerError, ValidationError
from .identifiers import normalize_identifier
from .orchestrator import BatchOrchestrator, new_session_id
from .portal_client import PortalClient
from .report_store import ReportStore

DEFAULT_CONFIG_PATH = Path.home() / ".number_blocker" / "config.json"

ENV_USERNAME = "PORTAL_USERNAME"
ENV_PASSWORD = "PORTAL_PASSWORD"
ENV_BASE_URL = "PORTAL_BASE_URL"


def create_default_config(
    username: str = "",
    password: str = "",
) -> SystemConfig:
    """
    Create a default system configuration.

    Args:
        username: Portal username
        password: Portal password

    Returns:
        SystemConfig with default settings
    """
    return SystemConfig(
        credentials=Credentials(username=username, password=password),
        portal=PortalConfig(),
        retry=RetryConfig(),
        circuit_breaker=CircuitBreakerConfig(),
        rate_limits=RateLimitConfig(),
        batch=BatchConfig(),
        reports=ReportConfig(),
        logging=LoggingConfig(level="info", output_format="text"),
    )


def load_config_from_file(config_path: Path) -> Optional[SystemConfig]:
    """
    Load configuration from a JSON file.

    Missing sections and keys fall back to their defaults. The password is
    never read from the file.

    Args:
        config_path: Path to the configuration file

    Returns:
        SystemConfig if successful, None otherwise
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        defaults = create_default_config()

        portal_data = data.get("portal", {})
        portal = PortalConfig(
            base_url=portal_data.get("base_url", defaults.portal.base_url),
            form_defaults=portal_data.get("form_defaults", defaults.portal.form_defaults),
            timeout_seconds=portal_data.get("timeout_seconds", defaults.portal.timeout_seconds),
            verify_tls=portal_data.get("verify_tls", defaults.portal.verify_tls),
            auth_min_response_length=portal_data.get(
                "auth_min_response_length", defaults.portal.auth_min_response_length
            ),
            token_ttl_seconds=portal_data.get(
                "token_ttl_seconds", defaults.portal.token_ttl_seconds
            ),
        )

        retry_data = data.get("retry", {})
        retry = RetryConfig(
            max_retries=retry_data.get("max_retries", 3),
            base_delay_seconds=retry_data.get("base_delay_seconds", 1.0),
            max_delay_seconds=retry_data.get("max_delay_seconds", 30.0),
            exponential_base=retry_data.get("exponential_base", 2.0),
            jitter=retry_data.get("jitter", True),
        )

        breaker_data = data.get("circuit_breaker", {})
        circuit_breaker = CircuitBreakerConfig(
            failure_threshold=breaker_data.get("failure_threshold", 10),
            success_threshold=breaker_data.get("success_threshold", 3),
            timeout_seconds=breaker_data.get("timeout_seconds", 60.0),
        )

        rate_data = data.get("rate_limits", {})
        rate_limits = RateLimitConfig(
            max_concurrent=rate_data.get("max_concurrent", 5),
            requests_per_second=rate_data.get("requests_per_second", 10),
            requests_per_minute=rate_data.get("requests_per_minute", 300),
            poll_interval_seconds=rate_data.get("poll_interval_seconds", 0.1),
        )

        batch_data = data.get("batch", {})
        batch = BatchConfig(
            batch_size=batch_data.get("batch_size", 5),
            status_code=str(batch_data.get("status_code", "191")),
            action=batch_data.get("action", "block"),
            refresh_every=batch_data.get("refresh_every", 10),
            duration_seconds=batch_data.get("duration_seconds"),
            max_cycles=batch_data.get("max_cycles"),
            test_name=batch_data.get("test_name", "API Batch"),
            batch_files=[Path(p) for p in batch_data.get("batch_files", [])],
        )

        reports_data = data.get("reports", {})
        reports = ReportConfig(
            output_dir=Path(reports_data.get("output_dir", "reports")),
            file_prefix=reports_data.get("file_prefix", "api-batch"),
        )

        logging_data = data.get("logging", {})
        logging_config = LoggingConfig(
            level=logging_data.get("level", "info"),
            output_format=logging_data.get("output_format", "text"),
        )

        return SystemConfig(
            credentials=Credentials(
                username=data.get("credentials", {}).get("username", ""),
                password="",
            ),
            portal=portal,
            retry=retry,
            circuit_breaker=circuit_breaker,
            rate_limits=rate_limits,
            batch=batch,
            reports=reports,
            logging=logging_config,
        )

    except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return None
    except FileNotFoundError:
        return None


def save_config_to_file(config: SystemConfig, config_path: Path) -> bool:
    """
    Save configuration to a JSON file. The password is not written.

    Args:
        config: SystemConfig to save
        config_path: Path to save the configuration

    Returns:
        True if successful, False otherwise
    """
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "credentials": {"username": config.credentials.username},
            "portal": {
                "base_url": config.portal.base_url,
                "form_defaults": config.portal.form_defaults,
                "timeout_seconds": config.portal.timeout_seconds,
                "verify_tls": config.portal.verify_tls,
                "auth_min_response_length": config.portal.auth_min_response_length,
                "token_ttl_seconds": config.portal.token_ttl_seconds,
            },
            "retry": {
                "max_retries": config.retry.max_retries,
                "base_delay_seconds": config.retry.base_delay_seconds,
                "max_delay_seconds": config.retry.max_delay_seconds,
                "exponential_base": config.retry.exponential_base,
                "jitter": config.retry.jitter,
            },
            "circuit_breaker": {
                "failure_threshold": config.circuit_breaker.failure_threshold,
                "success_threshold": config.circuit_breaker.success_threshold,
                "timeout_seconds": config.circuit_breaker.timeout_seconds,
            },
            "rate_limits": {
                "max_concurrent": config.rate_limits.max_concurrent,
                "requests_per_second": config.rate_limits.requests_per_second,
                "requests_per_minute": config.rate_limits.requests_per_minute,
                "poll_interval_seconds": config.rate_limits.poll_interval_seconds,
            },
            "batch": {
                "batch_size": config.batch.batch_size,
                "status_code": config.batch.status_code,
                "action": config.batch.action,
                "refresh_every": config.batch.refresh_every,
                "duration_seconds": config.batch.duration_seconds,
                "max_cycles": config.batch.max_cycles,
                "test_name": config.batch.test_name,
                "batch_files": [str(p) for p in config.batch.batch_files],
            },
            "reports": {
                "output_dir": str(config.reports.output_dir),
                "file_prefix": config.reports.file_prefix,
            },
            "logging": {
                "level": config.logging.level,
                "output_format": config.logging.output_format,
            },
        }

        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

        return True

    except (OSError, TypeError) as e:
        print(f"Error saving config: {e}", file=sys.stderr)
        return False


def apply_env_overrides(config: SystemConfig, env_file: Optional[Path] = None) -> SystemConfig:
    """
    Overlay credentials and base URL from the environment.

    Args:
        config: Configuration to update in place
        env_file: Optional .env file; the default lookup is used if omitted

    Returns:
        The same configuration object
    """
    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()

    username = os.getenv(ENV_USERNAME, "").strip()
    password = os.getenv(ENV_PASSWORD, "")
    base_url = os.getenv(ENV_BASE_URL, "").strip()

    if username:
        config.credentials.username = username
    if password:
        config.credentials.password = password
    if base_url:
        config.portal.base_url = base_url
    return config


def _load_config(args: argparse.Namespace) -> Optional[SystemConfig]:
    """Defaults < config file < environment < command line."""
    config = None
    if getattr(args, "config", None):
        config = load_config_from_file(Path(args.config))
        if config is None:
            print(f"Error: Could not load config from {args.config}", file=sys.stderr)
            return None

    if config is None:
        config = create_default_config()

    env_file = Path(args.env_file) if getattr(args, "env_file", None) else None
    apply_env_overrides(config, env_file)

    if getattr(args, "batch_size", None):
        config.batch.batch_size = args.batch_size
    if getattr(args, "status_code", None):
        config.batch.status_code = args.status_code
    if getattr(args, "release", False):
        config.batch.action = ActionKind.RELEASE.value
    if getattr(args, "output_dir", None):
        config.reports.output_dir = Path(args.output_dir)
    if getattr(args, "verbose", False):
        config.logging.level = "debug"

    try:
        validate_config(config)
    except ValidationError as e:
        print(f"Error: invalid configuration: {e.message}", file=sys.stderr)
        return None

    if not config.credentials.username or not config.credentials.password:
        print(
            f"Error: set {ENV_USERNAME} and {ENV_PASSWORD} (environment or .env file)",
            file=sys.stderr,
        )
        return None

    return config


def _create_logger(config: SystemConfig) -> AuditLogger:
    return AuditLogger.from_level_name(
        config.logging.level,
        output_format=config.logging.output_format,
    )


async def run_batches(
    config: SystemConfig,
    batch_files: list[Path],
    duration_seconds: Optional[float] = None,
    max_cycles: Optional[int] = None,
) -> int:
    """
    Run the orchestrator over the batch files.

    Returns:
        Exit code (0 if every identifier succeeded, 1 otherwise)
    """
    logger = _create_logger(config)
    session_id = new_session_id()
    report_store = ReportStore(config.reports, session_id=session_id, logger=logger)

    async with BatchOrchestrator(
        config=config,
        report_store=report_store,
        logger=logger,
        session_id=session_id,
    ) as orchestrator:
        summary = await orchestrator.run(
            batch_files=batch_files,
            duration_seconds=duration_seconds,
            max_cycles=max_cycles,
        )

    print(f"\nSession: {summary.session_id}")
    print(f"  Cycles completed: {len(summary.cycles)}")
    print(f"  Numbers processed: {summary.total_processed}")
    print(f"  Successful: {summary.total_successful}")
    print(f"  Failed: {summary.total_failed}")
    print(f"  Success rate: {summary.success_rate:.1f}%")
    print(f"  Numbers per minute: {summary.numbers_per_minute:.1f}")
    print(f"  Duration: {summary.duration_seconds:.1f}s")
    for path in summary.report_files:
        print(f"  Report: {path}")

    return 0 if summary.total_failed == 0 else 1


async def probe_number(config: SystemConfig, identifier: str) -> int:
    """Authenticate and act on one number, printing the outcome as JSON."""
    logger = _create_logger(config)

    async with PortalClient(config.portal, logger=logger) as client:
        if not await client.authenticate(config.credentials):
            print("Error: authentication failed", file=sys.stderr)
            return 1
        outcome = await client.perform_lookup_and_act(
            identifier,
            config.batch.status_code,
            ActionKind(config.batch.action),
        )

    print(json.dumps(outcome.to_dict(), indent=2, ensure_ascii=False))
    return 0 if outcome.success else 1


def cmd_run(args: argparse.Namespace) -> int:
    """Handle the 'run' command."""
    config = _load_config(args)
    if config is None:
        return 1

    batch_files = [Path(p) for p in args.files] or config.batch.batch_files
    if not batch_files:
        print("Error: no batch files given", file=sys.stderr)
        return 1

    duration_seconds = args.duration * 60 if args.duration is not None else None

    try:
        return asyncio.run(run_batches(
            config=config,
            batch_files=batch_files,
            duration_seconds=duration_seconds,
            max_cycles=args.cycles,
        ))
    except NumberBlockerError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


def cmd_probe(args: argparse.Namespace) -> int:
    """Handle the 'probe' command."""
    config = _load_config(args)
    if config is None:
        return 1

    try:
        return asyncio.run(probe_number(config, normalize_identifier(args.number)))
    except NumberBlockerError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


def cmd_summarize(args: argparse.Namespace) -> int:
    """Handle the 'summarize' command."""
    store = ReportStore(
        ReportConfig(output_dir=Path(args.reports_dir), file_prefix=args.prefix),
    )
    files = store.report_files()

    try:
        summary = store.consolidate()
    except NumberBlockerError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    text = json.dumps(summary, indent=2, ensure_ascii=False)
    if args.output:
        output_file = Path(args.output)
        try:
            output_file.parent.mkdir(parents=True, exist_ok=True)
            output_file.write_text(text + "\n", encoding="utf-8")
            print(f"Summary written to: {output_file}")
        except OSError as e:
            print(f"Error writing summary: {e}", file=sys.stderr)
            return 1
    else:
        print(text)

    if args.cleanup:
        removed = store.cleanup(files)
        print(f"Cleaned up {removed}/{len(files)} report files")

    return 0


def cmd_config(args: argparse.Namespace) -> int:
    """Handle the 'config' command."""
    config_path = Path(args.path) if args.path else DEFAULT_CONFIG_PATH

    if args.action == "show":
        config = load_config_from_file(config_path)
        if config is None:
            print(f"No configuration found at: {config_path}")
            print("Use 'config init' to create a default configuration.")
            return 1

        print(f"Configuration from: {config_path}")
        print(f"  Portal: {config.portal.base_url}")
        print(f"  Username: {config.credentials.username or '(from environment)'}")
        print(f"  Batch size: {config.batch.batch_size}")
        print(f"  Status code: {config.batch.status_code}")
        print(f"  Action: {config.batch.action}")
        print(f"  Max retries: {config.retry.max_retries}")
        print(f"  Max concurrent: {config.rate_limits.max_concurrent}")
        print(f"  Reports: {config.reports.output_dir}")
        print(f"  Log level: {config.logging.level}")
        return 0

    elif args.action == "init":
        if config_path.exists() and not args.force:
            print(f"Configuration already exists at: {config_path}")
            print("Use --force to overwrite.")
            return 1

        config = create_default_config()
        if save_config_to_file(config, config_path):
            print(f"Configuration created at: {config_path}")
            return 0
        return 1

    elif args.action == "validate":
        config = load_config_from_file(config_path)
        if config is None:
            print(f"Error: Could not load config from {config_path}", file=sys.stderr)
            return 1

        try:
            validate_config(config)
        except ValidationError as e:
            for problem in e.details.get("problems", [e.message]):
                print(f"  - {problem}", file=sys.stderr)
            return 1

        print(f"Configuration at {config_path} is valid.")
        return 0

    return 1


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    parser.add_argument(
        "--env-file",
        help="Path to a .env file with portal credentials",
    )
    parser.add_argument(
        "--status-code",
        help="Target number status code (default: 191)",
    )
    parser.add_argument(
        "--release",
        action="store_true",
        help="Release (unblock) numbers instead of blocking them",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="number-blocker",
        description="Resilient bulk number blocking against the operator portal",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # 'run' command
    run_parser = subparsers.add_parser(
        "run",
        help="Process batch files of phone numbers",
    )
    run_parser.add_argument(
        "files",
        nargs="*",
        help="Batch files (one phone number per line)",
    )
    run_parser.add_argument(
        "--duration", "-d",
        type=float,
        help="Keep cycling through the files for this many minutes",
    )
    run_parser.add_argument(
        "--cycles",
        type=int,
        help="Maximum number of cycles",
    )
    run_parser.add_argument(
        "--batch-size", "-b",
        type=int,
        help="Numbers processed concurrently per group (default: 5)",
    )
    run_parser.add_argument(
        "--output-dir", "-o",
        help="Directory for batch report files",
    )
    _add_common_arguments(run_parser)
    run_parser.set_defaults(func=cmd_run)

    # 'probe' command
    probe_parser = subparsers.add_parser(
        "probe",
        help="Authenticate and block (or release) a single number",
    )
    probe_parser.add_argument(
        "number",
        help="Phone number to block or release",
    )
    _add_common_arguments(probe_parser)
    probe_parser.set_defaults(func=cmd_probe)

    # 'summarize' command
    summarize_parser = subparsers.add_parser(
        "summarize",
        help="Consolidate saved batch reports",
    )
    summarize_parser.add_argument(
        "reports_dir",
        nargs="?",
        default="reports",
        help="Directory containing batch report files (default: reports)",
    )
    summarize_parser.add_argument(
        "--prefix",
        default="api-batch",
        help="Report file name prefix (default: api-batch)",
    )
    summarize_parser.add_argument(
        "--output", "-o",
        help="Write the consolidated summary to this file",
    )
    summarize_parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Delete the consolidated report files afterwards",
    )
    summarize_parser.set_defaults(func=cmd_summarize)

    # 'config' command
    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
    )
    config_parser.add_argument(
        "action",
        choices=["show", "init", "validate"],
        help="Configuration action",
    )
    config_parser.add_argument(
        "--path", "-p",
        help="Path to configuration file",
    )
    config_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Force overwrite existing configuration",
    )
    config_parser.set_defaults(func=cmd_config)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
