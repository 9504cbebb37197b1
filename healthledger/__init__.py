"""healthledger - Batch HTTP(S) health checks with a bounded status history."""

import argparse
import logging
import sys
from datetime import UTC, datetime

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - check, notify, update history and report."""
    _setup_logging(args.verbose)

    logger.info("healthledger %s starting...", __version__)

    # Import here so logging is configured first
    from .alerter import AlertError, write_notifications
    from .checker import check_services
    from .config import ConfigError, load_config
    from .history import HistoryError, update_log
    from .report import ReportError, build_report, write_report

    # 1. Load configuration
    try:
        config = load_config(args.config)
        logger.info("Configuration loaded from %s", args.config)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    # A single reference time keeps pruning consistent within the run
    now = datetime.now(UTC)

    # 2. Check all endpoints
    results = check_services(config.services, max_workers=config.max_workers)

    # 3. Notify file for external channels
    try:
        write_notifications(results, config.cert_notify_days, config.notify_path, now=now)
    except AlertError as e:
        logger.error("Notification error: %s", e)

    # 4. Merge into the persisted history
    try:
        log = update_log(config.log_path, results, config.max_log_days, now=now)
    except HistoryError as e:
        logger.error("History error: %s", e)
        sys.exit(1)

    # 5. Report
    try:
        report = build_report(log, config.services, results, config.display_num)
        write_report(report, config.report_path, config.display_num)
        logger.info("Report generated at %s", config.report_path)
    except ReportError as e:
        logger.error("Report error: %s", e)
        sys.exit(1)


def _cmd_check(args: argparse.Namespace) -> None:
    """Execute the check command - probe endpoints and print results without writing anything."""
    from .checker import check_services
    from .config import ConfigError, load_config

    if args.verbose:
        _setup_logging(True)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    results = check_services(config.services, max_workers=config.max_workers)

    for service in results:
        print(f"{service.name}: {service.status}")
        for endpoint in service.endpoints:
            line = (
                f"  {endpoint.status!s:<4} {endpoint.method} {endpoint.url} "
                f"({endpoint.success_count}/{endpoint.attempt_count} ok, {endpoint.response_time_ms}ms)"
            )
            if endpoint.is_https and endpoint.cert_remaining_days is not None:
                line += f" cert {endpoint.cert_remaining_days}d"
            print(line)
            if endpoint.failure_details:
                print(f"       last error: {endpoint.failure_details[-1]}")


def main() -> None:
    """Main entry point for the healthledger package."""
    parser = argparse.ArgumentParser(
        description="healthledger - Batch HTTP(S) health checks with a bounded status history"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"healthledger {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Check all endpoints, update the history log and write the report (default)",
    )
    run_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Check subcommand
    check_parser = subparsers.add_parser(
        "check",
        help="Check all endpoints and print the results without writing any files",
    )
    check_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    check_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    check_parser.set_defaults(func=_cmd_check)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
