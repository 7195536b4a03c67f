"""pingwatch - Self-hosted network connectivity and outage monitor."""

import argparse
import logging
import signal
import sys
from threading import Event, Thread
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

# Run retention cleanup every 6 hours while the service is up.
CLEANUP_INTERVAL_SECONDS = 6 * 60 * 60

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


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _cleanup_loop(db_conn, retention_days: int, stop_event: Event) -> None:
    """Delete expired probe results periodically until stop_event is set."""
    from .database import DatabaseError, cleanup_old_results

    while not stop_event.wait(timeout=CLEANUP_INTERVAL_SECONDS):
        try:
            deleted = cleanup_old_results(db_conn, retention_days)
            if deleted:
                logger.info("Cleanup removed %d probe results older than %d days", deleted, retention_days)
        except DatabaseError as e:
            logger.error("Cleanup failed: %s", e)


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the monitoring service."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("pingwatch %s starting...", __version__)

    # Import here to allow logging setup first
    from .alerter import Alerter
    from .api import ApiError, ApiServer
    from .cache import ReachabilityCache
    from .config import ConfigError, load_config
    from .database import DatabaseError, SqliteGateway, init_db
    from .network_info import NetworkInfoService
    from .outage import OutageDetector
    from .scheduler import MonitoringScheduler
    from .settings import SettingsStore

    # 1. Load configuration
    try:
        config = load_config(args.config)
        logger.info("Configuration loaded from %s", args.config)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    # 2. Initialize database and seed targets
    try:
        db_conn = init_db(config.database.path)
        logger.info("Database initialized at %s", config.database.path)
        settings_store = SettingsStore(db_conn, defaults=config.monitor.intervals)
        settings_store.seed_targets(config.seed_targets)
        targets = settings_store.read_targets()
    except DatabaseError as e:
        logger.error("Database error: %s", e)
        sys.exit(1)

    intervals = settings_store.read_intervals()
    logger.info(
        "Monitoring %d targets: check every %gs, outage check every %gs",
        len(targets),
        intervals.check_interval_seconds,
        intervals.outage_check_interval_seconds,
    )

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 4. Initialize alerter
    alerter = Alerter(config.alerts)
    if config.alerts.webhooks:
        logger.info("Alerts configured with %d webhook(s)", len(config.alerts.webhooks))

    # 5. Wire the monitoring engine
    gateway = SqliteGateway(db_conn)
    detector = OutageDetector(gateway, failure_threshold=config.monitor.failure_threshold)
    scheduler = MonitoringScheduler(
        detector,
        gateway,
        probe_timeout=config.monitor.probe_timeout_seconds,
        on_transition=alerter.process_transition if alerter.enabled else None,
    )
    settings_store.subscribe(scheduler.reconfigure)

    network_info = NetworkInfoService(
        cache=ReachabilityCache(),
        ttl_seconds=config.network_info.cache_seconds,
        timeout=config.network_info.fetch_timeout_seconds,
    )

    api_server: Optional[ApiServer] = None
    cleanup_thread = Thread(
        target=_cleanup_loop,
        args=(db_conn, config.database.retention_days, _shutdown_event),
        name="cleanup",
        daemon=True,
    )

    try:
        scheduler.start(targets, intervals)
        cleanup_thread.start()

        if config.api.enabled:
            try:
                api_server = ApiServer(
                    config.api,
                    db_conn,
                    settings_store=settings_store,
                    network_info=network_info,
                    scheduler=scheduler,
                )
                api_server.start()
            except ApiError as e:
                logger.error("Failed to start API server: %s", e)
                logger.warning("Continuing without API server")
                api_server = None

        logger.info("All components started, waiting for shutdown signal...")

        # 6. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        # 7. Cleanup - stop all components
        logger.info("Shutting down components...")
        _shutdown_event.set()

        if api_server is not None:
            api_server.stop()

        scheduler.stop()

        db_conn.close()
        logger.info("Database connection closed")

        logger.info("Shutdown complete")


def _cmd_clean(args: argparse.Namespace) -> None:
    """Execute the clean command - remove old probe results from the database."""
    from pathlib import Path

    from .config import ConfigError, load_config
    from .database import DatabaseError, cleanup_old_results, delete_all_results, init_db

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if not Path(config.database.path).exists():
        print(f"Error: Database not found at {config.database.path}")
        sys.exit(1)

    if args.all:
        retention_days = None
    elif args.retention_days is not None:
        if args.retention_days < 0:
            print("Error: retention-days must be a non-negative integer")
            sys.exit(1)
        retention_days = args.retention_days
    else:
        retention_days = config.database.retention_days

    try:
        conn = init_db(config.database.path)
        try:
            if retention_days is None:
                deleted = delete_all_results(conn)
                print(f"Deleted all {deleted} probe results and all outages from database.")
            else:
                deleted = cleanup_old_results(conn, retention_days)
                print(f"Deleted {deleted} probe results older than {retention_days} days.")
        finally:
            conn.close()
    except DatabaseError as e:
        print(f"Error: {e}")
        sys.exit(1)


def _cmd_check_target(args: argparse.Namespace) -> None:
    """Execute the check-target command - validate and ping an address once."""
    from .probe import check_target

    result = check_target(args.address, timeout=args.timeout)

    if not result.valid:
        print(f"✗ INVALID: {result.error}")
        sys.exit(1)

    if result.reachable:
        latency = f"{result.latency_ms:.1f} ms" if result.latency_ms is not None else "latency unknown"
        print(f"✓ REACHABLE: {args.address} ({result.suggested_kind}, {latency})")
    else:
        print(f"! UNREACHABLE: {args.address} ({result.suggested_kind})")
        print(result.warning)
        sys.exit(2)


def _cmd_test_alert(args: argparse.Namespace) -> None:
    """Execute the test-alert command - verify webhook configuration."""
    from .alerter import Alerter
    from .config import ConfigError, load_config

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if not config.alerts.webhooks:
        print("Error: No webhooks configured in alerts section")
        sys.exit(1)

    alerter = Alerter(config.alerts)
    print(f"Testing {len(config.alerts.webhooks)} webhook(s)...\n")

    results = alerter.test_webhooks()

    success_count = sum(1 for success in results.values() if success)
    total_count = len(results)

    for url, success in results.items():
        status = "✓ SUCCESS" if success else "✗ FAILED"
        print(f"{status}: {url}")

    print(f"\nResult: {success_count}/{total_count} webhooks successful")

    if success_count < total_count:
        sys.exit(1)


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c",
        "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(description="pingwatch - Network connectivity and outage monitor")
    parser.add_argument(
        "--version",
        action="version",
        version=f"pingwatch {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser(
        "run",
        help="Start the monitoring service (default)",
    )
    _add_config_argument(run_parser)
    run_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    clean_parser = subparsers.add_parser(
        "clean",
        help="Remove old probe results from the database",
    )
    _add_config_argument(clean_parser)
    clean_parser.add_argument(
        "--retention-days",
        type=int,
        help="Delete records older than this many days (overrides config)",
    )
    clean_parser.add_argument(
        "--all",
        action="store_true",
        help="Delete all probe results and outages (ignores retention_days)",
    )
    clean_parser.set_defaults(func=_cmd_clean)

    check_parser = subparsers.add_parser(
        "check-target",
        help="Validate an address and ping it once",
    )
    check_parser.add_argument("address", help="IPv4 address or domain name")
    check_parser.add_argument(
        "--timeout",
        type=float,
        default=5.0,
        help="Probe timeout in seconds (default: 5)",
    )
    check_parser.set_defaults(func=_cmd_check_target)

    test_alert_parser = subparsers.add_parser(
        "test-alert",
        help="Test webhook alert configuration",
    )
    _add_config_argument(test_alert_parser)
    test_alert_parser.set_defaults(func=_cmd_test_alert)

    return parser


def main() -> None:
    """Main entry point for the pingwatch package."""
    parser = build_parser()
    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
