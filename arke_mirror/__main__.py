"""CLI entry point for the Arke mirror."""

import argparse
import asyncio
import inspect
import json
import logging
import signal
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .errors import ConfigError, MirrorError, PersistenceError, ReplicaDivergedError
from .store import ReplicaLog, StateStore
from .sync import ArkeClient, MirrorEngine, MirrorScheduler, replica_stats

logger = logging.getLogger("arke_mirror")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        # Safe JSON serialization
        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            # Fallback for non-serializable objects
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )
    # Per-request lines from httpx drown out the sync log
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _stores(config: Config) -> tuple[StateStore, ReplicaLog]:
    state_store = StateStore(
        config.storage.state_file, min_backoff=config.sync.min_backoff_seconds
    )
    return state_store, ReplicaLog(config.storage.log_file)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    """Set the stop event on SIGINT/SIGTERM so the current cycle can finish."""
    loop = asyncio.get_running_loop()

    def _request_stop(signame: str) -> None:
        if stop_event.is_set():
            return
        logger.info(f"Received {signame}, finishing current cycle...")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, sig.name)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform; Ctrl+C falls back to KeyboardInterrupt
            continue


async def cmd_run(args: argparse.Namespace) -> int:
    """Run the mirror."""
    config = load_config(args.config)
    state_store, replica_log = _stores(config)

    print("=== Arke Mirror Starting ===")
    print(f"API Base URL: {config.remote.base_url}")
    print(f"State File: {state_store.path}")
    print(f"Log File: {replica_log.path}")

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    async with ArkeClient(
        config.remote.base_url,
        timeout=config.remote.timeout_seconds,
        max_retries=config.remote.max_retries,
        page_size=config.sync.page_size,
    ) as client:
        engine = MirrorEngine(client, state_store, replica_log)
        scheduler = MirrorScheduler(
            engine,
            min_backoff=config.sync.min_backoff_seconds,
            max_backoff=config.sync.max_backoff_seconds,
            snapshot_refresh_seconds=config.sync.snapshot_refresh_seconds,
        )

        try:
            state = await scheduler.run(
                stop_event=stop_event,
                max_cycles=1 if args.once else None,
            )
        except ReplicaDivergedError as e:
            print(f"Fatal error: {e}", file=sys.stderr)
            return 1
        except PersistenceError as e:
            print(f"Cannot load replica state: {e}", file=sys.stderr)
            print("Run 'arke-mirror reset' to start over.", file=sys.stderr)
            return 1

    print("Final stats:", json.dumps(engine.get_stats(state), indent=2))
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show the persisted replica status."""
    config = load_config(args.config)
    state_store, replica_log = _stores(config)

    try:
        state = state_store.load()
    except PersistenceError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    stats = replica_stats(state, replica_log)

    if args.json:
        print(json.dumps(stats, indent=2))
        return 0

    print("=== Arke Mirror Status ===")
    print(f"Remote: {config.remote.base_url}")
    print(f"Phase: {stats['phase']}")
    print(f"Connected: {stats['connected']}")
    print(f"Total entities: {stats['entity_count']}")
    print(f"Cursor: {stats['cursor'] or '-'}")
    print(f"Last snapshot sequence: {stats['last_snapshot_seq'] or '-'}")
    print(f"Last poll: {stats['last_poll_time'] or 'never'}")
    print(f"Last snapshot check: {stats['last_snapshot_check_time'] or 'never'}")
    print(f"Current backoff: {stats['backoff_interval']:g}s")
    if "log_error" in stats:
        print(f"Log: unreadable ({stats['log_error']})")
    else:
        print(
            f"Log: {stats['total_records']} records "
            f"({stats['snapshot_records']} snapshot, {stats['event_records']} event)"
        )
    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    """Delete the replica state and log so the next run starts over."""
    config = load_config(args.config)
    state_store, replica_log = _stores(config)

    if not args.yes:
        answer = input(
            f"Delete {state_store.path} and {replica_log.path}? [y/N] "
        ).strip().lower()
        if answer not in ("y", "yes"):
            print("Aborted.")
            return 1

    try:
        removed_state = state_store.reset()
        removed_log = replica_log.reset()
    except PersistenceError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if removed_state or removed_log:
        print("Replica reset; the next run will bootstrap from the latest snapshot.")
    else:
        print("Nothing to reset.")
    return 0


async def cmd_dashboard(args: argparse.Namespace) -> int:
    """Serve the status API."""
    config = load_config(args.config)

    try:
        from .dashboard import create_app

        import uvicorn
    except ImportError as e:
        print(f"Dashboard dependencies not installed: {e}", file=sys.stderr)
        print("Install with: pip install arke-mirror[dashboard]", file=sys.stderr)
        return 1

    state_store, replica_log = _stores(config)
    host = args.host or config.dashboard.host
    port = args.port or config.dashboard.port

    print("Starting Arke Mirror status API")
    print(f"URL: http://{host}:{port}")

    app = create_app(config, state_store=state_store, replica_log=replica_log)

    verbose = getattr(args, "verbose", False)
    config_uvicorn = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info" if verbose else "warning",
    )
    server = uvicorn.Server(config_uvicorn)
    await server.serve()
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="arke-mirror",
        description="Keep a local replica of an Arke entity/event store",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        dest="json_logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Run command
    run_parser = subparsers.add_parser("run", help="Bootstrap if needed and poll for updates")
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle and exit",
    )
    run_parser.set_defaults(func=cmd_run)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show replica status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Reset command
    reset_parser = subparsers.add_parser("reset", help="Delete replica state and log")
    reset_parser.add_argument(
        "-y", "--yes",
        action="store_true",
        help="Do not ask for confirmation",
    )
    reset_parser.set_defaults(func=cmd_reset)

    # Dashboard command
    dashboard_parser = subparsers.add_parser("dashboard", help="Serve the status API")
    dashboard_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to serve on (default: from config, 8090)",
    )
    dashboard_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: from config, 127.0.0.1)",
    )
    dashboard_parser.set_defaults(func=cmd_dashboard)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    try:
        if inspect.iscoroutinefunction(func):
            return asyncio.run(func(args))
        return func(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0
    except MirrorError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
