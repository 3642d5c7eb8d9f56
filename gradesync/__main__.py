"""CLI entry point for gradesync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import load_config


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

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
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


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the sync server."""
    config = load_config(args.config)

    try:
        import uvicorn
    except ImportError as e:
        print(f"Server dependencies not installed: {e}", file=sys.stderr)
        return 1

    from .server import create_app
    from .sync import SyncService

    service = SyncService.from_config(config)
    service.connect()

    host = args.host or config.server.host
    port = args.port or config.server.port
    print(f"Starting gradesync server: {config.node.name}")
    print(f"Store: {config.store.db_path}")
    print(f"Push auth: {'enabled' if config.sync.token else 'disabled'}")
    print(f"Listening on http://{host}:{port}")

    try:
        uvicorn.run(create_app(config, service), host=host, port=port, log_config=None)
    finally:
        service.close()

    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show server store statistics."""
    from .sync import StoreError, SyncService

    config = load_config(args.config)
    service = SyncService.from_config(config)

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "node": {"name": config.node.name},
        "store": {"db_path": config.store.db_path},
    }

    try:
        service.connect()
        status_data["store"].update(service.get_stats())
    except StoreError as e:
        status_data["store"]["error"] = str(e)
    finally:
        service.close()

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    store = status_data["store"]
    print(f"Node: {config.node.name}")
    print(f"Store: {store['db_path']}")
    if "error" in store:
        print(f"  Error: {store['error']}")
        return 1
    print(f"  Checkpoint: {store['checkpoint']}")
    print(f"  Records: {store['record_count']} active, {store['deleted_count']} deleted")
    print(f"  Log entries: {store['total_entries']} ({store['distinct_ids']} ids)")
    for change_type, count in sorted(store["entries_by_type"].items()):
        print(f"    {change_type}: {count}")
    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Sync the local outbox with the server."""
    from .sync import Outbox, SyncClient

    config = load_config(args.config)
    remote_url = args.remote or config.client.remote_url
    if not remote_url:
        print("No remote URL configured (client.remote_url or --remote)", file=sys.stderr)
        return 1

    outbox = Outbox(config.client.db_path, config.client.client_id)
    outbox.connect()

    client = SyncClient(
        outbox,
        remote_url=remote_url,
        token=config.sync.token,
        batch_size=config.client.batch_size,
        pull_limit=config.client.pull_limit,
        max_pull_pages=config.client.max_pull_pages,
        max_retries=config.client.retry_max_attempts,
        timeout=config.client.timeout_seconds,
    )

    try:
        if args.loop:
            await client.sync_loop(config.client.sync_interval_minutes * 60)
            return 0

        result = await client.full_sync()
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0
    finally:
        outbox.close()

    print(
        f"Sync {result.status.value}: pushed={result.changes_pushed}, "
        f"failed={result.changes_failed}, pulled={result.items_pulled}"
    )
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="gradesync",
        description="Offline-first sync service for school assessment records",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: config.yaml)",
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
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the sync server")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: server.port)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: server.host)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show store statistics")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Sync the local outbox with a server")
    sync_parser.add_argument(
        "--remote",
        type=str,
        default=None,
        help="Server URL (default: client.remote_url)",
    )
    sync_parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep syncing every client.sync_interval_minutes",
    )
    sync_parser.set_defaults(func=cmd_sync)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if asyncio.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
