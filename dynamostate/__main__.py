"""CLI entry point for dynamostate."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .dynamo import DynamoClient
from .sync import (
    ALWAYS_ACTIVE,
    AppStateError,
    LocalSnapshot,
    SyncSession,
    SyncStatus,
    Updates,
    account_incomplete,
    get_value,
    scan_keys,
)


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
        level = logging.DEBUG if verbose else logging.WARNING

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


def _load_checked_config(args: argparse.Namespace) -> Config | None:
    config = load_config(args.config)
    if account_incomplete(config.make_account()):
        print(
            "Error: account is incomplete (need access key, secret key, region "
            "and table name)",
            file=sys.stderr,
        )
        return None
    return config


def _open_snapshot(config: Config) -> LocalSnapshot | None:
    if not config.sync.snapshot_path:
        return None
    snapshot = LocalSnapshot(config.sync.snapshot_path)
    snapshot.connect()
    return snapshot


async def cmd_get(args: argparse.Namespace) -> int:
    """Print one key's remote value."""
    config = _load_checked_config(args)
    if config is None:
        return 1

    state = config.make_app_state()
    async with DynamoClient(state.account, timeout=config.sync.request_timeout_seconds) as client:
        try:
            value = await get_value(client, state, args.key)
        except AppStateError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    if value is None:
        print(f"{args.key}: not found", file=sys.stderr)
        return 1
    print(json.dumps(value, indent=2))
    return 0


async def _write(config: Config, key: str, value: object) -> int:
    """Stage one write and flush it through the versioned protocol."""
    state = config.make_app_state()
    snapshot = _open_snapshot(config)
    try:
        async with DynamoClient(state.account, timeout=config.sync.request_timeout_seconds) as client:
            session = SyncSession(client, state, snapshot=snapshot)

            result = await session.start()
            if result.status != SyncStatus.SUCCESS:
                print(f"Error: {result.error}", file=sys.stderr)
                return 1

            try:
                await session.save(key, value)
            except AppStateError as e:
                print(f"Error: {e}", file=sys.stderr)
                return 1

            result = await session.flush(force=True)
            if result.status != SyncStatus.SUCCESS:
                print(f"Error: {result.error}", file=sys.stderr)
                return 1

            print(f"Saved at save count {session.state.save_count}")
            return 0
    finally:
        if snapshot:
            snapshot.close()


async def cmd_put(args: argparse.Namespace) -> int:
    """Store a JSON value under a key."""
    config = _load_checked_config(args)
    if config is None:
        return 1

    try:
        value = json.loads(args.value)
    except json.JSONDecodeError as e:
        print(f"Error: value is not valid JSON: {e}", file=sys.stderr)
        return 1
    if value is None:
        print("Error: null cannot be stored, use 'delete'", file=sys.stderr)
        return 1

    return await _write(config, args.key, value)


async def cmd_delete(args: argparse.Namespace) -> int:
    """Delete a key."""
    config = _load_checked_config(args)
    if config is None:
        return 1
    return await _write(config, args.key, None)


async def cmd_keys(args: argparse.Namespace) -> int:
    """List stored keys, optionally with values."""
    config = _load_checked_config(args)
    if config is None:
        return 1

    state = config.make_app_state()
    async with DynamoClient(state.account, timeout=config.sync.request_timeout_seconds) as client:
        try:
            found = await scan_keys(client, state, fetch_values=args.values)
        except AppStateError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    if args.values:
        print(json.dumps(found, indent=2, sort_keys=True))
    else:
        for key in sorted(found):
            print(key)
    return 0


async def cmd_watch(args: argparse.Namespace) -> int:
    """Follow the shared state and print every change."""
    config = _load_checked_config(args)
    if config is None:
        return 1

    def print_updates(updates: Updates) -> None:
        for key, value in sorted(updates.updates.items()):
            if value is None:
                print(f"[{updates.save_count}] {key} deleted")
            else:
                print(f"[{updates.save_count}] {key} = {json.dumps(value)}")

    state = config.make_app_state()
    snapshot = _open_snapshot(config)
    stop_event = asyncio.Event()
    try:
        async with DynamoClient(state.account, timeout=config.sync.request_timeout_seconds) as client:
            session = SyncSession(
                client,
                state,
                snapshot=snapshot,
                max_queued=config.sync.max_queued,
                on_updates=print_updates,
            )
            result = await session.start()
            if result.status != SyncStatus.SUCCESS:
                print(f"Error: {result.error}", file=sys.stderr)
                return 1

            print(f"Watching {state.table} (save count {session.state.save_count})")
            for key, value in sorted(session.values.items()):
                print(f"  {key} = {json.dumps(value)}")

            # Polling never times out while watching
            session.state = replace(session.state, last_active_time=ALWAYS_ACTIVE)
            try:
                await session.run(config.sync.interval_seconds, stop_event)
            except KeyboardInterrupt:
                print("\nStopping...")
    finally:
        if snapshot:
            snapshot.close()

    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="dynamostate",
        description="Shared key/value application state on DynamoDB",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (YAML)",
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
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    get_parser = subparsers.add_parser("get", help="Print a key's value")
    get_parser.add_argument("key")
    get_parser.set_defaults(func=cmd_get)

    put_parser = subparsers.add_parser("put", help="Store a JSON value")
    put_parser.add_argument("key")
    put_parser.add_argument("value", help="JSON text, e.g. '\"hello\"' or '{\"a\": 1}'")
    put_parser.set_defaults(func=cmd_put)

    delete_parser = subparsers.add_parser("delete", help="Delete a key")
    delete_parser.add_argument("key")
    delete_parser.set_defaults(func=cmd_delete)

    keys_parser = subparsers.add_parser("keys", help="List stored keys")
    keys_parser.add_argument(
        "--values",
        action="store_true",
        help="Also fetch values",
    )
    keys_parser.set_defaults(func=cmd_keys)

    watch_parser = subparsers.add_parser("watch", help="Print changes as they happen")
    watch_parser.set_defaults(func=cmd_watch)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json)

    if not args.command:
        parser.print_help()
        return 1

    return asyncio.run(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
