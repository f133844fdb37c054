"""Console entry point for inspecting and draining the offline queue."""
from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from core.settings import API, APP_NAME, SYNC, SYNC_LOG_PATH
from datetime_utils import to_rfc3339_utc
from services.connectivity import ConnectivityMonitor
from services.dispatcher import OperationDispatcher
from services.offline_actions import OfflineActions
from services.retry_policy import RetryPolicy
from services.sync_manager import SyncManager
from services.transport import HttpxTransport
from storage.db import init_db
from storage.queue_store import SQLQueueStore
from storage.sync_log import SyncLogStore


@dataclass
class AppContext:
    transport: HttpxTransport
    manager: SyncManager
    connectivity: ConnectivityMonitor
    actions: OfflineActions
    sync_log: SyncLogStore

    async def aclose(self) -> None:
        await self.connectivity.close()
        await self.transport.aclose()


def build_context(base_url: Optional[str] = None) -> AppContext:
    """Wire the offline queue services against the local database."""

    init_db()
    transport = HttpxTransport(base_url=base_url or API.base_url)
    dispatcher = OperationDispatcher(transport)
    policy = RetryPolicy.from_settings(SYNC)
    manager = SyncManager(SQLQueueStore(), dispatcher, policy=policy)
    manager.restore_from_store()
    sync_log = SyncLogStore()
    connectivity = ConnectivityMonitor(manager, transport, policy=policy, sync_log=sync_log)
    actions = OfflineActions(manager, connectivity, dispatcher)
    return AppContext(transport, manager, connectivity, actions, sync_log)


def _print_queue(manager: SyncManager) -> None:
    items = manager.get_queue_items()
    if not items:
        print("Queue is empty.")
        return
    for op in items:
        print(
            f"{op.id}  {op.type.value:<12} {op.status.value:<8} "
            f"attempts={op.attempts}  created={to_rfc3339_utc(op.created_at)}"
            + (f"  error={op.last_error}" if op.last_error else "")
        )


async def _run(args: argparse.Namespace) -> int:
    context = build_context(args.base_url)
    manager = context.manager
    try:
        if args.command == "status":
            status = manager.status()
            print(f"status={status['status']} queued={status['queueSize']} failed={status['failed']}")
        elif args.command == "list":
            _print_queue(manager)
        elif args.command == "sync":
            result = await manager.process_queue(include_exhausted=args.all)
            context.sync_log.add(
                "manual_sync",
                "completed",
                operation_count=result.processed,
                succeeded=result.succeeded,
                failed=result.failed,
            )
            print(
                f"processed={result.processed} succeeded={result.succeeded} "
                f"failed={result.failed} skipped={result.skipped}"
            )
        elif args.command == "retry":
            manager.retry_operation(args.operation_id)
            print(f"Operation {args.operation_id} will be retried on the next sync.")
        elif args.command == "remove":
            manager.remove_operation(args.operation_id)
            print(f"Operation {args.operation_id} removed.")
        elif args.command == "clear":
            count = manager.clear_queue()
            print(f"Cleared {count} operations.")
        elif args.command == "log":
            for entry in context.sync_log.recent(args.limit):
                print(
                    f"{to_rfc3339_utc(entry.created_at)}  {entry.action:<10} {entry.status:<9} "
                    f"succeeded={entry.succeeded} failed={entry.failed}"
                    + (f"  error={entry.error}" if entry.error else "")
                )
    finally:
        await context.aclose()
    return 0


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=f"{APP_NAME} offline queue (log: {SYNC_LOG_PATH})")
    parser.add_argument("--base-url", default=None, help="Backend URL (default: %s)" % API.base_url)
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show queue size and sync status")
    sub.add_parser("list", help="List queued operations")
    sync = sub.add_parser("sync", help="Send queued operations to the backend")
    sync.add_argument("--all", action="store_true", help="Include operations that stopped retrying")
    retry = sub.add_parser("retry", help="Reset the retry budget of one operation")
    retry.add_argument("operation_id")
    remove = sub.add_parser("remove", help="Drop one operation from the queue")
    remove.add_argument("operation_id")
    sub.add_parser("clear", help="Drop every queued operation")
    log = sub.add_parser("log", help="Show recent sync log entries")
    log.add_argument("--limit", type=int, default=20)

    args = parser.parse_args(argv)
    _setup_logging(args.verbose)
    try:
        return asyncio.run(_run(args))
    except ValueError as exc:
        parser.exit(2, f"error: {exc}\n")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
