"""Operator CLI for the identity sync backend.

Usage:
  # Recent sync records, optionally only failures
  python admin.py sync-status --limit 20 --failed

  # Aggregate counts and open dead-letter items
  python admin.py sync-stats

  # History of one entity
  python admin.py entity-history --type user --id user_01H...

  # Dead-letter queue
  python admin.py dlq-list --include-resolved
  python admin.py dlq-retry --item-id 3f1c...
  python admin.py dlq-retry-all
  python admin.py dlq-resolve --item-id 3f1c...

  # Account deletion eligibility
  python admin.py can-delete --user-id user_01H...

  # Events API
  python admin.py init-cursor --range-start 2026-01-01T00:00:00Z
  python admin.py poll-events
  python admin.py cleanup-events

  # HTTP server
  python admin.py serve --port 8000
"""
import argparse
import asyncio
import json
import logging
import sys
from uuid import UUID

from dateutil import parser as date_parser

from db.connection import dispose_engine, get_db
from services import account_deletion, dead_letter, event_processing, sync_status
from services.workflows import get_runner

logger = logging.getLogger(__name__)


def _print(value) -> None:
    if isinstance(value, list):
        value = [v.model_dump(by_alias=True, mode="json") for v in value]
    elif hasattr(value, "model_dump"):
        value = value.model_dump(by_alias=True, mode="json")
    print(json.dumps(value, indent=2, default=str))


async def _run(args: argparse.Namespace) -> int:
    """Execute one subcommand. Workflows started along the way finish before exit."""
    try:
        if args.command == "sync-status":
            async with get_db() as session:
                if args.failed:
                    rows = await sync_status.get_failed_syncs(session, args.limit)
                elif args.pending:
                    rows = await sync_status.get_pending_syncs(session, args.limit)
                else:
                    rows = await sync_status.get_sync_status(session, args.limit)
            _print(rows)

        elif args.command == "sync-stats":
            async with get_db() as session:
                _print(await sync_status.get_sync_stats(session))

        elif args.command == "entity-history":
            async with get_db() as session:
                _print(await sync_status.get_entity_history(session, args.type, args.id, args.limit))

        elif args.command == "dlq-list":
            async with get_db() as session:
                _print(await dead_letter.get_dead_letter_queue(
                    session, args.limit, include_resolved=args.include_resolved
                ))

        elif args.command == "dlq-retry":
            async with get_db() as session:
                result = await dead_letter.retry_dead_letter_item(session, UUID(args.item_id))
            _print(result)
            if not result.success:
                return 1

        elif args.command == "dlq-retry-all":
            async with get_db() as session:
                _print(await dead_letter.retry_all_dead_letter_items(session))

        elif args.command == "dlq-resolve":
            async with get_db() as session:
                result = await dead_letter.resolve_dead_letter_item(session, UUID(args.item_id))
            _print(result)
            if not result.success:
                return 1

        elif args.command == "can-delete":
            async with get_db() as session:
                _print(await account_deletion.can_delete_account_check(session, args.user_id))

        elif args.command == "init-cursor":
            range_start = date_parser.isoparse(args.range_start) if args.range_start else None
            _print(await event_processing.initialize_cursor(range_start))

        elif args.command == "poll-events":
            result = await event_processing.poll_events()
            _print(result)
            if any(e.startswith("Fatal:") for e in result.errors):
                return 1

        elif args.command == "cleanup-events":
            _print({"deleted": await event_processing.cleanup_old_processed_events()})

        await get_runner().drain()
        return 0
    finally:
        await dispose_engine()


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Identity sync backend administration")
    sub = parser.add_subparsers(dest="command")

    status = sub.add_parser("sync-status", help="List recent sync records")
    status.add_argument("--limit", type=int, default=100)
    group = status.add_mutually_exclusive_group()
    group.add_argument("--failed", action="store_true", help="Only failed syncs")
    group.add_argument("--pending", action="store_true", help="Only pending syncs")

    sub.add_parser("sync-stats", help="Aggregate sync counts and open dead-letter items")

    history = sub.add_parser("entity-history", help="Sync history of a single entity")
    history.add_argument("--type", required=True, choices=["user", "organization"])
    history.add_argument("--id", required=True, help="Identity-provider id of the entity")
    history.add_argument("--limit", type=int, default=50)

    dlq_list = sub.add_parser("dlq-list", help="List dead-letter items")
    dlq_list.add_argument("--limit", type=int, default=50)
    dlq_list.add_argument("--include-resolved", action="store_true", default=False)

    dlq_retry = sub.add_parser("dlq-retry", help="Retry one dead-letter item")
    dlq_retry.add_argument("--item-id", required=True)

    sub.add_parser("dlq-retry-all", help="Retry every open retryable dead-letter item")

    dlq_resolve = sub.add_parser("dlq-resolve", help="Mark a dead-letter item resolved")
    dlq_resolve.add_argument("--item-id", required=True)

    can_delete = sub.add_parser("can-delete", help="Check whether a user account can be deleted")
    can_delete.add_argument("--user-id", required=True, help="Identity-provider user id")

    init_cursor = sub.add_parser("init-cursor", help="Reset the Events API polling cursor")
    init_cursor.add_argument(
        "--range-start", default=None, help="ISO 8601 timestamp to start from (default: all events)"
    )

    sub.add_parser("poll-events", help="Fetch and apply the next page of identity events")
    sub.add_parser("cleanup-events", help="Delete processed-event rows past retention")

    serve = sub.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    return parser


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    parser = _build_arg_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        import uvicorn

        uvicorn.run("server:app", host=args.host, port=args.port)
    else:
        sys.exit(asyncio.run(_run(args)))
