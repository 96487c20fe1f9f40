from __future__ import annotations

import argparse
import asyncio
from dataclasses import asdict
from datetime import datetime
import json
import sys

from notifyrelay.core.config import get_settings
from notifyrelay.core.logging import configure_logging
from notifyrelay.persistence.db import SessionLocal
from notifyrelay.services.dead_letter import (
    bulk_delete_dlq_entries,
    bulk_retry_dlq_entries,
    cleanup_old_entries,
    delete_dlq_entry,
    dlq_statistics,
    list_dlq_entries,
    retry_dlq_entry,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect and manage the notification dead letter queue.")
    sub = parser.add_subparsers(dest="command", required=True)

    listing = sub.add_parser("list", help="List DLQ entries, newest first")
    listing.add_argument("--page", type=int, default=1)
    listing.add_argument("--limit", type=int, default=50)
    listing.add_argument("--user", help="Filter by user id")
    listing.add_argument("--error-code", help="Filter by error code")
    listing.add_argument("--original-error-code", help="Filter by the provider error code recorded at quarantine")
    listing.add_argument("--from", dest="from_date", type=datetime.fromisoformat, help="ISO timestamp lower bound")
    listing.add_argument("--to", dest="to_date", type=datetime.fromisoformat, help="ISO timestamp upper bound")

    sub.add_parser("stats", help="Show DLQ statistics")

    for name, help_text in (("retry", "Reset entries to pending"), ("delete", "Delete entries")):
        action = sub.add_parser(name, help=help_text)
        action.add_argument("ids", nargs="+", help="Notification ids")

    cleanup = sub.add_parser("cleanup", help="Delete entries older than the retention window")
    cleanup.add_argument("--max-age-days", type=int, default=None)
    return parser


async def _run(args: argparse.Namespace) -> dict:
    async with SessionLocal() as session:
        if args.command == "list":
            page = await list_dlq_entries(
                session,
                page=args.page,
                limit=args.limit,
                user_id=args.user,
                error_code=args.error_code,
                original_error_code=args.original_error_code,
                from_date=args.from_date,
                to_date=args.to_date,
            )
            page["entries"] = [asdict(entry) for entry in page["entries"]]
            return page
        if args.command == "stats":
            return await dlq_statistics(session)
        if args.command == "retry":
            if len(args.ids) == 1:
                return asdict(await retry_dlq_entry(session, args.ids[0]))
            return asdict(await bulk_retry_dlq_entries(session, args.ids))
        if args.command == "delete":
            if len(args.ids) == 1:
                return asdict(await delete_dlq_entry(session, args.ids[0]))
            return asdict(await bulk_delete_dlq_entries(session, args.ids))
        max_age_days = args.max_age_days or get_settings().dlq_retention_days
        deleted = await cleanup_old_entries(session, max_age_days=max_age_days)
        return {"deleted": deleted, "max_age_days": max_age_days}


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        result = asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface a single-line error to operators
        print(f"DLQ_ADMIN_ERROR: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
