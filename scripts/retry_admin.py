from __future__ import annotations

import argparse
import asyncio
import json
import sys

from notifyrelay.core.logging import configure_logging
from notifyrelay.persistence.db import SessionLocal
from notifyrelay.services.retry_metrics import check_alert_thresholds, get_performance_metrics, get_retry_metrics
from notifyrelay.workers.retry_worker import build_orchestrator


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Operate the notification retry pipeline.")
    sub = parser.add_subparsers(dest="command", required=True)

    retry = sub.add_parser("retry", help="Manually retry a failed or dead-lettered notification")
    retry.add_argument("notification_id")

    sub.add_parser("run", help="Run one retry scan now")
    sub.add_parser("stats", help="Show retry statistics")

    metrics = sub.add_parser("metrics", help="Show retry metrics for a time window")
    metrics.add_argument("--hours", type=int, default=24)

    alerts = sub.add_parser("alerts", help="Evaluate alert thresholds over the last hour")
    alerts.add_argument("--failure-rate", type=float, default=None)
    alerts.add_argument("--retry-success-rate", type=float, default=None)
    alerts.add_argument("--dlq-entries", type=int, default=None)

    sub.add_parser("performance", help="Show retry timing and distribution")
    return parser


async def _run(args: argparse.Namespace) -> dict:
    orchestrator = build_orchestrator()
    try:
        if args.command == "retry":
            return await orchestrator.manual_retry(args.notification_id)
        if args.command == "run":
            report = await orchestrator.process_failed_notifications()
            return {
                "status": report.status,
                "found": report.found,
                "succeeded": report.succeeded,
                "failed": report.failed,
                "moved_to_dlq": report.moved_to_dlq,
                "skipped": report.skipped,
                "errors": report.errors,
            }
        if args.command == "stats":
            return await orchestrator.get_retry_statistics()
        async with SessionLocal() as session:
            if args.command == "metrics":
                return await get_retry_metrics(session, orchestrator.breakers, time_range_hours=args.hours)
            if args.command == "alerts":
                overrides = {
                    key: value
                    for key, value in (
                        ("failure_rate", args.failure_rate),
                        ("retry_success_rate", args.retry_success_rate),
                        ("dlq_entries", args.dlq_entries),
                    )
                    if value is not None
                }
                return await check_alert_thresholds(session, orchestrator.breakers, **overrides)
            return await get_performance_metrics(session)
    finally:
        await orchestrator.aclose()


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        result = asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface a single-line error to operators
        print(f"RETRY_ADMIN_ERROR: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
