from __future__ import annotations

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from notifyrelay.core.config import get_settings
from notifyrelay.core.logging import configure_logging
from notifyrelay.persistence.db import SessionLocal
from notifyrelay.providers.delivery.factory import get_delivery_provider
from notifyrelay.services.dead_letter import cleanup_old_entries
from notifyrelay.services.resilience import CircuitBreakerRegistry
from notifyrelay.services.retry_orchestrator import RetryOrchestrator, RetryRunReport

logger = logging.getLogger(__name__)


def build_orchestrator(breakers: CircuitBreakerRegistry | None = None) -> RetryOrchestrator:
    # Composition root: one breaker registry and provider per worker process.
    return RetryOrchestrator(
        session_factory=SessionLocal,
        provider=get_delivery_provider(),
        breakers=breakers or CircuitBreakerRegistry(),
    )


async def retry_failed_notifications(ctx) -> dict:
    # Cron entrypoint for the scheduled retry scan.
    orchestrator: RetryOrchestrator = ctx["orchestrator"]
    report = await orchestrator.process_failed_notifications()
    return {
        "status": report.status,
        "found": report.found,
        "succeeded": report.succeeded,
        "failed": report.failed,
        "moved_to_dlq": report.moved_to_dlq,
        "errors": len(report.errors),
    }


async def cleanup_dead_letters(ctx) -> int:
    # Daily DLQ retention sweep.
    settings = get_settings()
    async with SessionLocal() as session:
        return await cleanup_old_entries(session, max_age_days=settings.dlq_retention_days)


async def run_retry_loop(orchestrator: RetryOrchestrator | None = None) -> None:
    # Standalone scheduler for deployments without Redis; one scan per interval.
    settings = get_settings()
    orchestrator = orchestrator or build_orchestrator()
    interval_s = max(1, int(settings.retry_interval_minutes)) * 60
    while True:
        report: RetryRunReport = await orchestrator.process_failed_notifications()
        logger.info("retry_loop_tick status=%s found=%s", report.status, report.found)
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["orchestrator"] = build_orchestrator()


async def _shutdown(ctx) -> None:
    # Close the provider's HTTP client so the worker exits cleanly.
    orchestrator = ctx.get("orchestrator")
    if orchestrator is not None:
        await orchestrator.aclose()


def _retry_minutes(interval: int) -> set[int]:
    interval = max(1, min(int(interval), 60))
    return set(range(0, 60, interval))


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.worker_queue_name
    functions = [retry_failed_notifications, cleanup_dead_letters]
    cron_jobs = [
        cron(retry_failed_notifications, minute=_retry_minutes(settings.retry_interval_minutes)),
        cron(cleanup_dead_letters, hour={settings.dlq_cleanup_hour}, minute={0}),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
