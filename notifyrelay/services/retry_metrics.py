from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from notifyrelay.core.config import get_settings
from notifyrelay.domain.models import STATUS_DLQ, STATUS_FAILED, STATUS_SENT, UserNotification, utc_now
from notifyrelay.persistence.repos.notifications import count_by, count_notifications
from notifyrelay.services.resilience import CircuitBreakerRegistry
from notifyrelay.services.telemetry import counters_snapshot, external_latency_by_integration, gauges_snapshot


logger = logging.getLogger(__name__)

SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"
SEVERITY_CRITICAL = "critical"

ALERT_HIGH_FAILURE_RATE = "HIGH_FAILURE_RATE"
ALERT_LOW_RETRY_SUCCESS_RATE = "LOW_RETRY_SUCCESS_RATE"
ALERT_HIGH_DLQ_ENTRIES = "HIGH_DLQ_ENTRIES"
ALERT_CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"


@dataclass(frozen=True)
class AlertThresholds:
    failure_rate: float = 5.0
    retry_success_rate: float = 80.0
    dlq_entries: int = 100
    circuit_breaker_open: int = 1


def thresholds_from_settings() -> AlertThresholds:
    settings = get_settings()
    return AlertThresholds(
        failure_rate=settings.alert_failure_rate_pct,
        retry_success_rate=settings.alert_retry_success_rate_pct,
        dlq_entries=settings.alert_dlq_entries,
        circuit_breaker_open=settings.alert_circuit_open_count,
    )


def severity_for(value: float, threshold: float) -> str:
    # Escalate with how far the value overshoots its threshold.
    if threshold <= 0:
        return SEVERITY_CRITICAL
    ratio = value / threshold
    if ratio >= 3:
        return SEVERITY_CRITICAL
    if ratio >= 2:
        return SEVERITY_HIGH
    if ratio >= 1.5:
        return SEVERITY_MEDIUM
    return SEVERITY_LOW


def _pct(part: int, whole: int) -> float:
    return round((part / whole) * 100.0, 2) if whole else 0.0


async def _hourly_stats(session: AsyncSession, since: datetime) -> list[dict[str, Any]]:
    # Bucket in Python so the hour format does not depend on the SQL dialect.
    rows = (
        await session.execute(
            select(UserNotification.created_at, UserNotification.status, UserNotification.retry_count)
            .where(UserNotification.created_at >= since)
            .order_by(UserNotification.created_at)
        )
    ).all()
    buckets: OrderedDict[str, dict[str, Any]] = OrderedDict()
    for created_at, status, retry_count in rows:
        hour = created_at.strftime("%Y-%m-%d %H:00")
        bucket = buckets.setdefault(hour, {"hour": hour, "total": 0, "failed": 0, "retried": 0, "success": 0})
        bucket["total"] += 1
        if status == STATUS_FAILED:
            bucket["failed"] += 1
        if (retry_count or 0) > 0:
            bucket["retried"] += 1
        if status == STATUS_SENT:
            bucket["success"] += 1
    return list(buckets.values())


async def get_retry_metrics(
    session: AsyncSession,
    breakers: CircuitBreakerRegistry,
    *,
    time_range_hours: int = 24,
) -> dict[str, Any]:
    since = utc_now() - timedelta(hours=time_range_hours)
    total = await count_notifications(session, UserNotification.created_at >= since)
    failed = await count_notifications(
        session,
        UserNotification.status == STATUS_FAILED,
        UserNotification.updated_at >= since,
    )
    retry_attempts = await count_notifications(
        session,
        UserNotification.retry_count > 0,
        UserNotification.updated_at >= since,
    )
    successful_retries = await count_notifications(
        session,
        UserNotification.status == STATUS_SENT,
        UserNotification.retry_count > 0,
        UserNotification.sent_at >= since,
    )
    dlq_entries = await count_notifications(session, UserNotification.status == STATUS_DLQ)
    error_codes = await count_by(
        session,
        UserNotification.error_code,
        UserNotification.status == STATUS_FAILED,
        UserNotification.updated_at >= since,
        UserNotification.error_code.is_not(None),
    )
    return {
        "total_notifications": total,
        "failed_notifications": failed,
        "retry_attempts": retry_attempts,
        "successful_retries": successful_retries,
        "dlq_entries": dlq_entries,
        "failure_rate": _pct(failed, total),
        "retry_success_rate": _pct(successful_retries, retry_attempts),
        "circuit_breakers": breakers.all_metrics(),
        "error_classifications": {code: count for code, count in error_codes},
        "hourly_stats": await _hourly_stats(session, since),
        "telemetry": {
            "counters": counters_snapshot(),
            "gauges": gauges_snapshot(),
            "external_calls": external_latency_by_integration(time_range_hours * 3600),
        },
    }


async def check_alert_thresholds(
    session: AsyncSession,
    breakers: CircuitBreakerRegistry,
    thresholds: AlertThresholds | None = None,
    **overrides: Any,
) -> dict[str, Any]:
    """Evaluate the last hour of delivery health against alert thresholds.

    Returns ``{"alerts": [...], "should_alert": bool}`` where every alert
    carries type, message, severity, current_value and threshold. An open
    circuit is always critical.
    """
    limits = thresholds or thresholds_from_settings()
    if overrides:
        limits = replace(limits, **overrides)
    metrics = await get_retry_metrics(session, breakers, time_range_hours=1)
    alerts: list[dict[str, Any]] = []

    failure_rate = metrics["failure_rate"]
    if failure_rate > limits.failure_rate:
        alerts.append(
            {
                "type": ALERT_HIGH_FAILURE_RATE,
                "message": (
                    f"Notification failure rate is {failure_rate}%, "
                    f"exceeding threshold of {limits.failure_rate}%"
                ),
                "severity": severity_for(failure_rate, limits.failure_rate),
                "current_value": failure_rate,
                "threshold": limits.failure_rate,
            }
        )

    retry_success_rate = metrics["retry_success_rate"]
    # No retries in the window means there is no success rate to judge.
    if metrics["retry_attempts"] > 0 and retry_success_rate < limits.retry_success_rate:
        alerts.append(
            {
                "type": ALERT_LOW_RETRY_SUCCESS_RATE,
                "message": (
                    f"Retry success rate is {retry_success_rate}%, "
                    f"below threshold of {limits.retry_success_rate}%"
                ),
                # Shortfall measured in tenths of the threshold.
                "severity": severity_for(
                    limits.retry_success_rate - retry_success_rate,
                    limits.retry_success_rate * 0.1,
                ),
                "current_value": retry_success_rate,
                "threshold": limits.retry_success_rate,
            }
        )

    dlq_entries = metrics["dlq_entries"]
    if dlq_entries > limits.dlq_entries:
        alerts.append(
            {
                "type": ALERT_HIGH_DLQ_ENTRIES,
                "message": (
                    f"Dead Letter Queue has {dlq_entries} entries, "
                    f"exceeding threshold of {limits.dlq_entries}"
                ),
                "severity": severity_for(dlq_entries, limits.dlq_entries),
                "current_value": dlq_entries,
                "threshold": limits.dlq_entries,
            }
        )

    open_circuits = sum(1 for circuit in metrics["circuit_breakers"].values() if circuit and circuit["is_open"])
    if open_circuits >= limits.circuit_breaker_open:
        alerts.append(
            {
                "type": ALERT_CIRCUIT_BREAKER_OPEN,
                "message": f"{open_circuits} circuit breaker(s) are open",
                "severity": SEVERITY_CRITICAL,
                "current_value": open_circuits,
                "threshold": limits.circuit_breaker_open,
            }
        )

    if alerts:
        logger.warning("retry_alerts_triggered count=%s types=%s", len(alerts), ",".join(a["type"] for a in alerts))
    return {"alerts": alerts, "should_alert": bool(alerts)}


async def get_performance_metrics(session: AsyncSession) -> dict[str, Any]:
    # Average retry time is created_at to sent_at over up to 1000 retried sends.
    rows = (
        await session.execute(
            select(UserNotification.created_at, UserNotification.sent_at)
            .where(UserNotification.retry_count > 0, UserNotification.sent_at.is_not(None))
            .limit(1000)
        )
    ).all()
    average_retry_time = 0
    if rows:
        total_s = sum((sent_at - created_at).total_seconds() for created_at, sent_at in rows)
        average_retry_time = round(total_s / len(rows))

    distribution = await count_by(session, UserNotification.retry_count, UserNotification.retry_count > 0)
    retry_distribution = {
        f"attempt_{attempt}": count for attempt, count in sorted(distribution, key=lambda item: item[0])
    }

    since = utc_now() - timedelta(days=7)
    trend_rows = (
        await session.execute(
            select(UserNotification.updated_at, UserNotification.status, UserNotification.retry_count)
            .where(UserNotification.updated_at >= since)
            .order_by(UserNotification.updated_at)
        )
    ).all()
    trends: OrderedDict[str, dict[str, Any]] = OrderedDict()
    for updated_at, status, retry_count in trend_rows:
        day = updated_at.strftime("%Y-%m-%d")
        bucket = trends.setdefault(day, {"date": day, "errors": 0, "retries": 0})
        if status == STATUS_FAILED:
            bucket["errors"] += 1
        if (retry_count or 0) > 0:
            bucket["retries"] += 1

    return {
        "average_retry_time": average_retry_time,
        "retry_distribution": retry_distribution,
        "error_trends": list(trends.values()),
    }
