"""
Metrics Aggregation Jobs

Scheduled wrappers around MetricsAggregator with an explicit retry policy:
retryable failures and timeouts are retried up to `max_attempts`, each attempt
in a fresh database session.
"""

import asyncio
import logging
import time
from datetime import date, datetime, timedelta
from typing import Optional

from app.core.cache import get_cache
from app.core.config import settings
from app.core.database import AsyncSessionLocal
from app.core.result import Err, Result
from app.services.aggregation_service import MetricsAggregator
from app.services.metrics_repository import SqlAlchemyMetricsRepository
from app.services.metrics_service import metrics_collector

logger = logging.getLogger(__name__)

DAILY_METRIC_TYPES = ("daily", "sla", "agents", "clients")


async def _attempt(target_date: Optional[date], metric_type: str, session_factory) -> Result:
    async with session_factory() as db:
        aggregator = MetricsAggregator(SqlAlchemyMetricsRepository(db), get_cache())
        return await aggregator.aggregate(target_date, metric_type)


async def run_aggregation_job(
    target_date: Optional[date] = None,
    metric_type: str = "daily",
    max_attempts: int = None,
    timeout: float = None,
    session_factory=AsyncSessionLocal
) -> Result:
    """
    Aggregate one metric type, retrying transient failures.

    Returns the aggregator's Ok on success. A non-retryable Err is returned
    at once; otherwise the last Err is returned after `max_attempts`.
    """
    max_attempts = max_attempts or settings.AGGREGATION_MAX_ATTEMPTS
    timeout = timeout or settings.AGGREGATION_TIMEOUT_SECONDS

    result: Result = Err("Aggregation did not run", retryable=True)
    for attempt in range(1, max_attempts + 1):
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(_attempt(target_date, metric_type, session_factory), timeout=timeout)
        except asyncio.TimeoutError:
            result = Err(f"Aggregation timed out after {timeout}s", retryable=True)
        except Exception as e:
            logger.error(f"Aggregation attempt for {metric_type} crashed: {e}", exc_info=True)
            result = Err(str(e), retryable=True)

        duration = time.monotonic() - started
        if result.ok:
            metrics_collector.record_aggregation(metric_type, "success", duration)
            return result

        metrics_collector.record_aggregation(metric_type, "failure", duration)
        if not result.retryable:
            return result

        logger.warning(
            f"Aggregation attempt {attempt}/{max_attempts} for {metric_type} failed: {result.reason}"
        )
        if attempt < max_attempts:
            await asyncio.sleep(settings.AGGREGATION_RETRY_DELAY_SECONDS)

    logger.error(
        f"Metrics aggregation permanently failed for {metric_type}",
        extra={
            "metric_type": metric_type,
            "date": target_date.isoformat() if target_date else None,
            "attempts": max_attempts,
            "error": result.reason,
        }
    )
    return result


async def run_daily_metrics_job(target_date: Optional[date] = None) -> dict:
    """
    Aggregate yesterday's daily, SLA, agent and client metrics.

    Runs at 01:00 UTC. One failed type does not stop the others.
    """
    if target_date is None:
        target_date = datetime.utcnow().date() - timedelta(days=1)

    logger.info(f"Starting daily metrics job for date: {target_date}")

    results = {}
    for metric_type in DAILY_METRIC_TYPES:
        results[metric_type] = (await run_aggregation_job(target_date, metric_type)).to_dict()

    failures = [t for t, r in results.items() if not r["ok"]]
    summary = {
        "job_type": "daily_metrics",
        "target_date": target_date.isoformat(),
        "results": results,
        "failure_count": len(failures),
        "completed_at": datetime.utcnow().isoformat()
    }

    logger.info(
        f"Daily metrics job completed: {len(results) - len(failures)} success, {len(failures)} failures"
    )
    return summary


async def run_hourly_metrics_job() -> dict:
    """Refresh the cached figures for the previous hour (minute 5 of every hour)."""
    result = await run_aggregation_job(datetime.utcnow().date(), "hourly")
    return {
        "job_type": "hourly_metrics",
        **result.to_dict(),
        "completed_at": datetime.utcnow().isoformat()
    }
