"""
Metrics Aggregation Service

Recomputes roll-up rows in the metrics store from the live ticket tables:

- daily:   ticket volume for tickets created on the date, plus per-category rows
- hourly:  volume/response for the previous hour, kept in the cache only
- agents:  per-agent performance over a trailing window ending on the date
- clients: the busiest clients over the same window
- sla:     first-response compliance for tickets created on the date

Every row is a full recomputation for its key, so running the same
(date, type) twice leaves the same values behind.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, List, Optional

from app.core.cache import MetricsCache
from app.core.config import settings
from app.core.result import Ok, Err, Result
from app.models.ticket import TicketStatus, TicketPriority
from app.services.metrics_repository import MetricsRepository, SlaTicket

logger = logging.getLogger(__name__)

METRIC_TYPES = ("daily", "hourly", "agents", "clients", "sla")

CACHE_TAGS = ("metrics", "dashboard")
REALTIME_CACHE_KEYS = (
    "realtime:open_tickets",
    "realtime:unassigned_tickets",
    "realtime:overdue_tickets",
    "realtime:avg_response_time",
)


def hourly_cache_key(hour_start: datetime) -> str:
    return f"metrics:hourly:{hour_start.strftime('%Y-%m-%d-%H')}"


def compliance_rate(met: int, total: int) -> float:
    """Percentage of met SLAs; an empty day counts as fully compliant."""
    if total == 0:
        return 100.0
    return round(met / total * 100, 2)


class MetricsAggregator:
    """Runs one aggregation type for one date against an injected repository."""

    def __init__(
        self,
        repository: MetricsRepository,
        cache: MetricsCache,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.repository = repository
        self.cache = cache
        self.clock = clock

    async def aggregate(self, target_date: Optional[date] = None, metric_type: str = "daily") -> Result:
        """
        Aggregate one metric type for one date.

        Returns Ok({"metric_type", "date", "rows_written"}) on success. Any
        exception rolls the transaction back and yields a retryable Err; the
        cache is only cleared after a successful commit.
        """
        target_date = target_date or self.clock().date()

        handlers = {
            "daily": self._aggregate_daily,
            "hourly": self._aggregate_hourly,
            "agents": self._aggregate_agents,
            "clients": self._aggregate_clients,
            "sla": self._aggregate_sla,
        }
        handler = handlers.get(metric_type)
        if handler is None:
            logger.warning(f"Unknown metric type requested: {metric_type}")
            return Err(f"Unknown metric type: {metric_type}", retryable=False)

        try:
            rows_written = await handler(target_date)
            await self.repository.commit()
        except Exception as e:
            await self.repository.rollback()
            logger.error(
                f"Metrics aggregation failed for {metric_type} on {target_date}: {e}",
                exc_info=True,
                extra={"metric_type": metric_type, "date": target_date.isoformat()}
            )
            return Err(str(e), retryable=True)

        await self.clear_caches()

        logger.info(
            f"Metrics aggregation completed: {metric_type} on {target_date} ({rows_written} rows)",
            extra={"metric_type": metric_type, "date": target_date.isoformat()}
        )
        return Ok({
            "metric_type": metric_type,
            "date": target_date.isoformat(),
            "rows_written": rows_written,
        })

    async def clear_caches(self) -> None:
        await self.cache.flush_tags(CACHE_TAGS)
        for key in REALTIME_CACHE_KEYS:
            await self.cache.forget(key)

    # ========================================================================
    # Daily
    # ========================================================================

    async def _aggregate_daily(self, target_date: date) -> int:
        stats = await self.repository.daily_ticket_stats(target_date)

        await self.repository.upsert_ticket_metrics(target_date, {
            "total_tickets": stats.total,
            "new_tickets": stats.by_status.get(TicketStatus.NEW.value, 0),
            "open_tickets": stats.by_status.get(TicketStatus.OPEN.value, 0),
            "resolved_tickets": stats.by_status.get(TicketStatus.RESOLVED.value, 0),
            "closed_tickets": stats.by_status.get(TicketStatus.CLOSED.value, 0),
            "avg_resolution_time": stats.avg_resolution_seconds,
            "avg_first_response_time": stats.avg_first_response_seconds,
            "urgent_tickets": stats.by_priority.get(TicketPriority.URGENT.value, 0),
            "high_priority_tickets": stats.by_priority.get(TicketPriority.HIGH.value, 0),
            "category_breakdown": dict(stats.by_category),
            "source_breakdown": dict(stats.by_source),
        })
        rows = 1

        await self.repository.clear_category_metrics(target_date)
        for category in await self.repository.category_stats(target_date):
            await self.repository.upsert_category_metrics(target_date, category.category_id, {
                "ticket_count": category.ticket_count,
                "avg_resolution_time": category.avg_resolution_seconds,
                "avg_response_time": category.avg_response_seconds,
            })
            rows += 1

        return rows

    # ========================================================================
    # Hourly (cache only)
    # ========================================================================

    def _hour_window(self, target_date: date):
        now = self.clock()
        if target_date >= now.date():
            hour_end = now.replace(minute=0, second=0, microsecond=0)
        else:
            hour_end = datetime.combine(target_date + timedelta(days=1), time.min)
        return hour_end - timedelta(hours=1), hour_end

    async def _aggregate_hourly(self, target_date: date) -> int:
        hour_start, hour_end = self._hour_window(target_date)
        stats = await self.repository.hourly_ticket_stats(hour_start, hour_end)

        await self.cache.set(
            hourly_cache_key(hour_start),
            {
                "total_tickets": stats.total_tickets,
                "avg_response_minutes": stats.avg_response_minutes,
            },
            ttl=settings.HOURLY_METRICS_TTL_SECONDS,
        )
        return 0

    # ========================================================================
    # Agents / clients (trailing window)
    # ========================================================================

    def _window(self, target_date: date):
        return target_date - timedelta(days=settings.AGENT_METRICS_WINDOW_DAYS), target_date

    async def _aggregate_agents(self, target_date: date) -> int:
        period_start, period_end = self._window(target_date)
        rows = 0

        for agent_id in await self.repository.active_agents():
            stats = await self.repository.agent_stats(agent_id, period_start, period_end)
            resolution_rate = (
                round(stats.tickets_resolved / stats.tickets_assigned * 100, 2)
                if stats.tickets_assigned else 0.0
            )
            await self.repository.upsert_agent_metrics(agent_id, period_start, period_end, {
                "tickets_assigned": stats.tickets_assigned,
                "tickets_resolved": stats.tickets_resolved,
                "tickets_closed": stats.tickets_closed,
                "avg_resolution_time": stats.avg_resolution_seconds,
                "avg_first_response_time": stats.avg_first_response_seconds,
                "fastest_response_time": stats.fastest_response_seconds,
                "total_responses": stats.total_responses,
                "satisfaction_score": stats.satisfaction_score,
                "total_ratings": stats.total_ratings,
                "active_days": stats.active_days,
                "performance_data": {
                    "resolution_rate": resolution_rate,
                    "by_priority": dict(stats.by_priority),
                },
            })
            rows += 1

        return rows

    async def _aggregate_clients(self, target_date: date) -> int:
        period_start, period_end = self._window(target_date)
        rows = 0

        client_ids = await self.repository.top_clients(
            period_start, period_end, settings.CLIENT_METRICS_LIMIT
        )
        for client_id in client_ids:
            stats = await self.repository.client_stats(client_id, period_start, period_end)
            await self.repository.upsert_client_metrics(client_id, period_start, period_end, {
                "total_tickets": stats.total_tickets,
                "open_tickets": stats.open_tickets,
                "resolved_tickets": stats.resolved_tickets,
                "avg_resolution_time": stats.avg_resolution_seconds,
                "satisfaction_score": stats.satisfaction_score,
                "total_feedback": stats.total_feedback,
                "issue_categories": dict(stats.issue_categories),
            })
            rows += 1

        return rows

    # ========================================================================
    # SLA
    # ========================================================================

    def summarize_sla(self, tickets: List[SlaTicket]) -> Dict[str, Any]:
        """Classify each ticket as met, breached, or still inside its deadline."""
        now = self.clock()
        met = breached = 0
        breach_reasons = {"no_response": 0, "late_response": 0}
        by_priority: Dict[str, Dict[str, int]] = {}

        for ticket in tickets:
            bucket = by_priority.setdefault(ticket.priority, {"total": 0, "met": 0})
            bucket["total"] += 1

            if ticket.first_response_at is not None:
                if ticket.first_response_at <= ticket.sla_deadline:
                    met += 1
                    bucket["met"] += 1
                else:
                    breached += 1
                    breach_reasons["late_response"] += 1
            elif now > ticket.sla_deadline:
                breached += 1
                breach_reasons["no_response"] += 1

        priority_breakdown = {
            priority: {
                "total": bucket["total"],
                "met": bucket["met"],
                "compliance": compliance_rate(bucket["met"], bucket["total"]),
            }
            for priority, bucket in sorted(by_priority.items())
        }

        return {
            "total_tickets_with_sla": len(tickets),
            "sla_met_count": met,
            "sla_breached_count": breached,
            "compliance_rate": compliance_rate(met, len(tickets)),
            "priority_breakdown": priority_breakdown,
            "breach_reasons": breach_reasons,
        }

    async def _aggregate_sla(self, target_date: date) -> int:
        tickets = await self.repository.sla_tickets(target_date)
        await self.repository.upsert_sla_metrics(target_date, self.summarize_sla(tickets))
        return 1
