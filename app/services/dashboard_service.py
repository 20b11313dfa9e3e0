"""
Dashboard Service

Read side of the analytics pipeline: agent work queues, stored agent metrics,
live counters, and listings from the metrics store. Results are cached under
the tags/keys that the aggregator clears after each run.
"""

from datetime import date, datetime, time, timedelta
from typing import Optional, Dict, Any, List
from sqlalchemy import select, func, and_, case
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.cache import MetricsCache
from app.models.metrics import AgentMetrics, ClientMetrics, SlaMetrics, TicketCategoryMetrics, TicketMetrics
from app.models.ticket import Ticket, TicketPriority, TicketStatus, FINISHED_STATUSES, OPEN_STATUSES
from app.services.business_hours import BusinessCalendar

logger = logging.getLogger(__name__)

DASHBOARD_TTL_SECONDS = 60
METRICS_TTL_SECONDS = 300

PRIORITY_ORDER = case(
    (Ticket.priority == TicketPriority.URGENT, 0),
    (Ticket.priority == TicketPriority.HIGH, 1),
    (Ticket.priority == TicketPriority.MEDIUM, 2),
    else_=3,
)


STATS_COMPARED_FIELDS = (
    "new_tickets",
    "open_tickets",
    "avg_response_business_hours",
    "avg_resolution_business_hours",
)


def percent_change(current: float, previous: float) -> float:
    """Change relative to the previous period; 0 when there is nothing to compare with."""
    if not previous:
        return 0.0
    return round((current - previous) / previous * 100, 1)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_row(row: Any, fields: List[str]) -> Dict[str, Any]:
    """Copy model columns into a cache-safe dict (dates as ISO strings)."""
    data = {}
    for name in fields:
        value = getattr(row, name)
        if isinstance(value, (date, datetime)):
            value = value.isoformat()
        data[name] = value
    return data


TICKET_METRICS_FIELDS = [
    "date", "total_tickets", "new_tickets", "open_tickets", "resolved_tickets",
    "closed_tickets", "avg_resolution_time", "avg_first_response_time",
    "urgent_tickets", "high_priority_tickets", "category_breakdown",
    "source_breakdown", "aggregated_at",
]
CATEGORY_METRICS_FIELDS = [
    "date", "category_id", "ticket_count", "avg_resolution_time",
    "avg_response_time", "aggregated_at",
]
AGENT_METRICS_FIELDS = [
    "agent_id", "period_start", "period_end", "tickets_assigned", "tickets_resolved",
    "tickets_closed", "avg_resolution_time", "avg_first_response_time",
    "fastest_response_time", "total_responses", "satisfaction_score",
    "total_ratings", "active_days", "performance_data", "aggregated_at",
]
CLIENT_METRICS_FIELDS = [
    "client_id", "period_start", "period_end", "total_tickets", "open_tickets",
    "resolved_tickets", "avg_resolution_time", "satisfaction_score",
    "total_feedback", "issue_categories", "aggregated_at",
]
SLA_METRICS_FIELDS = [
    "date", "total_tickets_with_sla", "sla_met_count", "sla_breached_count",
    "compliance_rate", "priority_breakdown", "breach_reasons", "aggregated_at",
]


class DashboardService:
    """Cached dashboard reads."""

    def __init__(self, db: AsyncSession, cache: MetricsCache):
        self.db = db
        self.cache = cache

    # ========================================================================
    # Agent views
    # ========================================================================

    async def agent_queue(self, agent_id: str) -> Dict[str, Any]:
        """Open tickets assigned to the agent, most urgent and oldest first."""

        async def load():
            result = await self.db.execute(
                select(Ticket)
                .where(
                    and_(
                        Ticket.assigned_agent_id == agent_id,
                        Ticket.status.notin_(FINISHED_STATUSES),
                        Ticket.is_archived == False
                    )
                )
                .order_by(PRIORITY_ORDER, Ticket.created_at.asc())
            )
            tickets = result.scalars().all()

            by_status: Dict[str, int] = {}
            for ticket in tickets:
                by_status[ticket.status.value] = by_status.get(ticket.status.value, 0) + 1

            return {
                "agent_id": agent_id,
                "total": len(tickets),
                "by_status": by_status,
                "tickets": [
                    {
                        "id": t.id,
                        "ticket_number": t.ticket_number,
                        "subject": t.subject,
                        "status": t.status.value,
                        "priority": t.priority.value,
                        "client_id": t.client_id,
                        "sla_deadline": _iso(t.sla_deadline),
                        "created_at": _iso(t.created_at),
                    }
                    for t in tickets
                ],
            }

        return await self.cache.remember(
            f"dashboard:agent_queue:{agent_id}", DASHBOARD_TTL_SECONDS, load, tags=("dashboard",)
        )

    async def agent_stats(self, agent_id: str, as_of: Optional[date] = None) -> Optional[Dict[str, Any]]:
        """Latest aggregated window for the agent ending on or before as_of."""
        as_of = as_of or datetime.utcnow().date()
        result = await self.db.execute(
            select(AgentMetrics)
            .where(and_(AgentMetrics.agent_id == agent_id, AgentMetrics.period_end <= as_of))
            .order_by(AgentMetrics.period_end.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return serialize_row(row, AGENT_METRICS_FIELDS)

    # ========================================================================
    # Real-time counters
    # ========================================================================

    async def _count(self, *conditions) -> int:
        result = await self.db.execute(
            select(func.count(Ticket.id)).where(and_(Ticket.is_archived == False, *conditions))
        )
        return result.scalar() or 0

    async def _avg_response_minutes(self) -> Optional[float]:
        since = datetime.utcnow() - timedelta(hours=24)
        result = await self.db.execute(
            select(Ticket.created_at, Ticket.first_response_at).where(
                and_(
                    Ticket.created_at >= since,
                    Ticket.first_response_at.isnot(None),
                    Ticket.is_archived == False
                )
            )
        )
        durations = [
            (row.first_response_at - row.created_at).total_seconds() / 60
            for row in result.all()
        ]
        if not durations:
            return None
        return round(sum(durations) / len(durations), 2)

    async def realtime_counters(self) -> Dict[str, Any]:
        now = datetime.utcnow()

        loaders = {
            "open_tickets": lambda: self._count(Ticket.status.notin_(FINISHED_STATUSES)),
            "unassigned_tickets": lambda: self._count(
                Ticket.assigned_agent_id.is_(None),
                Ticket.status.notin_(FINISHED_STATUSES)
            ),
            "overdue_tickets": lambda: self._count(
                Ticket.sla_deadline.isnot(None),
                Ticket.sla_deadline < now,
                Ticket.first_response_at.is_(None),
                Ticket.status.notin_(FINISHED_STATUSES)
            ),
            "avg_response_time": self._avg_response_minutes,
        }

        counters = {}
        for name, loader in loaders.items():
            key = f"realtime:{name}"
            value = await self.cache.get(key)
            if value is None:
                value = await loader()
                if value is not None:
                    await self.cache.set(key, value, ttl=DASHBOARD_TTL_SECONDS)
            counters[name] = value
        return counters

    # ========================================================================
    # Period stats
    # ========================================================================

    async def _window_times(self, column, start: datetime, end: datetime):
        result = await self.db.execute(
            select(Ticket.created_at, column).where(
                and_(
                    Ticket.created_at >= start,
                    Ticket.created_at < end,
                    column.isnot(None),
                    Ticket.is_archived == False
                )
            )
        )
        return result.all()

    async def _period(self, calendar: BusinessCalendar, start: datetime, end: datetime) -> Dict[str, Any]:
        responses = await self._window_times(Ticket.first_response_at, start, end)
        resolutions = await self._window_times(Ticket.resolved_at, start, end)

        def average_hours(rows, business: bool) -> float:
            if not rows:
                return 0.0
            if business:
                hours = [calendar.business_hours(created, done) for created, done in rows]
            else:
                hours = [(done - created).total_seconds() / 3600 for created, done in rows]
            return round(sum(hours) / len(hours), 1)

        return {
            "start": start.isoformat(),
            "end": end.isoformat(),
            "new_tickets": await self._count(Ticket.created_at >= start, Ticket.created_at < end),
            "open_tickets": await self._count(
                Ticket.created_at >= start,
                Ticket.created_at < end,
                Ticket.status.in_(OPEN_STATUSES)
            ),
            "avg_response_hours": average_hours(responses, business=False),
            "avg_response_business_hours": average_hours(responses, business=True),
            "avg_resolution_hours": average_hours(resolutions, business=False),
            "avg_resolution_business_hours": average_hours(resolutions, business=True),
        }

    async def stats(self, period_days: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Headline dashboard numbers: all-time status totals, today's activity,
        and the last period_days compared with the period before it.
        Response and resolution times are reported both as wall-clock hours
        and as business hours.
        """
        now = now or datetime.utcnow()

        async def load():
            calendar = BusinessCalendar.from_settings()
            today = datetime.combine(now.date(), time.min)
            current_start = now - timedelta(days=period_days)
            previous_start = current_start - timedelta(days=period_days)

            current = await self._period(calendar, current_start, now)
            previous = await self._period(calendar, previous_start, current_start)

            return {
                "totals": {
                    "total_tickets": await self._count(),
                    "open_tickets": await self._count(Ticket.status.in_(OPEN_STATUSES)),
                    "pending_tickets": await self._count(Ticket.status == TicketStatus.PENDING),
                    "resolved_tickets": await self._count(Ticket.status == TicketStatus.RESOLVED),
                },
                "today": {
                    "new_tickets": await self._count(Ticket.created_at >= today),
                    "resolved_tickets": await self._count(Ticket.resolved_at >= today),
                },
                "period_days": period_days,
                "current": current,
                "previous": previous,
                "change": {
                    name: percent_change(current[name], previous[name])
                    for name in STATS_COMPARED_FIELDS
                },
                "business_hours": {
                    "days": sorted(calendar.days),
                    "start": calendar.start.strftime("%H:%M"),
                    "end": calendar.end.strftime("%H:%M"),
                    "timezone": str(calendar.tz),
                },
            }

        return await self.cache.remember(
            f"dashboard:stats:{period_days}:{now.strftime('%Y-%m-%d-%H-%M')}",
            DASHBOARD_TTL_SECONDS, load, tags=("dashboard",)
        )

    # ========================================================================
    # Metrics store listings
    # ========================================================================

    async def _cached_listing(self, key: str, query, fields: List[str]) -> List[Dict[str, Any]]:
        async def load():
            result = await self.db.execute(query)
            return [serialize_row(row, fields) for row in result.scalars().all()]

        return await self.cache.remember(key, METRICS_TTL_SECONDS, load, tags=("metrics",))

    async def ticket_metrics(self, from_date: date, to_date: date) -> List[Dict[str, Any]]:
        query = (
            select(TicketMetrics)
            .where(and_(TicketMetrics.date >= from_date, TicketMetrics.date <= to_date))
            .order_by(TicketMetrics.date)
        )
        return await self._cached_listing(
            f"metrics:tickets:{from_date}:{to_date}", query, TICKET_METRICS_FIELDS
        )

    async def category_metrics(self, target_date: date) -> List[Dict[str, Any]]:
        query = (
            select(TicketCategoryMetrics)
            .where(TicketCategoryMetrics.date == target_date)
            .order_by(TicketCategoryMetrics.ticket_count.desc())
        )
        return await self._cached_listing(
            f"metrics:categories:{target_date}", query, CATEGORY_METRICS_FIELDS
        )

    async def sla_metrics(self, from_date: date, to_date: date) -> List[Dict[str, Any]]:
        query = (
            select(SlaMetrics)
            .where(and_(SlaMetrics.date >= from_date, SlaMetrics.date <= to_date))
            .order_by(SlaMetrics.date)
        )
        return await self._cached_listing(
            f"metrics:sla:{from_date}:{to_date}", query, SLA_METRICS_FIELDS
        )

    async def client_metrics(self, period_end: date) -> List[Dict[str, Any]]:
        query = (
            select(ClientMetrics)
            .where(ClientMetrics.period_end == period_end)
            .order_by(ClientMetrics.total_tickets.desc())
        )
        return await self._cached_listing(
            f"metrics:clients:{period_end}", query, CLIENT_METRICS_FIELDS
        )
