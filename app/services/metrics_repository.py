"""
Metrics Repository

Data-access interface used by the aggregator: the grouped queries it needs
against the source tables, and upserts into the metrics store. The aggregator
only talks to this interface, so tests can substitute an in-memory fake.

Durations are computed from fetched timestamp pairs rather than with
dialect-specific date arithmetic, so the same queries run on SQLite and
PostgreSQL.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, func, and_, case, delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.metrics import (
    TicketMetrics,
    TicketCategoryMetrics,
    AgentMetrics,
    ClientMetrics,
    SlaMetrics,
)
from app.models.ticket import Ticket, TicketComment, TicketFeedback, TicketStatus, OPEN_STATUSES
from app.models.user import User, AGENT_ROLES

logger = logging.getLogger(__name__)

UNCATEGORIZED = "uncategorized"


# ============================================================================
# Plain result structs
# ============================================================================

@dataclass(frozen=True)
class DailyTicketStats:
    total: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    by_priority: Dict[str, int] = field(default_factory=dict)
    by_category: Dict[str, int] = field(default_factory=dict)
    by_source: Dict[str, int] = field(default_factory=dict)
    avg_resolution_seconds: Optional[float] = None
    avg_first_response_seconds: Optional[float] = None


@dataclass(frozen=True)
class CategoryStats:
    category_id: str
    ticket_count: int
    avg_resolution_seconds: Optional[float] = None
    avg_response_seconds: Optional[float] = None


@dataclass(frozen=True)
class HourlyStats:
    total_tickets: int = 0
    avg_response_minutes: Optional[float] = None


@dataclass(frozen=True)
class AgentStats:
    tickets_assigned: int = 0
    tickets_resolved: int = 0
    tickets_closed: int = 0
    avg_resolution_seconds: Optional[float] = None
    avg_first_response_seconds: Optional[float] = None
    fastest_response_seconds: Optional[float] = None
    total_responses: int = 0
    satisfaction_score: Optional[float] = None
    total_ratings: int = 0
    active_days: int = 0
    by_priority: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ClientStats:
    total_tickets: int = 0
    open_tickets: int = 0
    resolved_tickets: int = 0
    avg_resolution_seconds: Optional[float] = None
    satisfaction_score: Optional[float] = None
    total_feedback: int = 0
    issue_categories: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class SlaTicket:
    priority: str
    sla_deadline: datetime
    first_response_at: Optional[datetime] = None


# ============================================================================
# Helpers
# ============================================================================

def day_bounds(target_date: date) -> Tuple[datetime, datetime]:
    """Half-open [start, end) datetime range covering one calendar day."""
    start = datetime.combine(target_date, time.min)
    return start, start + timedelta(days=1)


def window_bounds(period_start: date, period_end: date) -> Tuple[datetime, datetime]:
    """Half-open range covering period_start through the whole of period_end."""
    return datetime.combine(period_start, time.min), datetime.combine(period_end, time.min) + timedelta(days=1)


def average_seconds(pairs: Iterable[Tuple[Optional[datetime], Optional[datetime]]]) -> Optional[float]:
    durations = [
        (end - start).total_seconds()
        for start, end in pairs
        if start is not None and end is not None
    ]
    if not durations:
        return None
    return round(sum(durations) / len(durations), 2)


def minimum_seconds(pairs: Iterable[Tuple[Optional[datetime], Optional[datetime]]]) -> Optional[float]:
    durations = [
        (end - start).total_seconds()
        for start, end in pairs
        if start is not None and end is not None
    ]
    return round(min(durations), 2) if durations else None


def _enum_value(value: Any) -> str:
    return value.value if hasattr(value, "value") else str(value)


# ============================================================================
# Interface
# ============================================================================

class MetricsRepository(ABC):
    """Queries and writes needed by the metrics aggregator."""

    # Source queries ---------------------------------------------------------

    @abstractmethod
    async def daily_ticket_stats(self, target_date: date) -> DailyTicketStats:
        pass

    @abstractmethod
    async def category_stats(self, target_date: date) -> List[CategoryStats]:
        pass

    @abstractmethod
    async def hourly_ticket_stats(self, start: datetime, end: datetime) -> HourlyStats:
        pass

    @abstractmethod
    async def active_agents(self) -> List[str]:
        pass

    @abstractmethod
    async def agent_stats(self, agent_id: str, period_start: date, period_end: date) -> AgentStats:
        pass

    @abstractmethod
    async def top_clients(self, period_start: date, period_end: date, limit: int) -> List[str]:
        pass

    @abstractmethod
    async def client_stats(self, client_id: str, period_start: date, period_end: date) -> ClientStats:
        pass

    @abstractmethod
    async def sla_tickets(self, target_date: date) -> List[SlaTicket]:
        pass

    # Metrics store upserts ----------------------------------------------------

    @abstractmethod
    async def upsert_ticket_metrics(self, target_date: date, values: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def clear_category_metrics(self, target_date: date) -> None:
        """Remove every per-category row of the date before it is recomputed."""

    @abstractmethod
    async def upsert_category_metrics(self, target_date: date, category_id: str, values: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def upsert_agent_metrics(
        self, agent_id: str, period_start: date, period_end: date, values: Dict[str, Any]
    ) -> None:
        pass

    @abstractmethod
    async def upsert_client_metrics(
        self, client_id: str, period_start: date, period_end: date, values: Dict[str, Any]
    ) -> None:
        pass

    @abstractmethod
    async def upsert_sla_metrics(self, target_date: date, values: Dict[str, Any]) -> None:
        pass

    # Transaction control ------------------------------------------------------

    @abstractmethod
    async def commit(self) -> None:
        pass

    @abstractmethod
    async def rollback(self) -> None:
        pass


# ============================================================================
# SQLAlchemy implementation
# ============================================================================

class SqlAlchemyMetricsRepository(MetricsRepository):
    """MetricsRepository backed by an AsyncSession."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _grouped_counts(self, column, *conditions) -> Dict[str, int]:
        result = await self.db.execute(
            select(column, func.count(Ticket.id))
            .where(and_(*conditions))
            .group_by(column)
        )
        return {
            (_enum_value(key) if key is not None else UNCATEGORIZED): count
            for key, count in result.all()
        }

    def _created_between(self, start: datetime, end: datetime) -> Sequence:
        return (
            Ticket.created_at >= start,
            Ticket.created_at < end,
            Ticket.is_archived == False,
        )

    async def daily_ticket_stats(self, target_date: date) -> DailyTicketStats:
        start, end = day_bounds(target_date)
        conditions = self._created_between(start, end)

        by_status = await self._grouped_counts(Ticket.status, *conditions)
        by_priority = await self._grouped_counts(Ticket.priority, *conditions)
        by_category = await self._grouped_counts(Ticket.category_id, *conditions)
        by_source = await self._grouped_counts(Ticket.source, *conditions)

        timing = await self.db.execute(
            select(Ticket.created_at, Ticket.resolved_at, Ticket.first_response_at)
            .where(and_(*conditions))
        )
        rows = timing.all()

        return DailyTicketStats(
            total=sum(by_status.values()),
            by_status=by_status,
            by_priority=by_priority,
            by_category=by_category,
            by_source=by_source,
            avg_resolution_seconds=average_seconds((r.created_at, r.resolved_at) for r in rows),
            avg_first_response_seconds=average_seconds((r.created_at, r.first_response_at) for r in rows),
        )

    async def category_stats(self, target_date: date) -> List[CategoryStats]:
        start, end = day_bounds(target_date)
        result = await self.db.execute(
            select(
                Ticket.category_id,
                Ticket.created_at,
                Ticket.resolved_at,
                Ticket.first_response_at
            )
            .where(and_(*self._created_between(start, end), Ticket.category_id.isnot(None)))
        )

        grouped: Dict[str, List[Any]] = {}
        for row in result.all():
            grouped.setdefault(row.category_id, []).append(row)

        return [
            CategoryStats(
                category_id=category_id,
                ticket_count=len(rows),
                avg_resolution_seconds=average_seconds((r.created_at, r.resolved_at) for r in rows),
                avg_response_seconds=average_seconds((r.created_at, r.first_response_at) for r in rows),
            )
            for category_id, rows in sorted(grouped.items())
        ]

    async def hourly_ticket_stats(self, start: datetime, end: datetime) -> HourlyStats:
        result = await self.db.execute(
            select(Ticket.created_at, Ticket.first_response_at)
            .where(and_(*self._created_between(start, end)))
        )
        rows = result.all()
        avg_seconds = average_seconds((r.created_at, r.first_response_at) for r in rows)
        return HourlyStats(
            total_tickets=len(rows),
            avg_response_minutes=round(avg_seconds / 60, 2) if avg_seconds is not None else None,
        )

    async def active_agents(self) -> List[str]:
        result = await self.db.execute(
            select(User.id)
            .where(and_(User.role.in_(AGENT_ROLES), User.is_active == True))
            .order_by(User.id)
        )
        return list(result.scalars().all())

    async def agent_stats(self, agent_id: str, period_start: date, period_end: date) -> AgentStats:
        start, end = window_bounds(period_start, period_end)
        conditions = (*self._created_between(start, end), Ticket.assigned_agent_id == agent_id)

        counts = await self.db.execute(
            select(
                func.count(Ticket.id),
                func.count(case((Ticket.status == TicketStatus.RESOLVED, 1))),
                func.count(case((Ticket.status == TicketStatus.CLOSED, 1))),
            ).where(and_(*conditions))
        )
        total_assigned, resolved, closed = counts.one()

        timing = await self.db.execute(
            select(Ticket.created_at, Ticket.resolved_at, Ticket.first_response_at)
            .where(and_(*conditions))
        )
        rows = timing.all()

        by_priority = await self._grouped_counts(Ticket.priority, *conditions)

        responses = await self.db.execute(
            select(func.count(TicketComment.id)).where(
                and_(
                    TicketComment.user_id == agent_id,
                    TicketComment.created_at >= start,
                    TicketComment.created_at < end,
                )
            )
        )

        satisfaction = await self.db.execute(
            select(func.avg(TicketFeedback.rating), func.count(TicketFeedback.id))
            .join(Ticket, Ticket.id == TicketFeedback.ticket_id)
            .where(
                and_(
                    Ticket.assigned_agent_id == agent_id,
                    TicketFeedback.created_at >= start,
                    TicketFeedback.created_at < end,
                )
            )
        )
        avg_rating, total_ratings = satisfaction.one()

        return AgentStats(
            tickets_assigned=total_assigned or 0,
            tickets_resolved=resolved or 0,
            tickets_closed=closed or 0,
            avg_resolution_seconds=average_seconds((r.created_at, r.resolved_at) for r in rows),
            avg_first_response_seconds=average_seconds((r.created_at, r.first_response_at) for r in rows),
            fastest_response_seconds=minimum_seconds((r.created_at, r.first_response_at) for r in rows),
            total_responses=responses.scalar() or 0,
            satisfaction_score=round(float(avg_rating), 2) if avg_rating is not None else None,
            total_ratings=total_ratings or 0,
            active_days=len({r.created_at.date() for r in rows}),
            by_priority=by_priority,
        )

    async def top_clients(self, period_start: date, period_end: date, limit: int) -> List[str]:
        start, end = window_bounds(period_start, period_end)
        ticket_count = func.count(Ticket.id).label("ticket_count")
        result = await self.db.execute(
            select(Ticket.client_id, ticket_count)
            .where(and_(*self._created_between(start, end), Ticket.client_id.isnot(None)))
            .group_by(Ticket.client_id)
            .order_by(ticket_count.desc(), Ticket.client_id)
            .limit(limit)
        )
        return [row.client_id for row in result.all()]

    async def client_stats(self, client_id: str, period_start: date, period_end: date) -> ClientStats:
        start, end = window_bounds(period_start, period_end)
        conditions = (*self._created_between(start, end), Ticket.client_id == client_id)

        counts = await self.db.execute(
            select(
                func.count(Ticket.id),
                func.count(case((Ticket.status.in_(OPEN_STATUSES), 1))),
                func.count(case((Ticket.status == TicketStatus.RESOLVED, 1))),
            ).where(and_(*conditions))
        )
        total, open_count, resolved = counts.one()

        timing = await self.db.execute(
            select(Ticket.created_at, Ticket.resolved_at).where(and_(*conditions))
        )

        satisfaction = await self.db.execute(
            select(func.avg(TicketFeedback.rating), func.count(TicketFeedback.id))
            .join(Ticket, Ticket.id == TicketFeedback.ticket_id)
            .where(
                and_(
                    Ticket.client_id == client_id,
                    TicketFeedback.created_at >= start,
                    TicketFeedback.created_at < end,
                )
            )
        )
        avg_rating, total_feedback = satisfaction.one()

        # Keyed like the daily category_breakdown: category id, or "uncategorized"
        issue_categories = await self._grouped_counts(Ticket.category_id, *conditions)

        return ClientStats(
            total_tickets=total or 0,
            open_tickets=open_count or 0,
            resolved_tickets=resolved or 0,
            avg_resolution_seconds=average_seconds(
                (r.created_at, r.resolved_at) for r in timing.all()
            ),
            satisfaction_score=round(float(avg_rating), 2) if avg_rating is not None else None,
            total_feedback=total_feedback or 0,
            issue_categories=issue_categories,
        )

    async def sla_tickets(self, target_date: date) -> List[SlaTicket]:
        start, end = day_bounds(target_date)
        result = await self.db.execute(
            select(Ticket.priority, Ticket.sla_deadline, Ticket.first_response_at)
            .where(and_(*self._created_between(start, end), Ticket.sla_deadline.isnot(None)))
        )
        return [
            SlaTicket(
                priority=_enum_value(row.priority),
                sla_deadline=row.sla_deadline,
                first_response_at=row.first_response_at,
            )
            for row in result.all()
        ]

    # ------------------------------------------------------------------
    # Upserts: look up by key, create when missing, overwrite every field
    # ------------------------------------------------------------------

    async def _upsert(self, model, key: Dict[str, Any], values: Dict[str, Any]):
        result = await self.db.execute(
            select(model).where(and_(*[getattr(model, k) == v for k, v in key.items()]))
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = model(**key)
            self.db.add(row)

        for name, value in values.items():
            setattr(row, name, value)
        row.aggregated_at = datetime.utcnow()

        await self.db.flush()
        return row

    async def upsert_ticket_metrics(self, target_date, values):
        await self._upsert(TicketMetrics, {"date": target_date}, values)

    async def clear_category_metrics(self, target_date):
        await self.db.execute(
            delete(TicketCategoryMetrics).where(TicketCategoryMetrics.date == target_date)
        )

    async def upsert_category_metrics(self, target_date, category_id, values):
        await self._upsert(
            TicketCategoryMetrics,
            {"date": target_date, "category_id": category_id},
            values
        )

    async def upsert_agent_metrics(self, agent_id, period_start, period_end, values):
        await self._upsert(
            AgentMetrics,
            {"agent_id": agent_id, "period_start": period_start, "period_end": period_end},
            values
        )

    async def upsert_client_metrics(self, client_id, period_start, period_end, values):
        await self._upsert(
            ClientMetrics,
            {"client_id": client_id, "period_start": period_start, "period_end": period_end},
            values
        )

    async def upsert_sla_metrics(self, target_date, values):
        await self._upsert(SlaMetrics, {"date": target_date}, values)

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()
