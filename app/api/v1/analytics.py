from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from datetime import date, datetime, timedelta
import logging

from app.api.deps import Actor, get_actor, get_metrics_cache, get_session_factory
from app.core.cache import MetricsCache
from app.core.database import get_db
from app.jobs.aggregation_jobs import run_aggregation_job
from app.models.user import UserRole
from app.schemas.common import envelope
from app.schemas.metrics import AggregateRequest
from app.services.dashboard_service import DashboardService

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_RANGE_DAYS = 30


def _date_range(from_date: Optional[date], to_date: Optional[date]):
    to_date = to_date or datetime.utcnow().date()
    from_date = from_date or to_date - timedelta(days=DEFAULT_RANGE_DAYS)
    if from_date > to_date:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="from_date must not be after to_date"
        )
    return from_date, to_date


@router.get("/ticket-metrics")
async def get_ticket_metrics(
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    cache: MetricsCache = Depends(get_metrics_cache)
):
    from_date, to_date = _date_range(from_date, to_date)
    rows = await DashboardService(db, cache).ticket_metrics(from_date, to_date)
    return envelope(rows, meta={"from_date": from_date.isoformat(), "to_date": to_date.isoformat()})


@router.get("/category-metrics")
async def get_category_metrics(
    date: Optional[date] = Query(None),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    cache: MetricsCache = Depends(get_metrics_cache)
):
    target_date = date or datetime.utcnow().date()
    return envelope(await DashboardService(db, cache).category_metrics(target_date))


@router.get("/sla-metrics")
async def get_sla_metrics(
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    cache: MetricsCache = Depends(get_metrics_cache)
):
    from_date, to_date = _date_range(from_date, to_date)
    rows = await DashboardService(db, cache).sla_metrics(from_date, to_date)
    return envelope(rows, meta={"from_date": from_date.isoformat(), "to_date": to_date.isoformat()})


@router.get("/client-metrics")
async def get_client_metrics(
    period_end: Optional[date] = Query(None),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    cache: MetricsCache = Depends(get_metrics_cache)
):
    period_end = period_end or datetime.utcnow().date()
    return envelope(await DashboardService(db, cache).client_metrics(period_end))


@router.post("/aggregate")
async def aggregate_metrics(
    request: AggregateRequest,
    actor: Actor = Depends(get_actor),
    session_factory=Depends(get_session_factory)
):
    """Run one aggregation now, with the same retry policy as the scheduled jobs."""
    if actor.role not in (UserRole.ADMIN, UserRole.SUPERVISOR):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admins and supervisors can trigger aggregation"
        )

    logger.info(f"On-demand aggregation of {request.type} for {request.date} requested by {actor.id}")
    result = await run_aggregation_job(request.date, request.type, session_factory=session_factory)
    if not result.ok:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Aggregation failed: {result.reason}"
        )
    return envelope(result.value, message="Aggregation completed")
