from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from datetime import date
import logging

from app.api.deps import Actor, get_actor, get_metrics_cache
from app.core.cache import MetricsCache
from app.core.config import settings
from app.core.database import get_db
from app.schemas.common import envelope
from app.services.dashboard_service import DashboardService

logger = logging.getLogger(__name__)

router = APIRouter()


def _resolve_agent(agent_id: Optional[str], actor: Actor) -> str:
    agent_id = agent_id or actor.id
    if agent_id != actor.id and not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to view another agent's dashboard"
        )
    return agent_id


@router.get("/agent-queue")
async def get_agent_queue(
    agent_id: Optional[str] = Query(None, description="Defaults to the caller"),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    cache: MetricsCache = Depends(get_metrics_cache)
):
    """Open tickets assigned to the agent, most urgent and oldest first."""
    agent_id = _resolve_agent(agent_id, actor)
    return envelope(await DashboardService(db, cache).agent_queue(agent_id))


@router.get("/agent-stats")
async def get_agent_stats(
    agent_id: Optional[str] = Query(None, description="Defaults to the caller"),
    date: Optional[date] = Query(None, description="Window end, defaults to today"),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    cache: MetricsCache = Depends(get_metrics_cache)
):
    agent_id = _resolve_agent(agent_id, actor)
    stats = await DashboardService(db, cache).agent_stats(agent_id, date)
    if stats is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No aggregated metrics for agent {agent_id}"
        )
    return envelope(stats)


@router.get("/stats")
async def get_dashboard_stats(
    period_days: Optional[int] = Query(None, ge=1, le=365, description="Comparison window length"),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    cache: MetricsCache = Depends(get_metrics_cache)
):
    """Status totals plus the last period compared with the one before it, in business hours."""
    period_days = period_days or settings.DASHBOARD_STATS_PERIOD_DAYS
    return envelope(await DashboardService(db, cache).stats(period_days))


@router.get("/realtime")
async def get_realtime_counters(
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    cache: MetricsCache = Depends(get_metrics_cache)
):
    """Open, unassigned and overdue ticket counts plus 24h average response minutes."""
    return envelope(await DashboardService(db, cache).realtime_counters())
