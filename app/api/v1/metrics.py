"""
Metrics API endpoints for the AidlY analytics service.

Prometheus export, a health check with a database probe, and a JSON summary.
"""

from fastapi import APIRouter, Response, Depends, status
from fastapi.responses import PlainTextResponse, JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
import logging

from app.core.config import settings
from app.core.database import get_db
from app.services.metrics_service import metrics_collector

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/metrics",
    summary="Prometheus Metrics",
    description="Export metrics in Prometheus text format for scraping",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics():
    """
    Export metrics in Prometheus format.

    Includes HTTP request counts and durations, aggregation runs, report
    executions and notification deliveries.
    """
    try:
        return Response(
            content=metrics_collector.get_prometheus_metrics(),
            media_type=metrics_collector.get_prometheus_content_type(),
            headers={
                "Cache-Control": "no-cache, no-store, must-revalidate",
                "Pragma": "no-cache",
                "Expires": "0"
            }
        )
    except Exception as e:
        logger.error(f"Failed to generate Prometheus metrics: {e}")
        return PlainTextResponse(
            content=f"# Error generating metrics: {str(e)}\n",
            status_code=500
        )


@router.get(
    "/metrics/health",
    summary="Detailed Health Check",
    response_class=JSONResponse,
)
async def get_health_details(
    db: AsyncSession = Depends(get_db),
    include_db_check: bool = True
):
    """Process health plus an optional database connectivity probe."""
    try:
        health_data = metrics_collector.get_health_details()
    except Exception as e:
        logger.error(f"Failed to generate health check: {e}")
        return JSONResponse(
            content={"status": "unhealthy", "error": str(e)},
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE
        )

    if include_db_check:
        try:
            await db.execute(text("SELECT 1"))
            health_data["database"] = {"healthy": True, "connection": "ok"}
        except Exception as db_error:
            health_data["database"] = {"healthy": False, "connection": "failed", "error": str(db_error)}
            health_data["status"] = "unhealthy"
            health_data["issues"] = (health_data.get("issues") or []) + [
                f"Database connection failed: {db_error}"
            ]

    if health_data["status"] == "unhealthy":
        return JSONResponse(content=health_data, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return health_data


@router.get(
    "/metrics/stats",
    summary="JSON Statistics Summary",
    response_class=JSONResponse,
)
async def get_stats_summary():
    try:
        return metrics_collector.get_stats_summary()
    except Exception as e:
        logger.error(f"Failed to generate stats summary: {e}")
        return JSONResponse(
            content={"error": str(e), "message": "Failed to generate stats summary"},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
        )


@router.get("/metrics/info", summary="Application Info")
async def get_app_info():
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "debug": settings.DEBUG,
        "features": {
            "prometheus_metrics": settings.ENABLE_PROMETHEUS_METRICS,
            "notifications_enabled": settings.NOTIFICATION_ENABLED,
            "email_configured": settings.email_enabled,
            "scheduler_enabled": settings.ENABLE_SCHEDULER,
        }
    }
