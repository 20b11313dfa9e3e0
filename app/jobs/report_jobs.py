"""
Report Batch Jobs

Runs due scheduled reports every 15 minutes and prunes old executions daily.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.core.database import AsyncSessionLocal
from app.core.storage import get_storage
from app.models.report import ScheduledReport
from app.services.email_service import get_email_service
from app.services.report_execution_service import ReportExecutionService
from app.services.scheduled_report_service import ScheduledReportService

logger = logging.getLogger(__name__)


def _scheduled_report_service(db) -> ScheduledReportService:
    return ScheduledReportService(
        db,
        ReportExecutionService(db, get_storage()),
        get_email_service()
    )


async def _run_one(schedule_id: str, now: datetime) -> bool:
    async with AsyncSessionLocal() as db:
        service = _scheduled_report_service(db)
        schedule = await db.get(
            ScheduledReport, schedule_id, options=[selectinload(ScheduledReport.report)]
        )
        if schedule is None or not schedule.is_active:
            return False
        # run_schedule bounds the export by REPORT_JOB_TIMEOUT_SECONDS and
        # records a timeout as a failed run
        result = await service.run_schedule(schedule, now)
        return result.ok


async def run_scheduled_reports_job(now: Optional[datetime] = None) -> dict:
    """
    Execute the due scheduled reports, at most SCHEDULED_REPORT_BATCH_LIMIT
    per run, each in its own session.

    Returns:
        dict: Summary of job execution with success/failure counts
    """
    now = now or datetime.utcnow()

    async with AsyncSessionLocal() as db:
        due = await _scheduled_report_service(db).get_due_schedules(
            now, limit=settings.SCHEDULED_REPORT_BATCH_LIMIT
        )
        schedule_ids = [schedule.id for schedule in due]

    logger.info(f"Processing {len(schedule_ids)} due scheduled reports")

    success_count = 0
    failure_count = 0
    errors = []

    for schedule_id in schedule_ids:
        try:
            if await _run_one(schedule_id, now):
                success_count += 1
            else:
                failure_count += 1
        except Exception as e:
            failure_count += 1
            error_msg = f"Failed to run scheduled report {schedule_id}: {str(e)}"
            errors.append(error_msg)
            logger.error(error_msg, exc_info=True)

    summary = {
        "job_type": "scheduled_reports",
        "total_schedules": len(schedule_ids),
        "success_count": success_count,
        "failure_count": failure_count,
        "errors": errors,
        "completed_at": datetime.utcnow().isoformat()
    }

    logger.info(
        f"Scheduled reports job completed: {success_count} success, {failure_count} failures"
    )
    return summary


async def run_execution_cleanup_job(days: Optional[int] = None) -> dict:
    """Delete executions (and their files) older than EXECUTION_HISTORY_DAYS."""
    days = days or settings.EXECUTION_HISTORY_DAYS

    async with AsyncSessionLocal() as db:
        deleted = await ReportExecutionService(db, get_storage()).cleanup_old_executions(days)

    logger.info(f"Execution cleanup job removed {deleted} executions older than {days} days")
    return {
        "job_type": "execution_cleanup",
        "days": days,
        "deleted": deleted,
        "completed_at": datetime.utcnow().isoformat()
    }
