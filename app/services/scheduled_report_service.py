"""
Scheduled Report Service

Manages report schedules and runs due ones: export the report, email the file
to each recipient, advance the schedule, and prune old executions. Repeated
failures eventually disable a schedule.
"""

from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
import logging

from app.core.config import settings
from app.core.cron import next_run_time, validate_cron_expression, describe_cron_expression
from app.core.exceptions import InvalidCronExpression
from app.core.result import Ok, Err, Result
from app.models.report import Report, ReportExecution, ScheduledReport, ExecutionType, ExportFormat
from app.services.email_service import Mailer, render_template
from app.services.report_execution_service import ReportExecutionService

logger = logging.getLogger(__name__)


def scheduled_report_subject(report_name: str, now: datetime) -> str:
    return f"Scheduled Report: {report_name} - {now.strftime('%Y-%m-%d %H:%M')}"


class ScheduledReportService:
    """Schedule management and execution of due scheduled reports."""

    def __init__(
        self,
        db: AsyncSession,
        execution_service: ReportExecutionService,
        mailer: Mailer
    ):
        self.db = db
        self.execution_service = execution_service
        self.mailer = mailer

    # ========================================================================
    # Schedule management
    # ========================================================================

    async def get_schedule(self, report_id: str) -> Optional[ScheduledReport]:
        result = await self.db.execute(
            select(ScheduledReport).where(ScheduledReport.report_id == report_id)
        )
        return result.scalar_one_or_none()

    async def upsert_schedule(
        self,
        report: Report,
        cron_expression: str,
        timezone: str = "UTC",
        recipients: Optional[List[str]] = None,
        format: ExportFormat = ExportFormat.CSV,
        parameters: Optional[Dict[str, Any]] = None,
        is_active: bool = True,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> ScheduledReport:
        """
        Create or replace the schedule of a report.

        Raises:
            InvalidCronExpression: If the expression or timezone is invalid.
        """
        now = now or datetime.utcnow()
        cron_expression = " ".join(cron_expression.split())
        validate_cron_expression(cron_expression, timezone)

        schedule = await self.get_schedule(report.id)
        if schedule is None:
            schedule = ScheduledReport(report=report, created_by=created_by)
            self.db.add(schedule)
        elif is_active and not schedule.is_active:
            schedule.failure_count = 0

        schedule.cron_expression = cron_expression
        schedule.timezone = timezone
        schedule.recipients = list(recipients or [])
        schedule.format = ExportFormat(format)
        schedule.parameters = dict(parameters or {})
        schedule.is_active = is_active
        schedule.next_run_at = next_run_time(cron_expression, timezone, now)

        await self.db.commit()
        await self.db.refresh(schedule)

        logger.info(
            f"Schedule for report {report.id} set to '{cron_expression}' ({timezone}), "
            f"next run at {schedule.next_run_at}"
        )
        return schedule

    async def delete_schedule(self, schedule: ScheduledReport) -> None:
        await self.db.delete(schedule)
        await self.db.commit()

    async def get_due_schedules(self, now: Optional[datetime] = None, limit: int = None) -> List[ScheduledReport]:
        now = now or datetime.utcnow()
        limit = limit or settings.SCHEDULED_REPORT_BATCH_LIMIT
        result = await self.db.execute(
            select(ScheduledReport)
            .join(Report, Report.id == ScheduledReport.report_id)
            .options(selectinload(ScheduledReport.report))
            .where(
                and_(
                    ScheduledReport.is_active == True,
                    ScheduledReport.next_run_at.isnot(None),
                    ScheduledReport.next_run_at <= now,
                    Report.is_active == True
                )
            )
            .order_by(ScheduledReport.next_run_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    # ========================================================================
    # State transitions
    # ========================================================================

    def mark_as_run(self, schedule: ScheduledReport, now: datetime) -> None:
        schedule.last_run_at = now
        schedule.run_count = (schedule.run_count or 0) + 1
        schedule.failure_count = 0
        try:
            schedule.next_run_at = next_run_time(schedule.cron_expression, schedule.timezone, now)
        except InvalidCronExpression as e:
            # Stored before validation existed; keep it running hourly until fixed
            schedule.next_run_at = now + timedelta(minutes=settings.SCHEDULE_RETRY_MINUTES)
            logger.warning(f"Schedule {schedule.id} has an invalid cron expression: {e}")

    def mark_as_failed(self, schedule: ScheduledReport, now: datetime, error: Optional[str] = None) -> None:
        schedule.failure_count = (schedule.failure_count or 0) + 1

        if schedule.failure_count >= settings.SCHEDULE_FAILURE_THRESHOLD:
            schedule.is_active = False
            logger.critical(
                "Scheduled report disabled due to repeated failures",
                extra={
                    "schedule_id": schedule.id,
                    "report_id": schedule.report_id,
                    "failure_count": schedule.failure_count,
                    "error": error,
                }
            )
        else:
            schedule.next_run_at = now + timedelta(minutes=settings.SCHEDULE_RETRY_MINUTES)

    # ========================================================================
    # Execution
    # ========================================================================

    async def _email_recipients(
        self,
        schedule: ScheduledReport,
        report: Report,
        execution: ReportExecution,
        now: datetime
    ) -> Dict[str, int]:
        recipients = schedule.recipients or report.recipients or []
        summary = {"sent": 0, "failed": 0}
        if not recipients:
            return summary

        subject = scheduled_report_subject(report.name, now)
        html_body = render_template("scheduled_report.html", {
            "report_name": report.name,
            "report_description": report.description,
            "generated_at": now.strftime("%Y-%m-%d %H:%M UTC"),
            "record_count": execution.record_count or 0,
            "file_format": execution.file_format or "",
            "schedule_description": describe_cron_expression(schedule.cron_expression),
            "has_attachment": execution.has_file,
        })
        attachments = [execution.file_path] if execution.has_file else []

        for recipient in recipients:
            try:
                result = await self.mailer.send_email(
                    to=recipient,
                    subject=subject,
                    html_body=html_body,
                    attachments=attachments,
                )
                if result.get("success"):
                    summary["sent"] += 1
                else:
                    summary["failed"] += 1
                    logger.error(
                        f"Failed to email scheduled report {report.id} to {recipient}: {result.get('error')}"
                    )
            except Exception as e:
                summary["failed"] += 1
                logger.error(
                    f"Failed to email scheduled report {report.id} to {recipient}: {e}",
                    exc_info=True
                )

        return summary

    async def run_schedule(self, schedule: ScheduledReport, now: Optional[datetime] = None) -> Result:
        """
        Run one scheduled report.

        Returns Ok(execution) on success and Err(error_message) on failure;
        the schedule's counters and next run time are updated either way.
        """
        now = now or datetime.utcnow()
        report = await self.db.get(Report, schedule.report_id)

        execution = await self.execution_service.execute_with_export(
            report,
            schedule.format,
            schedule.parameters,
            execution_type=ExecutionType.SCHEDULED,
            executed_by=schedule.created_by,
            timeout=settings.REPORT_JOB_TIMEOUT_SECONDS,
        )
        # A failed execution rolls back the session, which expires the schedule
        await self.db.refresh(schedule)

        if not execution.is_successful:
            self.mark_as_failed(schedule, now, execution.error_message)
            await self.db.commit()
            logger.error(
                f"Scheduled report {report.id} failed ({schedule.failure_count} consecutive): "
                f"{execution.error_message}"
            )
            return Err(execution.error_message or "Report execution failed")

        self.mark_as_run(schedule, now)
        await self.db.commit()

        summary = await self._email_recipients(schedule, report, execution, now)
        await self.execution_service.prune_executions(report.id, settings.REPORT_EXECUTION_RETENTION)

        logger.info(
            f"Scheduled report {report.id} completed: {execution.record_count} rows, "
            f"emails sent={summary['sent']} failed={summary['failed']}, next run {schedule.next_run_at}"
        )
        return Ok(execution)
