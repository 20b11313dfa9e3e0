"""
AidlY Jobs Module

Background jobs for metrics aggregation, scheduled reports and notifications.
"""

from app.jobs.aggregation_jobs import (
    run_aggregation_job,
    run_daily_metrics_job,
    run_hourly_metrics_job,
)
from app.jobs.report_jobs import run_scheduled_reports_job, run_execution_cleanup_job
from app.jobs.notification_jobs import process_notification_queue_job, send_digests_job
from app.jobs.scheduler import (
    setup_scheduler,
    start_scheduler,
    stop_scheduler,
    get_scheduler_status,
)

__all__ = [
    "run_aggregation_job",
    "run_daily_metrics_job",
    "run_hourly_metrics_job",
    "run_scheduled_reports_job",
    "run_execution_cleanup_job",
    "process_notification_queue_job",
    "send_digests_job",
    "setup_scheduler",
    "start_scheduler",
    "stop_scheduler",
    "get_scheduler_status",
]
