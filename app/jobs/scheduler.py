"""
Background Scheduler

APScheduler wiring for all periodic jobs:
- Hourly metrics: minute 5 of every hour
- Daily metrics: 01:00 UTC (yesterday)
- Execution cleanup: 02:00 UTC
- Scheduled reports: every 15 minutes
- Notification queue: every minute
- Notification digests: every 5 minutes
"""

import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings
from app.jobs.aggregation_jobs import run_daily_metrics_job, run_hourly_metrics_job
from app.jobs.notification_jobs import process_notification_queue_job, send_digests_job
from app.jobs.report_jobs import run_scheduled_reports_job, run_execution_cleanup_job

logger = logging.getLogger(__name__)

scheduler: Optional[AsyncIOScheduler] = None


def setup_scheduler() -> AsyncIOScheduler:
    """Create the scheduler and register every job (does not start it)."""
    global scheduler

    jobstores = {
        'default': MemoryJobStore()
    }
    executors = {
        'default': AsyncIOExecutor()
    }
    job_defaults = {
        'coalesce': True,  # Combine multiple missed runs into one
        'max_instances': 1,  # Only one instance of each job at a time
        'misfire_grace_time': 300
    }

    scheduler = AsyncIOScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    scheduler.add_job(
        run_hourly_metrics_job,
        trigger=CronTrigger(minute=5),
        id='hourly_metrics',
        name='Hourly Metrics Aggregation',
        replace_existing=True
    )
    scheduler.add_job(
        run_daily_metrics_job,
        trigger=CronTrigger(hour=1, minute=0),
        id='daily_metrics',
        name='Daily Metrics Aggregation',
        replace_existing=True
    )
    scheduler.add_job(
        run_execution_cleanup_job,
        trigger=CronTrigger(hour=2, minute=0),
        id='execution_cleanup',
        name='Report Execution Cleanup',
        replace_existing=True
    )
    scheduler.add_job(
        run_scheduled_reports_job,
        trigger=IntervalTrigger(minutes=settings.SCHEDULED_REPORT_INTERVAL_MINUTES),
        id='scheduled_reports',
        name='Scheduled Reports',
        replace_existing=True
    )
    scheduler.add_job(
        process_notification_queue_job,
        trigger=IntervalTrigger(minutes=1),
        id='notification_queue',
        name='Notification Queue',
        replace_existing=True
    )
    scheduler.add_job(
        send_digests_job,
        trigger=IntervalTrigger(minutes=5),
        id='notification_digests',
        name='Notification Digests',
        replace_existing=True
    )

    logger.info(f"Registered {len(scheduler.get_jobs())} background jobs")
    return scheduler


def start_scheduler() -> Optional[AsyncIOScheduler]:
    if not settings.ENABLE_SCHEDULER:
        logger.info("Background scheduler disabled")
        return None

    if scheduler is None:
        setup_scheduler()
    if not scheduler.running:
        scheduler.start()
        logger.info("Background scheduler started")
    return scheduler


def stop_scheduler():
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")


def get_scheduler_status() -> dict:
    """Get the current status of the scheduler and its jobs."""
    if scheduler is None:
        return {
            "status": "not_initialized",
            "jobs": []
        }

    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None,
            "trigger": str(job.trigger)
        })

    return {
        "status": "running" if scheduler.running else "stopped",
        "jobs": jobs
    }
