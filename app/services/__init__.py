"""
AidlY Services Module

Business logic for metrics aggregation, reports and notifications.
"""

from app.services.aggregation_service import MetricsAggregator
from app.services.metrics_repository import MetricsRepository, SqlAlchemyMetricsRepository
from app.services.dashboard_service import DashboardService
from app.services.report_service import ReportService
from app.services.report_execution_service import ReportExecutionService
from app.services.scheduled_report_service import ScheduledReportService
from app.services.notification_manager import NotificationManager, NotificationEvent
from app.services.realtime_service import RealtimeService
from app.services.metrics_service import MetricsCollector, metrics_collector

__all__ = [
    "MetricsAggregator",
    "MetricsRepository",
    "SqlAlchemyMetricsRepository",
    "DashboardService",
    "ReportService",
    "ReportExecutionService",
    "ScheduledReportService",
    "NotificationManager",
    "NotificationEvent",
    "RealtimeService",
    "MetricsCollector",
    "metrics_collector",
]
