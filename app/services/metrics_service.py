"""
Prometheus metrics for the AidlY analytics service.

Tracks HTTP traffic plus the pipeline itself: aggregation runs, report
executions and notification deliveries. Exposed as Prometheus text and as a
JSON summary for the stats endpoint.
"""

import os
import re
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Any
import logging

import psutil
from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)

from app.core.config import settings

logger = logging.getLogger(__name__)


RESPONSE_TIME_BUCKETS = (
    0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0
)

DB_QUERY_TIME_BUCKETS = (
    0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5
)

# Aggregations may take minutes on large ticket tables
JOB_TIME_BUCKETS = (0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 180.0, 300.0)

_ID_SEGMENT = re.compile(r"^(\d+|[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})$")


@dataclass
class RequestStats:
    """Running totals for one group of requests."""
    total_requests: int = 0
    total_errors: int = 0
    total_duration_seconds: float = 0.0
    max_duration_seconds: float = 0.0
    status_codes: Dict[int, int] = field(default_factory=lambda: defaultdict(int))

    def record(self, duration_seconds: float, status_code: int):
        self.total_requests += 1
        self.total_duration_seconds += duration_seconds
        self.max_duration_seconds = max(self.max_duration_seconds, duration_seconds)
        self.status_codes[status_code] += 1
        if status_code >= 500:
            self.total_errors += 1

    @property
    def avg_duration_seconds(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_duration_seconds / self.total_requests

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_errors / self.total_requests

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "total_errors": self.total_errors,
            "error_rate": round(self.error_rate, 4),
            "avg_duration_ms": round(self.avg_duration_seconds * 1000, 2),
            "max_duration_ms": round(self.max_duration_seconds * 1000, 2),
            "status_codes": dict(self.status_codes),
        }


class MetricsCollector:
    """Collects HTTP and pipeline metrics."""

    def __init__(self, registry=REGISTRY):
        self._lock = threading.Lock()
        self._start_time = datetime.utcnow()
        self._registry = registry

        self._endpoint_stats: Dict[str, RequestStats] = defaultdict(RequestStats)
        self._global_stats = RequestStats()
        self._db_query_count: int = 0
        self._db_query_duration_seconds: float = 0.0
        self._active_connections: int = 0

        # {(kind, label, outcome): count} for the JSON summary
        self._pipeline_counts: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))

        self._init_prometheus_metrics()

    def _init_prometheus_metrics(self):
        registry = self._registry

        self.app_info = Info("aidly_app", "AidlY analytics service information", registry=registry)
        self.app_info.info({
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "app_name": settings.APP_NAME,
        })

        # HTTP
        self.request_counter = Counter(
            "aidly_http_requests_total",
            "Total number of HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=registry
        )
        self.request_duration = Histogram(
            "aidly_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            buckets=RESPONSE_TIME_BUCKETS,
            registry=registry
        )
        self.active_connections_gauge = Gauge(
            "aidly_active_connections",
            "Number of in-flight HTTP requests",
            registry=registry
        )
        self.db_query_counter = Counter(
            "aidly_db_queries_total",
            "Total number of database queries",
            registry=registry
        )
        self.db_query_duration = Histogram(
            "aidly_db_query_duration_seconds",
            "Database time per request in seconds",
            buckets=DB_QUERY_TIME_BUCKETS,
            registry=registry
        )

        # Pipeline
        self.aggregation_counter = Counter(
            "aidly_aggregation_runs_total",
            "Metrics aggregation runs",
            ["metric_type", "outcome"],
            registry=registry
        )
        self.aggregation_duration = Histogram(
            "aidly_aggregation_duration_seconds",
            "Metrics aggregation duration in seconds",
            ["metric_type"],
            buckets=JOB_TIME_BUCKETS,
            registry=registry
        )
        self.report_execution_counter = Counter(
            "aidly_report_executions_total",
            "Report executions",
            ["execution_type", "status"],
            registry=registry
        )
        self.notification_counter = Counter(
            "aidly_notifications_total",
            "Notification delivery attempts",
            ["channel", "status"],
            registry=registry
        )
        self.realtime_subscriptions_gauge = Gauge(
            "aidly_realtime_subscriptions",
            "Open realtime channel subscriptions",
            registry=registry
        )

        self.memory_usage_gauge = Gauge(
            "aidly_memory_usage_bytes",
            "Resident memory in bytes",
            registry=registry
        )
        self.uptime_gauge = Gauge(
            "aidly_uptime_seconds",
            "Application uptime in seconds",
            registry=registry
        )

    # ========================================================================
    # HTTP
    # ========================================================================

    def record_request(
        self,
        method: str,
        endpoint: str,
        status_code: int,
        duration_seconds: float,
        db_query_count: int = 0,
        db_query_duration_seconds: float = 0.0
    ):
        normalized_endpoint = self._normalize_endpoint(endpoint)

        with self._lock:
            self._global_stats.record(duration_seconds, status_code)
            self._endpoint_stats[normalized_endpoint].record(duration_seconds, status_code)
            self._db_query_count += db_query_count
            self._db_query_duration_seconds += db_query_duration_seconds

        self.request_counter.labels(
            method=method,
            endpoint=normalized_endpoint,
            status_code=str(status_code)
        ).inc()
        self.request_duration.labels(method=method, endpoint=normalized_endpoint).observe(duration_seconds)

        if db_query_count > 0:
            self.db_query_counter.inc(db_query_count)
        if db_query_duration_seconds > 0:
            self.db_query_duration.observe(db_query_duration_seconds)

    @staticmethod
    def _normalize_endpoint(endpoint: str) -> str:
        """Replace uuid and numeric path segments with {id} to bound label cardinality."""
        return "/" + "/".join(
            "{id}" if _ID_SEGMENT.match(segment) else segment
            for segment in (endpoint or "").split("/")
            if segment
        )

    def increment_active_connections(self):
        with self._lock:
            self._active_connections += 1
        self.active_connections_gauge.inc()

    def decrement_active_connections(self):
        with self._lock:
            self._active_connections = max(0, self._active_connections - 1)
        self.active_connections_gauge.dec()

    # ========================================================================
    # Pipeline
    # ========================================================================

    def _count(self, kind: str, key: str):
        with self._lock:
            self._pipeline_counts[kind][key] += 1

    def record_aggregation(self, metric_type: str, outcome: str, duration_seconds: Optional[float] = None):
        self.aggregation_counter.labels(metric_type=metric_type, outcome=outcome).inc()
        if duration_seconds is not None:
            self.aggregation_duration.labels(metric_type=metric_type).observe(duration_seconds)
        self._count("aggregations", f"{metric_type}:{outcome}")

    def record_report_execution(self, execution_type: str, status: str):
        self.report_execution_counter.labels(execution_type=execution_type, status=status).inc()
        self._count("report_executions", f"{execution_type}:{status}")

    def record_notification(self, channel: str, status: str):
        self.notification_counter.labels(channel=channel, status=status).inc()
        self._count("notifications", f"{channel}:{status}")

    def set_realtime_subscriptions(self, count: int):
        self.realtime_subscriptions_gauge.set(count)

    # ========================================================================
    # Export
    # ========================================================================

    def get_prometheus_metrics(self) -> bytes:
        self.uptime_gauge.set((datetime.utcnow() - self._start_time).total_seconds())
        self.memory_usage_gauge.set(psutil.Process(os.getpid()).memory_info().rss)
        return generate_latest(self._registry)

    def get_prometheus_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def get_stats_summary(self) -> Dict[str, Any]:
        with self._lock:
            uptime_seconds = (datetime.utcnow() - self._start_time).total_seconds()

            top_endpoints = sorted(
                [
                    {"endpoint": ep, **stats.to_dict()}
                    for ep, stats in self._endpoint_stats.items()
                ],
                key=lambda x: x["total_requests"],
                reverse=True
            )[:10]

            return {
                "application": {
                    "name": settings.APP_NAME,
                    "version": settings.APP_VERSION,
                    "environment": settings.ENVIRONMENT,
                    "uptime_seconds": round(uptime_seconds, 2),
                    "start_time": self._start_time.isoformat() + "Z"
                },
                "requests": self._global_stats.to_dict(),
                "database": {
                    "total_queries": self._db_query_count,
                    "total_duration_seconds": round(self._db_query_duration_seconds, 4),
                },
                "connections": {"active": self._active_connections},
                "pipeline": {
                    kind: dict(counts) for kind, counts in self._pipeline_counts.items()
                },
                "top_endpoints": top_endpoints,
            }

    def get_health_details(self) -> Dict[str, Any]:
        """Process health from psutil plus request error rates."""
        process = psutil.Process(os.getpid())
        memory_info = process.memory_info()

        with self._lock:
            uptime = datetime.utcnow() - self._start_time
            error_rate = self._global_stats.error_rate
            avg_response_time = self._global_stats.avg_duration_seconds * 1000

            health_status = "healthy"
            health_issues = []

            if error_rate > 0.1:
                health_status = "degraded"
                health_issues.append(f"High error rate: {error_rate:.2%}")

            if avg_response_time > settings.SLOW_REQUEST_THRESHOLD_MS:
                health_status = "degraded"
                health_issues.append(f"High average response time: {avg_response_time:.0f}ms")

            return {
                "status": health_status,
                "timestamp": datetime.utcnow().isoformat() + "Z",
                "uptime": {
                    "seconds": uptime.total_seconds(),
                    "human": str(uptime).split(".")[0]
                },
                "system": {
                    "memory": {
                        "rss_bytes": memory_info.rss,
                        "rss_mb": round(memory_info.rss / (1024 * 1024), 2),
                    },
                    "threads": process.num_threads()
                },
                "requests": {
                    "total": self._global_stats.total_requests,
                    "errors": self._global_stats.total_errors,
                    "error_rate": round(error_rate, 4),
                    "avg_response_time_ms": round(avg_response_time, 2)
                },
                "active_connections": self._active_connections,
                "issues": health_issues or None,
            }


# Global metrics collector instance
metrics_collector = MetricsCollector()
