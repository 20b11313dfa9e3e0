"""
Request monitoring middleware for the AidlY analytics service.

Assigns request ids, times requests and their database queries, logs slow
ones, and feeds the Prometheus collector. Also provides the structured JSON
log formatter used application-wide.
"""

import time
import uuid
import logging
import json
from typing import Callable, Optional
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from sqlalchemy import event
from sqlalchemy.engine import Engine

from app.core.config import settings
from app.services.metrics_service import metrics_collector

logger = logging.getLogger(__name__)

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
db_metrics_ctx: ContextVar[Optional["DatabaseMetrics"]] = ContextVar("db_metrics", default=None)

_QUERY_START_KEY = "aidly_query_start"

# Streaming endpoints stay open indefinitely; timing them is meaningless
UNTIMED_PATH_SUFFIXES = ("/realtime/stream",)


@dataclass
class DatabaseMetrics:
    """Database activity of a single request."""
    query_count: int = 0
    total_duration_ms: float = 0.0
    slow_queries: list = field(default_factory=list)

    def add_query(self, duration_ms: float, statement: str = ""):
        self.query_count += 1
        self.total_duration_ms += duration_ms

        if duration_ms > settings.SLOW_QUERY_THRESHOLD_MS:
            self.slow_queries.append({
                "duration_ms": round(duration_ms, 2),
                "statement": statement[:500] if statement else "",
                "timestamp": datetime.utcnow().isoformat()
            })


def setup_db_event_listeners(engine: Engine):
    """Register query timing listeners on the (async) engine's sync core."""

    @event.listens_for(engine.sync_engine, "before_cursor_execute")
    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault(_QUERY_START_KEY, []).append(time.perf_counter())

    @event.listens_for(engine.sync_engine, "after_cursor_execute")
    def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        starts = conn.info.get(_QUERY_START_KEY)
        if not starts:
            return
        duration_ms = (time.perf_counter() - starts.pop()) * 1000

        db_metrics = db_metrics_ctx.get()
        if db_metrics:
            db_metrics.add_query(duration_ms, statement)

        if duration_ms > settings.SLOW_QUERY_THRESHOLD_MS:
            logger.warning(
                "Slow query detected",
                extra={
                    "request_id": request_id_ctx.get() or "no-request",
                    "duration_ms": round(duration_ms, 2),
                    "statement": statement[:500],
                    "event_type": "slow_query"
                }
            )

    logger.info("Database query timing listeners registered")


class MonitoringMiddleware(BaseHTTPMiddleware):
    """
    Per-request monitoring:
    - X-Request-ID propagation (generated when absent)
    - request timing and X-Response-Time header
    - database query count and time
    - slow request logging and Prometheus request metrics
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_ctx.set(request_id)
        db_metrics = DatabaseMetrics()
        db_metrics_ctx.set(db_metrics)

        method = request.method
        path = request.url.path
        start_time = time.perf_counter()

        if path.endswith(UNTIMED_PATH_SUFFIXES):
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response

        metrics_collector.increment_active_connections()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed with exception",
                extra={
                    "request_id": request_id,
                    "method": method,
                    "path": path,
                    "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
                    "error": str(e),
                    "event_type": "request_error"
                }
            )
            raise
        finally:
            metrics_collector.decrement_active_connections()

        duration_ms = (time.perf_counter() - start_time) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

        log_context = {
            "request_id": request_id,
            "method": method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": round(duration_ms, 2),
            "db_query_count": db_metrics.query_count,
            "db_query_duration_ms": round(db_metrics.total_duration_ms, 2),
            "event_type": "request_complete"
        }

        if duration_ms > settings.SLOW_REQUEST_THRESHOLD_MS:
            log_context["slow_queries"] = db_metrics.slow_queries
            log_context["event_type"] = "slow_request"
            logger.warning(f"Slow request: {method} {path} took {duration_ms:.2f}ms", extra=log_context)
        elif settings.DEBUG or path.startswith("/api/"):
            logger.info(f"Request: {method} {path} - {response.status_code} - {duration_ms:.2f}ms", extra=log_context)

        metrics_collector.record_request(
            method=method,
            endpoint=path,
            status_code=response.status_code,
            duration_seconds=duration_ms / 1000,
            db_query_count=db_metrics.query_count,
            db_query_duration_seconds=db_metrics.total_duration_ms / 1000
        )
        return response


# Attributes every LogRecord has; anything else came in through `extra=`
_RESERVED_RECORD_ATTRS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
))


class StructuredJsonFormatter(logging.Formatter):
    """One JSON object per log line, including request id and `extra` fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_ctx.get()
        if request_id:
            log_data["request_id"] = request_id

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_structured_logging(log_level: str = "INFO", json_format: bool = True):
    """Install a single console handler on the root logger."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)

    if json_format:
        console_handler.setFormatter(StructuredJsonFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s",
                defaults={"request_id": "no-request"}
            )
        )

    root_logger.addHandler(console_handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
