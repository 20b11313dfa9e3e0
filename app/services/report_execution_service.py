"""
Report Execution Service

Runs stored report queries, records each run as a ReportExecution, writes
CSV/JSON exports through the file storage, and enforces execution retention.
"""

import asyncio
import csv
import io
import json
import logging
import re
import time
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy import select, func, and_, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ReportQueryError, ExportError
from app.core.storage import FileStorage
from app.models.report import (
    Report,
    ReportExecution,
    ExecutionType,
    ExecutionStatus,
    ExportFormat,
)
from app.services.metrics_service import metrics_collector

logger = logging.getLogger(__name__)

FORBIDDEN_KEYWORDS = (
    "DROP", "DELETE", "UPDATE", "INSERT", "ALTER",
    "CREATE", "TRUNCATE", "GRANT", "REVOKE",
)
_FORBIDDEN_PATTERN = re.compile(r"\b(" + "|".join(FORBIDDEN_KEYWORDS) + r")\b", re.IGNORECASE)
_LEADING_KEYWORD = re.compile(r"^\s*(SELECT|WITH)\b", re.IGNORECASE)
_SELECT_KEYWORD = re.compile(r"\bSELECT\b", re.IGNORECASE)
# :name placeholders, skipping PostgreSQL ::casts
_BIND_PARAM = re.compile(r"(?<![:\w]):([A-Za-z_]\w*)")

NO_DATA_MESSAGE = "No data to export"


def validate_query(sql: str) -> str:
    """
    Check that sql is a single read-only statement.

    Returns the statement without its trailing semicolon.

    Raises:
        ReportQueryError: If the statement is empty, not a SELECT, contains a
            write/DDL keyword, or holds more than one statement.
    """
    statement = (sql or "").strip()
    if statement.endswith(";"):
        statement = statement[:-1].rstrip()

    if not statement:
        raise ReportQueryError("Report query is empty")
    if ";" in statement:
        raise ReportQueryError("Report query must be a single statement")
    if not _LEADING_KEYWORD.match(statement) or not _SELECT_KEYWORD.search(statement):
        raise ReportQueryError("Report query must be a SELECT statement")

    forbidden = _FORBIDDEN_PATTERN.search(statement)
    if forbidden:
        raise ReportQueryError(f"Report query contains forbidden keyword: {forbidden.group(1).upper()}")

    return statement


def query_parameter_names(sql: str) -> List[str]:
    return list(dict.fromkeys(_BIND_PARAM.findall(sql)))


def format_column_header(column: str) -> str:
    return column.replace("_", " ").title()


def rows_to_csv(rows: List[Dict[str, Any]]) -> bytes:
    columns = list(rows[0].keys())
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow([format_column_header(c) for c in columns])
    for row in rows:
        writer.writerow(["" if row.get(c) is None else row.get(c) for c in columns])
    return output.getvalue().encode("utf-8")


def rows_to_json(rows: List[Dict[str, Any]]) -> bytes:
    payload = {
        "generated_at": datetime.utcnow().isoformat(),
        "record_count": len(rows),
        "data": rows,
    }
    return json.dumps(payload, indent=2, default=str).encode("utf-8")


EXPORT_WRITERS = {
    ExportFormat.CSV: rows_to_csv,
    ExportFormat.JSON: rows_to_json,
}

EXPORT_CONTENT_TYPES = {
    ExportFormat.CSV: "text/csv",
    ExportFormat.JSON: "application/json",
}


class ReportExecutionService:
    """Executes reports and manages their execution history."""

    def __init__(self, db: AsyncSession, storage: FileStorage):
        self.db = db
        self.storage = storage

    # ========================================================================
    # Execution
    # ========================================================================

    async def _start_execution(
        self,
        report: Report,
        parameters: Dict[str, Any],
        execution_type: ExecutionType,
        executed_by: Optional[str]
    ) -> ReportExecution:
        execution = ReportExecution(
            report_id=report.id,
            execution_type=execution_type,
            status=ExecutionStatus.RUNNING,
            started_at=datetime.utcnow(),
            parameters_used=parameters,
            executed_by=executed_by,
        )
        self.db.add(execution)
        await self.db.commit()
        await self.db.refresh(execution)
        return execution

    async def run_query(self, report: Report, parameters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Run the report SQL with the named parameters it references."""
        statement = validate_query(report.query_sql)
        names = query_parameter_names(statement)
        bound = {name: parameters.get(name) for name in names}

        result = await self.db.execute(text(statement), bound)
        return [dict(row) for row in result.mappings().all()]

    async def _fail_execution(
        self,
        report: Report,
        execution: ReportExecution,
        started: float,
        error: str
    ) -> ReportExecution:
        # The failed statement may have aborted the transaction
        await self.db.rollback()
        await self.db.refresh(execution)
        await self.db.refresh(report)

        execution.status = ExecutionStatus.FAILED
        execution.completed_at = datetime.utcnow()
        execution.execution_time_ms = int((time.monotonic() - started) * 1000)
        execution.error_message = error
        await self.db.commit()
        await self.db.refresh(execution)
        metrics_collector.record_report_execution(
            ExecutionType(execution.execution_type).value, ExecutionStatus.FAILED.value
        )

        logger.error(
            f"Report {report.id} execution {execution.id} failed: {error}",
            extra={"report_id": report.id, "execution_id": execution.id}
        )
        return execution

    async def _produce(
        self,
        report: Report,
        parameters: Dict[str, Any],
        execution: ReportExecution,
        export_format: Optional[ExportFormat]
    ) -> List[Dict[str, Any]]:
        rows = await self.run_query(report, parameters)
        if export_format is not None:
            if not rows:
                raise ExportError(NO_DATA_MESSAGE)
            key, size = await self._write_export(report, rows, export_format)
            execution.file_path = key
            execution.file_size = size
            execution.file_format = export_format.value
        return rows

    async def _run(
        self,
        report: Report,
        params: Optional[Dict[str, Any]],
        execution_type: ExecutionType,
        executed_by: Optional[str],
        export_format: Optional[ExportFormat] = None,
        timeout: Optional[float] = None
    ) -> Tuple[ReportExecution, List[Dict[str, Any]]]:
        parameters = {**(report.filters or {}), **(params or {})}
        execution = await self._start_execution(report, parameters, execution_type, executed_by)
        started = time.monotonic()

        try:
            rows = await asyncio.wait_for(
                self._produce(report, parameters, execution, export_format),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            error = f"Report execution timed out after {timeout:g}s"
            return await self._fail_execution(report, execution, started, error), []
        except Exception as e:
            return await self._fail_execution(report, execution, started, str(e)), []

        now = datetime.utcnow()
        execution.status = ExecutionStatus.COMPLETED
        execution.completed_at = now
        execution.execution_time_ms = int((time.monotonic() - started) * 1000)
        execution.record_count = len(rows)
        report.last_executed_at = now

        await self.db.commit()
        await self.db.refresh(execution)
        metrics_collector.record_report_execution(execution_type.value, ExecutionStatus.COMPLETED.value)

        logger.info(
            f"Report {report.id} executed ({execution_type.value}): "
            f"{execution.record_count} rows in {execution.execution_time_ms}ms"
        )
        return execution, rows

    async def execute(
        self,
        report: Report,
        params: Optional[Dict[str, Any]] = None,
        execution_type: ExecutionType = ExecutionType.MANUAL,
        executed_by: Optional[str] = None
    ) -> ReportExecution:
        """
        Execute a report.

        A failure is recorded on the returned execution (status FAILED with
        error_message) rather than raised.
        """
        execution, _ = await self._run(report, params, execution_type, executed_by)
        return execution

    async def execute_with_export(
        self,
        report: Report,
        export_format: ExportFormat = ExportFormat.CSV,
        params: Optional[Dict[str, Any]] = None,
        execution_type: ExecutionType = ExecutionType.EXPORT,
        executed_by: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> ReportExecution:
        """
        Execute a report and store its rows as a CSV or JSON file.

        A run exceeding `timeout` seconds is recorded as a failed execution.
        """
        execution, _ = await self._run(
            report, params, execution_type, executed_by, ExportFormat(export_format), timeout
        )
        return execution

    async def execute_for_data(
        self,
        report: Report,
        params: Optional[Dict[str, Any]] = None,
        executed_by: Optional[str] = None
    ) -> Tuple[ReportExecution, List[Dict[str, Any]]]:
        """Execute a report and also return its rows (manual runs from the API)."""
        return await self._run(report, params, ExecutionType.MANUAL, executed_by)

    async def _write_export(
        self,
        report: Report,
        rows: List[Dict[str, Any]],
        export_format: ExportFormat
    ) -> Tuple[str, int]:
        timestamp = datetime.utcnow().strftime("%Y%m%d_%H%M%S_%f")
        key = f"exports/report_{report.id}_{timestamp}.{export_format.value}"
        content = EXPORT_WRITERS[export_format](rows)
        size = await self.storage.put(key, content)
        return key, size

    async def read_export(self, execution: ReportExecution) -> bytes:
        if not execution.has_file:
            raise ExportError("Execution has no output file")
        if not await self.storage.exists(execution.file_path):
            raise ExportError("Output file no longer exists")
        return await self.storage.read(execution.file_path)

    # ========================================================================
    # History and statistics
    # ========================================================================

    async def get_execution(self, execution_id: str) -> Optional[ReportExecution]:
        result = await self.db.execute(
            select(ReportExecution).where(ReportExecution.id == execution_id)
        )
        return result.scalar_one_or_none()

    async def list_executions(
        self,
        report_id: str,
        skip: int = 0,
        limit: int = 20
    ) -> Tuple[List[ReportExecution], int]:
        count_result = await self.db.execute(
            select(func.count(ReportExecution.id)).where(ReportExecution.report_id == report_id)
        )
        total = count_result.scalar() or 0

        result = await self.db.execute(
            select(ReportExecution)
            .where(ReportExecution.report_id == report_id)
            .order_by(ReportExecution.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def get_execution_stats(self, report_id: str, days: int = None) -> Dict[str, Any]:
        days = days or settings.EXECUTION_STATS_DAYS
        since = datetime.utcnow() - timedelta(days=days)

        result = await self.db.execute(
            select(ReportExecution)
            .where(and_(ReportExecution.report_id == report_id, ReportExecution.created_at >= since))
            .order_by(ReportExecution.created_at.desc())
        )
        executions = result.scalars().all()

        successful = [e for e in executions if e.status == ExecutionStatus.COMPLETED]
        failed = [e for e in executions if e.status == ExecutionStatus.FAILED]
        timings = [e.execution_time_ms for e in successful if e.execution_time_ms is not None]
        record_counts = [e.record_count for e in successful if e.record_count is not None]

        total = len(executions)
        return {
            "total_executions": total,
            "successful_executions": len(successful),
            "failed_executions": len(failed),
            "success_rate": round(len(successful) / total * 100, 2) if total else 0.0,
            "avg_execution_time_ms": round(sum(timings) / len(timings), 2) if timings else None,
            "avg_record_count": round(sum(record_counts) / len(record_counts), 2) if record_counts else None,
            "last_execution_at": executions[0].created_at if executions else None,
            "last_successful_execution_at": successful[0].completed_at if successful else None,
            "period_days": days,
        }

    # ========================================================================
    # Retention
    # ========================================================================

    async def _delete_executions(self, executions: List[ReportExecution]) -> int:
        for execution in executions:
            if execution.file_path:
                try:
                    await self.storage.delete(execution.file_path)
                except Exception as e:
                    logger.error(
                        f"Failed to delete output file {execution.file_path}: {e}",
                        exc_info=True
                    )
            await self.db.delete(execution)

        if executions:
            await self.db.commit()
        return len(executions)

    async def prune_executions(self, report_id: str, keep: int = None) -> int:
        """Delete all but the `keep` most recent executions and their files."""
        keep = settings.REPORT_EXECUTION_RETENTION if keep is None else keep
        result = await self.db.execute(
            select(ReportExecution)
            .where(ReportExecution.report_id == report_id)
            .order_by(ReportExecution.created_at.desc(), ReportExecution.started_at.desc())
            .offset(keep)
        )
        deleted = await self._delete_executions(list(result.scalars().all()))
        if deleted:
            logger.info(f"Pruned {deleted} old executions for report {report_id}")
        return deleted

    async def cleanup_old_executions(self, days: int = None) -> int:
        """Delete executions older than `days` across all reports."""
        days = days or settings.EXECUTION_HISTORY_DAYS
        cutoff = datetime.utcnow() - timedelta(days=days)
        result = await self.db.execute(
            select(ReportExecution).where(ReportExecution.created_at < cutoff)
        )
        deleted = await self._delete_executions(list(result.scalars().all()))
        logger.info(f"Cleaned up {deleted} report executions older than {days} days")
        return deleted
