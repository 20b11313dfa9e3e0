from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, JSON, Enum as SQLEnum, Text, Integer
from sqlalchemy.orm import relationship
from datetime import datetime
from typing import Optional
import uuid
import enum
from app.core.database import Base


class ReportType(str, enum.Enum):
    DASHBOARD = "dashboard"
    PERFORMANCE = "performance"
    SATISFACTION = "satisfaction"
    SLA = "sla"
    ACTIVITY = "activity"
    CUSTOM = "custom"


class ChartType(str, enum.Enum):
    LINE = "line"
    BAR = "bar"
    AREA = "area"
    PIE = "pie"
    COLUMN = "column"
    TABLE = "table"


class ExecutionType(str, enum.Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    EXPORT = "export"


class ExecutionStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExportFormat(str, enum.Enum):
    CSV = "csv"
    JSON = "json"


class Report(Base):
    """Named query template with display configuration."""
    __tablename__ = "reports"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    description = Column(Text)
    report_type = Column(SQLEnum(ReportType), nullable=False, default=ReportType.CUSTOM, index=True)

    # Query template; named parameters use :name placeholders
    query_sql = Column(Text, nullable=False)
    # Default parameter values, e.g. {"status": "open"}
    filters = Column(JSON, nullable=False, default=dict)
    columns = Column(JSON, nullable=False, default=list)
    chart_type = Column(SQLEnum(ChartType), nullable=False, default=ChartType.TABLE)
    chart_config = Column(JSON, nullable=False, default=dict)
    recipients = Column(JSON, nullable=False, default=list)

    is_public = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    version = Column(Integer, default=1, nullable=False)
    created_by = Column(String, index=True)

    last_executed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    executions = relationship("ReportExecution", back_populates="report", cascade="all, delete-orphan", passive_deletes=True)
    schedule = relationship(
        "ScheduledReport", back_populates="report", uselist=False, cascade="all, delete-orphan", passive_deletes=True
    )

    def can_be_accessed_by(self, user_id: Optional[str]) -> bool:
        return bool(self.is_public or (user_id and self.created_by == user_id))


class ReportExecution(Base):
    """One run of a report. Older rows are pruned together with their files."""
    __tablename__ = "report_executions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    report_id = Column(String, ForeignKey("reports.id", ondelete="CASCADE"), nullable=False, index=True)

    execution_type = Column(SQLEnum(ExecutionType), nullable=False, default=ExecutionType.MANUAL)
    status = Column(SQLEnum(ExecutionStatus), nullable=False, default=ExecutionStatus.RUNNING, index=True)

    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime)
    execution_time_ms = Column(Integer)
    record_count = Column(Integer)

    file_path = Column(String)
    file_size = Column(Integer)
    file_format = Column(String)

    parameters_used = Column(JSON, nullable=False, default=dict)
    error_message = Column(Text)
    executed_by = Column(String)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    report = relationship("Report", back_populates="executions")

    @property
    def execution_time_seconds(self) -> Optional[float]:
        if self.execution_time_ms is None:
            return None
        return round(self.execution_time_ms / 1000, 2)

    @property
    def is_successful(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED

    @property
    def has_file(self) -> bool:
        return bool(self.file_path)


class ScheduledReport(Base):
    """Recurrence policy and recipient list for a report."""
    __tablename__ = "scheduled_reports"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    report_id = Column(String, ForeignKey("reports.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)

    cron_expression = Column(String, nullable=False)
    timezone = Column(String, nullable=False, default="UTC")
    recipients = Column(JSON, nullable=False, default=list)
    format = Column(SQLEnum(ExportFormat), nullable=False, default=ExportFormat.CSV)
    parameters = Column(JSON, nullable=False, default=dict)

    is_active = Column(Boolean, default=True, nullable=False, index=True)
    last_run_at = Column(DateTime)
    next_run_at = Column(DateTime, index=True)
    run_count = Column(Integer, default=0, nullable=False)
    failure_count = Column(Integer, default=0, nullable=False)

    created_by = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    report = relationship("Report", back_populates="schedule")
