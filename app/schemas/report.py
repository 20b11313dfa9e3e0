from pydantic import BaseModel, Field, EmailStr
from typing import Dict, List, Optional, Any
from datetime import datetime

from app.models.report import ReportType, ChartType, ExecutionType, ExecutionStatus, ExportFormat


# Report definitions

class ReportBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    report_type: ReportType = ReportType.CUSTOM
    query_sql: str = Field(..., min_length=1)
    filters: Dict[str, Any] = Field(default_factory=dict, description="Default values for :name parameters")
    columns: List[Any] = Field(default_factory=list)
    chart_type: ChartType = ChartType.TABLE
    chart_config: Dict[str, Any] = Field(default_factory=dict)
    recipients: List[EmailStr] = Field(default_factory=list)
    is_public: bool = False


class ReportCreate(ReportBase):
    pass


class ReportUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    report_type: Optional[ReportType] = None
    query_sql: Optional[str] = Field(None, min_length=1)
    filters: Optional[Dict[str, Any]] = None
    columns: Optional[List[Any]] = None
    chart_type: Optional[ChartType] = None
    chart_config: Optional[Dict[str, Any]] = None
    recipients: Optional[List[EmailStr]] = None
    is_public: Optional[bool] = None
    is_active: Optional[bool] = None


class ScheduleResponse(BaseModel):
    id: str
    report_id: str
    cron_expression: str
    timezone: str
    recipients: List[str]
    format: ExportFormat
    parameters: Dict[str, Any]
    is_active: bool
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    run_count: int
    failure_count: int
    created_by: Optional[str] = None

    class Config:
        from_attributes = True


class ReportResponse(ReportBase):
    id: str
    recipients: List[str] = Field(default_factory=list)
    is_active: bool
    version: int
    created_by: Optional[str] = None
    last_executed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Executions

class ExecuteRequest(BaseModel):
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ExecutionResponse(BaseModel):
    id: str
    report_id: str
    execution_type: ExecutionType
    status: ExecutionStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    execution_time_ms: Optional[int] = None
    execution_time_seconds: Optional[float] = None
    record_count: Optional[int] = None
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    file_format: Optional[str] = None
    parameters_used: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    executed_by: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ExecutionStatsResponse(BaseModel):
    total_executions: int
    successful_executions: int
    failed_executions: int
    success_rate: float
    avg_execution_time_ms: Optional[float] = None
    avg_record_count: Optional[float] = None
    last_execution_at: Optional[datetime] = None
    last_successful_execution_at: Optional[datetime] = None
    period_days: int


# Schedules

class ScheduleUpsert(BaseModel):
    cron_expression: str = Field(..., description="Standard 5-field crontab expression")
    timezone: str = "UTC"
    recipients: List[EmailStr] = Field(default_factory=list)
    format: ExportFormat = ExportFormat.CSV
    parameters: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


class SchedulePreset(BaseModel):
    expression: str
    description: str


class SchedulerJobInfo(BaseModel):
    id: str
    name: str
    next_run: Optional[str] = None
    trigger: str


class SchedulerStatusResponse(BaseModel):
    status: str
    jobs: List[SchedulerJobInfo]


# Exports

class ExportRequest(BaseModel):
    report_id: str
    format: ExportFormat = ExportFormat.CSV
    parameters: Dict[str, Any] = Field(default_factory=dict)
