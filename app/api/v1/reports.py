from fastapi import APIRouter, Depends, HTTPException, status, Query, Body
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import logging

from app.api.deps import (
    Actor,
    get_actor,
    get_execution_service,
    get_file_storage,
    get_scheduled_report_service,
)
from app.core.cron import get_common_schedules
from app.core.database import get_db
from app.core.storage import FileStorage
from app.jobs.scheduler import get_scheduler_status
from app.models.report import Report, ReportType
from app.schemas.common import PaginationMeta, envelope
from app.schemas.report import (
    ReportCreate,
    ReportUpdate,
    ReportResponse,
    ExecuteRequest,
    ExecutionResponse,
    ExecutionStatsResponse,
    ScheduleUpsert,
    ScheduleResponse,
    SchedulePreset,
    SchedulerStatusResponse,
)
from app.services.report_execution_service import ReportExecutionService
from app.services.report_service import ReportService
from app.services.scheduled_report_service import ScheduledReportService

logger = logging.getLogger(__name__)

router = APIRouter()


async def _load_report(db: AsyncSession, report_id: str, actor: Actor) -> Report:
    return await ReportService(db).get_report(report_id, actor.id, include_private=actor.is_admin)


def _require_owner(report: Report, actor: Actor):
    if report.created_by != actor.id and not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the report owner can modify this report"
        )


# ============================================================================
# Static routes (declared before /{report_id})
# ============================================================================

@router.get("/schedules/presets")
async def list_schedule_presets(actor: Actor = Depends(get_actor)):
    """Common cron expressions with human-readable descriptions."""
    return envelope([SchedulePreset(**preset) for preset in get_common_schedules()])


@router.get("/scheduler/status")
async def scheduler_status(actor: Actor = Depends(get_actor)):
    """Status of the background scheduler and its registered jobs."""
    return envelope(SchedulerStatusResponse(**get_scheduler_status()))


# ============================================================================
# Report definitions
# ============================================================================

@router.get("")
async def list_reports(
    report_type: Optional[ReportType] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
):
    """Reports owned by the caller plus public ones."""
    reports, total = await ReportService(db).list_reports(
        user_id=actor.id,
        report_type=report_type,
        skip=(page - 1) * per_page,
        limit=per_page
    )
    return envelope(
        [ReportResponse.model_validate(r) for r in reports],
        meta=PaginationMeta.build(total, page, per_page)
    )


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_report(
    report_in: ReportCreate,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
):
    report = await ReportService(db).create_report(report_in.model_dump(), created_by=actor.id)
    return envelope(ReportResponse.model_validate(report), message="Report created")


@router.get("/{report_id}")
async def get_report(
    report_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
):
    report = await _load_report(db, report_id, actor)
    data = ReportResponse.model_validate(report).model_dump(mode="json")
    data["schedule"] = (
        ScheduleResponse.model_validate(report.schedule).model_dump(mode="json")
        if report.schedule else None
    )
    return envelope(data)


@router.put("/{report_id}")
async def update_report(
    report_id: str,
    report_in: ReportUpdate,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
):
    service = ReportService(db)
    report = await _load_report(db, report_id, actor)
    _require_owner(report, actor)

    report = await service.update_report(report, report_in.model_dump(exclude_unset=True))
    return envelope(ReportResponse.model_validate(report), message="Report updated")


@router.delete("/{report_id}")
async def delete_report(
    report_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    storage: FileStorage = Depends(get_file_storage)
):
    report = await _load_report(db, report_id, actor)
    _require_owner(report, actor)

    await ReportService(db).delete_report(report, storage)
    return envelope(None, message="Report deleted")


# ============================================================================
# Execution
# ============================================================================

@router.post("/{report_id}/execute")
async def execute_report(
    report_id: str,
    request: Optional[ExecuteRequest] = Body(None),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    execution_service: ReportExecutionService = Depends(get_execution_service)
):
    """Run the report now; a failed run is returned with success=false."""
    report = await _load_report(db, report_id, actor)
    parameters = request.parameters if request else {}

    execution, rows = await execution_service.execute_for_data(report, parameters, executed_by=actor.id)
    return {
        "success": execution.is_successful,
        "data": {
            "execution": ExecutionResponse.model_validate(execution),
            "rows": rows,
        },
        "message": execution.error_message,
    }


@router.get("/{report_id}/executions")
async def list_executions(
    report_id: str,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    execution_service: ReportExecutionService = Depends(get_execution_service)
):
    await _load_report(db, report_id, actor)
    executions, total = await execution_service.list_executions(
        report_id, skip=(page - 1) * per_page, limit=per_page
    )
    return envelope(
        [ExecutionResponse.model_validate(e) for e in executions],
        meta=PaginationMeta.build(total, page, per_page)
    )


@router.get("/{report_id}/stats")
async def execution_stats(
    report_id: str,
    days: Optional[int] = Query(None, ge=1, le=365),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    execution_service: ReportExecutionService = Depends(get_execution_service)
):
    await _load_report(db, report_id, actor)
    stats = await execution_service.get_execution_stats(report_id, days)
    return envelope(ExecutionStatsResponse(**stats))


# ============================================================================
# Schedule
# ============================================================================

@router.get("/{report_id}/schedule")
async def get_schedule(
    report_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    schedule_service: ScheduledReportService = Depends(get_scheduled_report_service)
):
    await _load_report(db, report_id, actor)
    schedule = await schedule_service.get_schedule(report_id)
    if schedule is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Report {report_id} has no schedule"
        )
    return envelope(ScheduleResponse.model_validate(schedule))


@router.put("/{report_id}/schedule")
async def upsert_schedule(
    report_id: str,
    schedule_in: ScheduleUpsert,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    schedule_service: ScheduledReportService = Depends(get_scheduled_report_service)
):
    """Create or replace the report's schedule; the cron expression is validated."""
    report = await _load_report(db, report_id, actor)
    _require_owner(report, actor)

    schedule = await schedule_service.upsert_schedule(
        report,
        cron_expression=schedule_in.cron_expression,
        timezone=schedule_in.timezone,
        recipients=[str(r) for r in schedule_in.recipients],
        format=schedule_in.format,
        parameters=schedule_in.parameters,
        is_active=schedule_in.is_active,
        created_by=actor.id,
    )
    return envelope(ScheduleResponse.model_validate(schedule), message="Schedule saved")


@router.delete("/{report_id}/schedule")
async def delete_schedule(
    report_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    schedule_service: ScheduledReportService = Depends(get_scheduled_report_service)
):
    report = await _load_report(db, report_id, actor)
    _require_owner(report, actor)

    schedule = await schedule_service.get_schedule(report_id)
    if schedule is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Report {report_id} has no schedule"
        )
    await schedule_service.delete_schedule(schedule)
    return envelope(None, message="Schedule deleted")
