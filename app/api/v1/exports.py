"""
Export API Endpoints

Runs a report into a CSV/JSON file and returns it as a download; stored
export files can be fetched again later by execution id.
"""

import logging
import os

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import Actor, get_actor, get_execution_service
from app.core.database import get_db
from app.models.report import ExecutionType, ExportFormat
from app.schemas.report import ExportRequest
from app.services.report_execution_service import ReportExecutionService, EXPORT_CONTENT_TYPES
from app.services.report_service import ReportService

logger = logging.getLogger(__name__)

router = APIRouter()


def _download(content: bytes, filename: str, export_format: ExportFormat) -> Response:
    return Response(
        content=content,
        media_type=EXPORT_CONTENT_TYPES[export_format],
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


@router.post("/reports")
async def export_report(
    request: ExportRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    execution_service: ReportExecutionService = Depends(get_execution_service)
):
    """Execute a report into a file and return the file."""
    report = await ReportService(db).get_report(request.report_id, actor.id, include_private=actor.is_admin)

    execution = await execution_service.execute_with_export(
        report,
        request.format,
        request.parameters,
        execution_type=ExecutionType.EXPORT,
        executed_by=actor.id
    )
    if not execution.is_successful:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=execution.error_message or "Export failed"
        )

    content = await execution_service.read_export(execution)
    logger.info(f"Exported report {report.id} as {request.format.value} ({len(content)} bytes)")
    return _download(content, os.path.basename(execution.file_path), request.format)


@router.get("/executions/{execution_id}/download")
async def download_execution_file(
    execution_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    execution_service: ReportExecutionService = Depends(get_execution_service)
):
    execution = await execution_service.get_execution(execution_id)
    if execution is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Execution {execution_id} not found"
        )
    # Visibility follows the report
    await ReportService(db).get_report(execution.report_id, actor.id, include_private=actor.is_admin)

    content = await execution_service.read_export(execution)
    return _download(content, os.path.basename(execution.file_path), ExportFormat(execution.file_format))
