"""
Report Definition Service

CRUD for saved report definitions with owner/public access rules. Changing
the query, filters or columns bumps the report version.
"""

from typing import Optional, Dict, Any, List, Tuple
from sqlalchemy import select, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
import logging

from app.core.exceptions import NotFoundError
from app.core.storage import FileStorage
from app.models.report import Report, ReportExecution, ReportType
from app.services.report_execution_service import validate_query

logger = logging.getLogger(__name__)

VERSIONED_FIELDS = ("query_sql", "filters", "columns")


class ReportService:
    """Service for managing report definitions."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_report(
        self,
        report_id: str,
        user_id: Optional[str] = None,
        include_private: bool = False
    ) -> Report:
        """
        Get a report visible to the given user (any report with include_private).

        Raises:
            NotFoundError: If the report does not exist or is private to
                another user.
        """
        result = await self.db.execute(
            select(Report)
            .options(selectinload(Report.schedule))
            .where(Report.id == report_id)
            .execution_options(populate_existing=True)
        )
        report = result.scalar_one_or_none()
        if report is None or not (include_private or report.can_be_accessed_by(user_id)):
            raise NotFoundError(f"Report {report_id} not found")
        return report

    async def list_reports(
        self,
        user_id: Optional[str] = None,
        report_type: Optional[ReportType] = None,
        skip: int = 0,
        limit: int = 20
    ) -> Tuple[List[Report], int]:
        """
        List reports owned by the user or public.

        Returns:
            Tuple of (reports list, total count)
        """
        visibility = Report.is_public == True
        if user_id:
            visibility = or_(visibility, Report.created_by == user_id)

        conditions = [visibility, Report.is_active == True]
        if report_type:
            conditions.append(Report.report_type == report_type)

        count_result = await self.db.execute(
            select(func.count(Report.id)).where(and_(*conditions))
        )
        total = count_result.scalar() or 0

        result = await self.db.execute(
            select(Report)
            .where(and_(*conditions))
            .order_by(Report.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def create_report(self, data: Dict[str, Any], created_by: Optional[str] = None) -> Report:
        validate_query(data["query_sql"])

        report = Report(**data, created_by=created_by)
        self.db.add(report)
        await self.db.commit()
        await self.db.refresh(report)

        logger.info(f"Created report {report.id} '{report.name}' for user {created_by}")
        return report

    async def update_report(self, report: Report, changes: Dict[str, Any]) -> Report:
        if "query_sql" in changes:
            validate_query(changes["query_sql"])

        version_changed = any(
            name in changes and changes[name] != getattr(report, name)
            for name in VERSIONED_FIELDS
        )

        for name, value in changes.items():
            setattr(report, name, value)
        if version_changed:
            report.version = (report.version or 1) + 1

        await self.db.commit()
        await self.db.refresh(report)
        return report

    async def delete_report(self, report: Report, storage: Optional[FileStorage] = None) -> None:
        """Delete a report with its schedule, executions and their output files."""
        result = await self.db.execute(
            select(ReportExecution).where(ReportExecution.report_id == report.id)
        )
        for execution in result.scalars().all():
            if storage is not None and execution.file_path:
                await storage.delete(execution.file_path)
            await self.db.delete(execution)

        await self.db.delete(report)
        await self.db.commit()
        logger.info(f"Deleted report {report.id}")
