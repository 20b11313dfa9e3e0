"""
Shared API dependencies.

The service sits behind the AidlY gateway, which authenticates callers and
forwards their identity as X-User-Id / X-User-Role / X-Department-Id headers.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import MetricsCache, get_cache
from app.core.database import AsyncSessionLocal, get_db
from app.core.realtime import ChannelRelay, get_relay
from app.core.storage import FileStorage, get_storage
from app.models.user import UserRole
from app.services.email_service import Mailer, get_email_service
from app.services.notification_manager import NotificationManager
from app.services.realtime_service import RealtimeService
from app.services.report_execution_service import ReportExecutionService
from app.services.scheduled_report_service import ScheduledReportService


@dataclass(frozen=True)
class Actor:
    id: str
    role: UserRole
    department_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


async def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_department_id: Optional[str] = Header(None),
) -> Actor:
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing caller identity"
        )
    try:
        role = UserRole(x_user_role or UserRole.AGENT.value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Unknown role: {x_user_role}"
        )
    return Actor(id=x_user_id, role=role, department_id=x_department_id or None)


def get_session_factory():
    """Session factory for work that needs its own sessions (job retries)."""
    return AsyncSessionLocal


def get_file_storage() -> FileStorage:
    return get_storage()


def get_metrics_cache() -> MetricsCache:
    return get_cache()


def get_mailer() -> Mailer:
    return get_email_service()


async def get_realtime_service(relay: ChannelRelay = Depends(get_relay)) -> RealtimeService:
    return RealtimeService(relay)


def get_execution_service(
    db: AsyncSession = Depends(get_db),
    storage: FileStorage = Depends(get_file_storage),
) -> ReportExecutionService:
    return ReportExecutionService(db, storage)


def get_scheduled_report_service(
    db: AsyncSession = Depends(get_db),
    execution_service: ReportExecutionService = Depends(get_execution_service),
    mailer: Mailer = Depends(get_mailer),
) -> ScheduledReportService:
    return ScheduledReportService(db, execution_service, mailer)


def get_notification_manager(
    db: AsyncSession = Depends(get_db),
    realtime: RealtimeService = Depends(get_realtime_service),
    mailer: Mailer = Depends(get_mailer),
) -> NotificationManager:
    return NotificationManager(db, realtime, mailer)
