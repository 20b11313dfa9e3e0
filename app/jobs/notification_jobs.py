"""
Notification Jobs

Queue sweep (every minute) and digest delivery (every 5 minutes).
"""

import logging
from datetime import datetime
from typing import Optional

from app.core.config import settings
from app.core.database import AsyncSessionLocal
from app.core.realtime import relay
from app.services.email_service import get_email_service
from app.services.notification_manager import NotificationManager
from app.services.realtime_service import RealtimeService

logger = logging.getLogger(__name__)


def _manager(db) -> NotificationManager:
    return NotificationManager(db, RealtimeService(relay), get_email_service())


async def process_notification_queue_job(now: Optional[datetime] = None) -> dict:
    if not settings.NOTIFICATION_ENABLED:
        return {"job_type": "notification_queue", "skipped": True}

    async with AsyncSessionLocal() as db:
        summary = await _manager(db).process_queue(now)

    return {"job_type": "notification_queue", **summary, "completed_at": datetime.utcnow().isoformat()}


async def send_digests_job(now: Optional[datetime] = None) -> dict:
    if not settings.NOTIFICATION_ENABLED:
        return {"job_type": "notification_digests", "skipped": True}

    async with AsyncSessionLocal() as db:
        summary = await _manager(db).send_digests(now)

    return {"job_type": "notification_digests", **summary, "completed_at": datetime.utcnow().isoformat()}
