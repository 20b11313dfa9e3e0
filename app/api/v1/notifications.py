"""
Notification API Endpoints

Dispatch, listing, read state and preferences. Recipients default to the
calling user; only admins may act on another recipient's notifications.
"""

from fastapi import APIRouter, Depends, HTTPException, status, Query, Body
from typing import Optional
import logging

from app.api.deps import Actor, get_actor, get_notification_manager
from app.models.notification import NotifiableType
from app.schemas.common import PaginationMeta, envelope
from app.schemas.notification import (
    NotifyRequest,
    NotificationResponse,
    MarkReadRequest,
    NotificationStatsResponse,
    NotificationPreferenceResponse,
    NotificationPreferenceUpdate,
    DndRequest,
)
from app.services.notification_manager import NotificationManager, NotificationEvent

logger = logging.getLogger(__name__)
router = APIRouter()


class Recipient:
    """Resolves the notifiable addressed by a request."""

    def __init__(
        self,
        notifiable_id: Optional[str] = Query(None, description="Defaults to the caller"),
        notifiable_type: NotifiableType = Query(NotifiableType.USER),
        actor: Actor = Depends(get_actor),
    ):
        self.id = notifiable_id or actor.id
        self.type = notifiable_type
        if self.id != actor.id and not actor.is_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not authorized to access another recipient's notifications"
            )


def _serialize(notifications):
    return [NotificationResponse.model_validate(n) for n in notifications]


# ============================================================================
# Dispatch
# ============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_notification(
    request: NotifyRequest,
    actor: Actor = Depends(get_actor),
    manager: NotificationManager = Depends(get_notification_manager)
):
    """Create one notification on one channel and deliver it when allowed."""
    event = NotificationEvent(**request.model_dump())
    if event.triggered_by is None:
        event.triggered_by = actor.id

    notification = await manager.notify(event)
    if notification is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create notification"
        )
    return envelope(NotificationResponse.model_validate(notification))


@router.post("/all-channels", status_code=status.HTTP_201_CREATED)
async def create_notification_all_channels(
    request: NotifyRequest,
    actor: Actor = Depends(get_actor),
    manager: NotificationManager = Depends(get_notification_manager)
):
    """One notification per channel the recipient's preferences allow."""
    event = NotificationEvent(**request.model_dump())
    if event.triggered_by is None:
        event.triggered_by = actor.id

    notifications = await manager.notify_all_channels(event)
    return envelope(_serialize(notifications), meta={"count": len(notifications)})


# ============================================================================
# Listing
# ============================================================================

@router.get("")
async def list_notifications(
    unread_only: bool = Query(False),
    type: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    recipient: Recipient = Depends(),
    manager: NotificationManager = Depends(get_notification_manager)
):
    notifications, total = await manager.list_notifications(
        recipient.id, recipient.type, unread_only=unread_only, type=type, page=page, per_page=per_page
    )
    return envelope(_serialize(notifications), meta=PaginationMeta.build(total, page, per_page))


@router.get("/unread")
async def list_unread(
    limit: int = Query(20, ge=1, le=100),
    recipient: Recipient = Depends(),
    manager: NotificationManager = Depends(get_notification_manager)
):
    notifications = await manager.get_unread(recipient.id, recipient.type, limit)
    return envelope(_serialize(notifications), meta={"unread": len(notifications)})


@router.get("/stats")
async def notification_stats(
    recipient: Recipient = Depends(),
    manager: NotificationManager = Depends(get_notification_manager)
):
    stats = await manager.get_stats(recipient.id, recipient.type)
    return envelope(NotificationStatsResponse(**stats))


# ============================================================================
# Bulk read state
# ============================================================================

@router.post("/mark-read")
async def mark_multiple_read(
    request: MarkReadRequest,
    recipient: Recipient = Depends(),
    manager: NotificationManager = Depends(get_notification_manager)
):
    updated = await manager.mark_multiple_as_read(request.ids, recipient.id, recipient.type)
    return envelope({"updated": updated})


@router.post("/mark-all-read")
async def mark_all_read(
    recipient: Recipient = Depends(),
    manager: NotificationManager = Depends(get_notification_manager)
):
    updated = await manager.mark_all_as_read(recipient.id, recipient.type)
    return envelope({"updated": updated})


# ============================================================================
# Preferences
# ============================================================================

@router.get("/preferences")
async def get_preferences(
    recipient: Recipient = Depends(),
    manager: NotificationManager = Depends(get_notification_manager)
):
    """Creates default preferences if none exist."""
    preference = await manager.get_or_create_preferences(recipient.id, recipient.type)
    return envelope(NotificationPreferenceResponse.model_validate(preference))


@router.put("/preferences")
async def update_preferences(
    preference_update: NotificationPreferenceUpdate,
    recipient: Recipient = Depends(),
    manager: NotificationManager = Depends(get_notification_manager)
):
    preference = await manager.update_preferences(
        recipient.id, recipient.type, preference_update.model_dump(exclude_unset=True)
    )
    logger.info(f"Updated notification preferences for {recipient.type.value} {recipient.id}")
    return envelope(NotificationPreferenceResponse.model_validate(preference))


@router.post("/preferences/dnd")
async def enable_dnd(
    request: Optional[DndRequest] = Body(None),
    recipient: Recipient = Depends(),
    manager: NotificationManager = Depends(get_notification_manager)
):
    preference = await manager.enable_dnd(recipient.id, recipient.type, request.until if request else None)
    return envelope(NotificationPreferenceResponse.model_validate(preference))


@router.delete("/preferences/dnd")
async def disable_dnd(
    recipient: Recipient = Depends(),
    manager: NotificationManager = Depends(get_notification_manager)
):
    preference = await manager.disable_dnd(recipient.id, recipient.type)
    return envelope(NotificationPreferenceResponse.model_validate(preference))


# ============================================================================
# Single notification
# ============================================================================

@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    recipient: Recipient = Depends(),
    manager: NotificationManager = Depends(get_notification_manager)
):
    notification = await manager.mark_as_read(notification_id, recipient.id)
    return envelope(NotificationResponse.model_validate(notification))


@router.post("/{notification_id}/unread")
async def mark_unread(
    notification_id: str,
    recipient: Recipient = Depends(),
    manager: NotificationManager = Depends(get_notification_manager)
):
    notification = await manager.mark_as_unread(notification_id, recipient.id)
    return envelope(NotificationResponse.model_validate(notification))


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    recipient: Recipient = Depends(),
    manager: NotificationManager = Depends(get_notification_manager)
):
    await manager.delete(notification_id, recipient.id)
    return envelope(None, message="Notification deleted")
