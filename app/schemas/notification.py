"""
Notification Schemas

Pydantic models for notification dispatch, listing and preferences.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from app.models.notification import (
    NotifiableType,
    NotificationChannel,
    NotificationStatus,
    NotificationPriority,
    EmailFrequency,
)


# ============================================================================
# Dispatch
# ============================================================================

class NotifyRequest(BaseModel):
    """One notification event for one recipient."""
    notifiable_id: str
    notifiable_type: NotifiableType = NotifiableType.USER
    type: str = Field(..., description="Event type, e.g. ticket_assigned")
    channel: NotificationChannel = NotificationChannel.IN_APP
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)
    ticket_id: Optional[str] = None
    comment_id: Optional[str] = None
    triggered_by: Optional[str] = None
    action_url: Optional[str] = None
    action_text: Optional[str] = None
    priority: NotificationPriority = NotificationPriority.NORMAL
    group_key: Optional[str] = None


class NotificationResponse(BaseModel):
    id: str
    notifiable_id: str
    notifiable_type: NotifiableType
    type: str
    channel: NotificationChannel
    status: NotificationStatus
    priority: NotificationPriority
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    action_url: Optional[str] = None
    action_text: Optional[str] = None
    ticket_id: Optional[str] = None
    group_key: Optional[str] = None
    retry_count: int = 0
    is_read: bool
    created_at: datetime
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MarkReadRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)


class NotificationStatsResponse(BaseModel):
    total: int
    unread: int
    high_priority_unread: int
    by_type: Dict[str, int]


# ============================================================================
# Preferences
# ============================================================================

class NotificationPreferenceResponse(BaseModel):
    notifiable_id: str
    notifiable_type: NotifiableType
    email_enabled: bool
    in_app_enabled: bool
    push_enabled: bool
    sms_enabled: bool
    events: Optional[Dict[str, Dict[str, bool]]] = None
    email_frequency: EmailFrequency
    digest_enabled: bool
    digest_time: str
    digest_days: Optional[List[int]] = None
    quiet_hours_enabled: bool
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    timezone: str
    dnd_enabled: bool
    dnd_until: Optional[datetime] = None

    class Config:
        from_attributes = True


class NotificationPreferenceUpdate(BaseModel):
    """Partial update; only provided fields change."""
    email_enabled: Optional[bool] = None
    in_app_enabled: Optional[bool] = None
    push_enabled: Optional[bool] = None
    sms_enabled: Optional[bool] = None
    events: Optional[Dict[str, Dict[str, bool]]] = None
    email_frequency: Optional[EmailFrequency] = None
    digest_enabled: Optional[bool] = None
    digest_time: Optional[str] = Field(None, pattern=r"^\d{2}:\d{2}$")
    digest_days: Optional[List[int]] = None
    quiet_hours_enabled: Optional[bool] = None
    quiet_hours_start: Optional[str] = Field(None, pattern=r"^\d{2}:\d{2}$")
    quiet_hours_end: Optional[str] = Field(None, pattern=r"^\d{2}:\d{2}$")
    timezone: Optional[str] = None

    @field_validator("digest_days")
    @classmethod
    def valid_days(cls, v: Optional[List[int]]) -> Optional[List[int]]:
        if v is not None and any(d < 0 or d > 6 for d in v):
            raise ValueError("digest_days must contain values 0 (Sunday) to 6 (Saturday)")
        return v


class DndRequest(BaseModel):
    until: Optional[datetime] = Field(None, description="Naive UTC; omit for indefinite")
