"""
Notification Models

Notification records (one per recipient per channel) and per-recipient
delivery preferences.
"""

from sqlalchemy import Column, String, Boolean, DateTime, Enum as SQLEnum, Text, JSON, Integer, UniqueConstraint
from datetime import datetime
import uuid
import enum
from app.core.database import Base


class NotifiableType(str, enum.Enum):
    USER = "user"
    CLIENT = "client"


class NotificationEventType(str, enum.Enum):
    """Event types with default channel preferences."""
    TICKET_ASSIGNED = "ticket_assigned"
    TICKET_UPDATED = "ticket_updated"
    COMMENT_ADDED = "comment_added"
    TICKET_RESOLVED = "ticket_resolved"
    MENTION = "mention"
    SLA_BREACH = "sla_breach"
    TICKET_ESCALATED = "ticket_escalated"
    NEW_TICKET = "new_ticket"


class NotificationChannel(str, enum.Enum):
    EMAIL = "email"
    IN_APP = "in_app"
    PUSH = "push"
    SMS = "sms"


class NotificationStatus(str, enum.Enum):
    PENDING = "pending"
    QUEUED = "queued"  # parked for digest delivery
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class NotificationPriority(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class EmailFrequency(str, enum.Enum):
    IMMEDIATE = "immediate"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class Notification(Base):
    """
    One event delivered to one recipient over one channel.

    Content is never edited after creation; only delivery and read state move.
    """
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    # Recipient
    notifiable_id = Column(String, nullable=False, index=True)
    notifiable_type = Column(SQLEnum(NotifiableType), nullable=False, default=NotifiableType.USER)

    # Event
    type = Column(String, nullable=False, index=True)
    channel = Column(SQLEnum(NotificationChannel), nullable=False, default=NotificationChannel.IN_APP, index=True)
    priority = Column(SQLEnum(NotificationPriority), nullable=False, default=NotificationPriority.NORMAL)
    status = Column(SQLEnum(NotificationStatus), nullable=False, default=NotificationStatus.PENDING, index=True)

    # Related entities
    ticket_id = Column(String, index=True)
    comment_id = Column(String)
    triggered_by = Column(String)

    # Content
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    action_url = Column(String)
    action_text = Column(String)
    group_key = Column(String, index=True)

    # Delivery metadata
    retry_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    sent_at = Column(DateTime)
    delivered_at = Column(DateTime)
    read_at = Column(DateTime)
    failed_at = Column(DateTime)

    @property
    def is_read(self) -> bool:
        return self.read_at is not None

    def mark_as_sent(self):
        self.status = NotificationStatus.SENT
        self.sent_at = datetime.utcnow()

    def mark_as_delivered(self):
        self.status = NotificationStatus.DELIVERED
        self.delivered_at = datetime.utcnow()

    def mark_as_read(self):
        self.status = NotificationStatus.READ
        self.read_at = datetime.utcnow()

    def mark_as_failed(self, error: str = None):
        self.status = NotificationStatus.FAILED
        self.failed_at = datetime.utcnow()
        self.retry_count = (self.retry_count or 0) + 1
        self.error_message = error

    def to_api_response(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "channel": self.channel.value if self.channel else None,
            "status": self.status.value if self.status else None,
            "title": self.title,
            "message": self.message,
            "action_url": self.action_url,
            "action_text": self.action_text,
            "data": self.data or {},
            "priority": self.priority.value if self.priority else None,
            "is_read": self.is_read,
            "created_at": self.created_at,
            "read_at": self.read_at,
        }


class NotificationPreference(Base):
    """Per-recipient channel, digest, quiet-hours and do-not-disturb settings."""
    __tablename__ = "notification_preferences"
    __table_args__ = (
        UniqueConstraint("notifiable_id", "notifiable_type", name="uq_notification_preferences_notifiable"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    notifiable_id = Column(String, nullable=False, index=True)
    notifiable_type = Column(SQLEnum(NotifiableType), nullable=False, default=NotifiableType.USER)

    # Global channel toggles
    email_enabled = Column(Boolean, default=True, nullable=False)
    in_app_enabled = Column(Boolean, default=True, nullable=False)
    push_enabled = Column(Boolean, default=False, nullable=False)
    sms_enabled = Column(Boolean, default=False, nullable=False)

    # {event_type: {channel: bool}}
    events = Column(JSON)

    # Email batching
    email_frequency = Column(SQLEnum(EmailFrequency), nullable=False, default=EmailFrequency.IMMEDIATE)
    digest_enabled = Column(Boolean, default=False, nullable=False)
    digest_time = Column(String, default="09:00", nullable=False)  # Format: "HH:MM"
    digest_days = Column(JSON)  # 0=Sunday .. 6=Saturday; empty means every day

    # Quiet hours (local to `timezone`)
    quiet_hours_enabled = Column(Boolean, default=False, nullable=False)
    quiet_hours_start = Column(String, default="22:00")
    quiet_hours_end = Column(String, default="08:00")
    timezone = Column(String, default="UTC", nullable=False)

    # Do not disturb
    dnd_enabled = Column(Boolean, default=False, nullable=False)
    dnd_until = Column(DateTime)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
