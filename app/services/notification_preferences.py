"""
Notification preference resolution.

Pure functions over an immutable PreferenceSnapshot taken once per dispatch.
Nothing in here touches the database; `now` is always passed in (naive UTC).
"""

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone as dt_timezone
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.core.config import settings
from app.models.notification import (
    EmailFrequency,
    NotificationChannel,
    NotificationEventType,
    NotificationPreference,
)

CHANNEL_ORDER = (
    NotificationChannel.EMAIL,
    NotificationChannel.IN_APP,
    NotificationChannel.PUSH,
    NotificationChannel.SMS,
)


def _events(email=False, in_app=False, push=False, sms=False) -> Dict[str, bool]:
    return {"email": email, "in_app": in_app, "push": push, "sms": sms}


DEFAULT_EVENTS: Dict[str, Dict[str, bool]] = {
    NotificationEventType.TICKET_ASSIGNED.value: _events(email=True, in_app=True),
    NotificationEventType.TICKET_UPDATED.value: _events(in_app=True),
    NotificationEventType.COMMENT_ADDED.value: _events(email=True, in_app=True, push=True),
    NotificationEventType.TICKET_RESOLVED.value: _events(email=True),
    NotificationEventType.MENTION.value: _events(email=True, in_app=True, push=True),
    NotificationEventType.SLA_BREACH.value: _events(email=True, in_app=True, push=True),
    NotificationEventType.TICKET_ESCALATED.value: _events(email=True, in_app=True, push=True),
    NotificationEventType.NEW_TICKET.value: _events(email=True, in_app=True),
}


def default_events() -> Dict[str, Dict[str, bool]]:
    return {event: dict(channels) for event, channels in DEFAULT_EVENTS.items()}


@dataclass(frozen=True)
class PreferenceSnapshot:
    email_enabled: bool = True
    in_app_enabled: bool = True
    push_enabled: bool = False
    sms_enabled: bool = False
    events: Dict[str, Dict[str, bool]] = field(default_factory=default_events)
    email_frequency: EmailFrequency = EmailFrequency.IMMEDIATE
    digest_enabled: bool = False
    digest_time: str = "09:00"
    digest_days: Tuple[int, ...] = ()
    quiet_hours_enabled: bool = False
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "08:00"
    timezone: str = "UTC"
    dnd_enabled: bool = False
    dnd_until: Optional[datetime] = None

    @classmethod
    def from_model(cls, preference: Optional[NotificationPreference]) -> "PreferenceSnapshot":
        """Snapshot a preference row; defaults when the recipient has none."""
        if preference is None:
            return cls()

        defaults = cls()
        return cls(
            email_enabled=preference.email_enabled,
            in_app_enabled=preference.in_app_enabled,
            push_enabled=preference.push_enabled,
            sms_enabled=preference.sms_enabled,
            events=preference.events if preference.events is not None else default_events(),
            email_frequency=EmailFrequency(preference.email_frequency or EmailFrequency.IMMEDIATE),
            digest_enabled=preference.digest_enabled,
            digest_time=preference.digest_time or defaults.digest_time,
            digest_days=tuple(preference.digest_days or ()),
            quiet_hours_enabled=preference.quiet_hours_enabled,
            quiet_hours_start=preference.quiet_hours_start or defaults.quiet_hours_start,
            quiet_hours_end=preference.quiet_hours_end or defaults.quiet_hours_end,
            timezone=preference.timezone or "UTC",
            dnd_enabled=preference.dnd_enabled,
            dnd_until=preference.dnd_until,
        )

    def channel_flag(self, channel: NotificationChannel) -> bool:
        return {
            NotificationChannel.EMAIL: self.email_enabled,
            NotificationChannel.IN_APP: self.in_app_enabled,
            NotificationChannel.PUSH: self.push_enabled,
            NotificationChannel.SMS: self.sms_enabled,
        }.get(channel, False)


# ============================================================================
# Time helpers
# ============================================================================

def parse_clock(value: str) -> time:
    """Parse "HH:MM" (seconds tolerated)."""
    parts = value.split(":")
    return time(int(parts[0]), int(parts[1]))


def is_valid_timezone(tz_name: str) -> bool:
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def local_time(now: datetime, tz_name: str) -> datetime:
    """Convert naive UTC `now` into the recipient's timezone."""
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        tz = ZoneInfo("UTC")
    return now.replace(tzinfo=dt_timezone.utc).astimezone(tz)


# ============================================================================
# Rules
# ============================================================================

def is_dnd_active(snapshot: PreferenceSnapshot, now: datetime) -> bool:
    if not snapshot.dnd_enabled:
        return False
    return snapshot.dnd_until is None or snapshot.dnd_until > now


def is_in_quiet_hours(snapshot: PreferenceSnapshot, now: datetime) -> bool:
    if not snapshot.quiet_hours_enabled:
        return False

    current = local_time(now, snapshot.timezone).time().replace(second=0, microsecond=0)
    start = parse_clock(snapshot.quiet_hours_start)
    end = parse_clock(snapshot.quiet_hours_end)

    if start == end:
        return False
    if start < end:
        return start <= current < end
    # Span crosses midnight, e.g. 22:00-08:00
    return current >= start or current < end


def is_event_channel_enabled(
    snapshot: PreferenceSnapshot,
    event_type: str,
    channel: NotificationChannel,
    now: datetime
) -> bool:
    channel = NotificationChannel(channel)

    if is_dnd_active(snapshot, now):
        return False
    if not snapshot.channel_flag(channel):
        return False
    # In-app delivery is silent, so quiet hours do not apply to it
    if channel != NotificationChannel.IN_APP and is_in_quiet_hours(snapshot, now):
        return False

    event_channels = (snapshot.events or {}).get(event_type)
    if event_channels is None or channel.value not in event_channels:
        return True
    return bool(event_channels[channel.value])


def enabled_channels(snapshot: PreferenceSnapshot, event_type: str, now: datetime) -> List[NotificationChannel]:
    return [
        channel for channel in CHANNEL_ORDER
        if is_event_channel_enabled(snapshot, event_type, channel, now)
    ]


def should_queue_for_digest(snapshot: PreferenceSnapshot, channel: NotificationChannel) -> bool:
    return (
        NotificationChannel(channel) == NotificationChannel.EMAIL
        and snapshot.digest_enabled
        and snapshot.email_frequency != EmailFrequency.IMMEDIATE
    )


def should_send_digest_now(snapshot: PreferenceSnapshot, now: datetime) -> bool:
    """True when local time is within the digest window after digest_time."""
    if not snapshot.digest_enabled:
        return False

    local_now = local_time(now, snapshot.timezone)

    # digest_days uses 0=Sunday; isoweekday() is 1=Monday..7=Sunday
    if snapshot.digest_days and local_now.isoweekday() % 7 not in snapshot.digest_days:
        return False

    target = local_now.replace(
        hour=parse_clock(snapshot.digest_time).hour,
        minute=parse_clock(snapshot.digest_time).minute,
        second=0,
        microsecond=0
    )
    window = timedelta(minutes=settings.DIGEST_WINDOW_MINUTES)
    return target <= local_now < target + window
