"""
Notification Manager

Creates notification records and delivers them:

- notify(): one record on one channel, delivered immediately when the
  recipient's preferences allow it
- notify_all_channels(): one record per channel the preferences allow
- process_queue(): re-sends stale pending rows and retries failed ones
- send_digests(): batches queued email notifications into one digest email

Preferences are read once per dispatch into a PreferenceSnapshot and resolved
with the pure functions in notification_preferences.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Tuple, Callable

from sqlalchemy import select, update, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import NotFoundError, ValidationError
from app.models.client import Client
from app.models.notification import (
    Notification,
    NotificationPreference,
    NotifiableType,
    NotificationChannel,
    NotificationStatus,
    NotificationPriority,
    EmailFrequency,
)
from app.models.user import User
from app.services.email_service import Mailer, render_template
from app.services.metrics_service import metrics_collector
from app.services.notification_preferences import (
    PreferenceSnapshot,
    default_events,
    enabled_channels,
    is_event_channel_enabled,
    is_valid_timezone,
    parse_clock,
    should_queue_for_digest,
    should_send_digest_now,
)
from app.services.realtime_service import RealtimeService

logger = logging.getLogger(__name__)

HIGH_PRIORITIES = (NotificationPriority.HIGH, NotificationPriority.URGENT)

PREFERENCE_FIELDS = {
    "email_enabled", "in_app_enabled", "push_enabled", "sms_enabled", "events",
    "email_frequency", "digest_enabled", "digest_time", "digest_days",
    "quiet_hours_enabled", "quiet_hours_start", "quiet_hours_end", "timezone",
    "dnd_enabled", "dnd_until",
}


@dataclass
class NotificationEvent:
    """A domain event addressed to one recipient."""
    notifiable_id: str
    type: str
    title: str
    message: str
    notifiable_type: NotifiableType = NotifiableType.USER
    channel: NotificationChannel = NotificationChannel.IN_APP
    data: Dict[str, Any] = field(default_factory=dict)
    ticket_id: Optional[str] = None
    comment_id: Optional[str] = None
    triggered_by: Optional[str] = None
    action_url: Optional[str] = None
    action_text: Optional[str] = None
    priority: NotificationPriority = NotificationPriority.NORMAL
    group_key: Optional[str] = None


class NotificationManager:
    """Creates, delivers and tracks notifications."""

    def __init__(
        self,
        db: AsyncSession,
        realtime: RealtimeService,
        mailer: Mailer,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.db = db
        self.realtime = realtime
        self.mailer = mailer
        self.clock = clock

    # ========================================================================
    # Dispatch
    # ========================================================================

    async def notify(
        self,
        event: NotificationEvent,
        preferences: Optional[PreferenceSnapshot] = None
    ) -> Optional[Notification]:
        """
        Create a notification and deliver it if the channel is enabled.

        The row is committed whether or not delivery succeeds. Returns None
        when the row itself could not be stored.
        """
        try:
            snapshot = preferences or await self.get_snapshot(event.notifiable_id, event.notifiable_type)

            notification = Notification(
                notifiable_id=event.notifiable_id,
                notifiable_type=NotifiableType(event.notifiable_type),
                type=event.type,
                channel=NotificationChannel(event.channel),
                priority=NotificationPriority(event.priority),
                status=NotificationStatus.PENDING,
                ticket_id=event.ticket_id,
                comment_id=event.comment_id,
                triggered_by=event.triggered_by,
                title=event.title,
                message=event.message,
                data=dict(event.data or {}),
                action_url=event.action_url,
                action_text=event.action_text,
                group_key=event.group_key,
                created_at=self.clock(),
            )
            self.db.add(notification)
            await self.db.flush()

            if is_event_channel_enabled(snapshot, event.type, notification.channel, self.clock()):
                await self.send_through_channel(notification, snapshot)
            else:
                logger.debug(
                    f"Channel {notification.channel.value} disabled for {event.notifiable_id} "
                    f"on {event.type}; notification {notification.id} left pending"
                )

            await self.db.commit()
            return notification

        except Exception as e:
            await self.db.rollback()
            logger.error(
                f"Failed to create notification {event.type} for {event.notifiable_id}: {e}",
                exc_info=True
            )
            return None

    async def notify_all_channels(self, event: NotificationEvent) -> List[Notification]:
        """Create one notification per channel the recipient allows for the event."""
        snapshot = await self.get_snapshot(event.notifiable_id, event.notifiable_type)
        notifications = []
        for channel in enabled_channels(snapshot, event.type, self.clock()):
            notification = await self.notify(replace(event, channel=channel), snapshot)
            if notification is not None:
                notifications.append(notification)
        return notifications

    async def notify_multiple(
        self,
        notifiable_ids: List[str],
        notifiable_type: NotifiableType,
        event_fields: Dict[str, Any]
    ) -> List[Notification]:
        notifications = []
        for notifiable_id in notifiable_ids:
            notification = await self.notify(
                NotificationEvent(
                    notifiable_id=notifiable_id,
                    notifiable_type=notifiable_type,
                    **event_fields
                )
            )
            if notification is not None:
                notifications.append(notification)
        return notifications

    # ========================================================================
    # Channel delivery
    # ========================================================================

    async def send_through_channel(
        self,
        notification: Notification,
        snapshot: Optional[PreferenceSnapshot] = None
    ) -> bool:
        """
        Deliver a notification over its channel and record the outcome.

        Returns True when delivered (or parked for a digest). A failed attempt
        marks the row failed; channels without a transport leave it pending.
        """
        channel = notification.channel
        try:
            if channel == NotificationChannel.EMAIL:
                if snapshot is not None and should_queue_for_digest(snapshot, channel):
                    notification.status = NotificationStatus.QUEUED
                    return True
                success, error = await self._send_email(notification)
            elif channel == NotificationChannel.IN_APP:
                success, error = await self._send_in_app(notification)
            elif channel == NotificationChannel.PUSH:
                success, error = await self._send_push(notification)
            elif channel == NotificationChannel.SMS:
                logger.info(f"SMS delivery is not available; notification {notification.id} left pending")
                return False
            else:
                logger.warning(f"Unknown notification channel: {channel}")
                return False
        except Exception as e:
            logger.error(
                f"Delivery of notification {notification.id} via {channel.value} failed: {e}",
                exc_info=True
            )
            success, error = False, str(e)

        if not success:
            notification.mark_as_failed(error)

        metrics_collector.record_notification(channel.value, notification.status.value)
        return success

    async def _send_email(self, notification: Notification) -> Tuple[bool, Optional[str]]:
        address = await self._recipient_email(notification)
        if not address:
            return False, "Recipient has no email address"

        html_body = render_template("notification.html", {
            "title": notification.title,
            "message": notification.message,
            "action_url": notification.action_url,
            "action_text": notification.action_text,
            "preferences_url": f"{settings.FRONTEND_BASE_URL}/settings/notifications",
        })
        result = await self.mailer.send_email(
            to=address,
            subject=notification.title,
            html_body=html_body,
            text_body=notification.message,
            priority=notification.priority.value if notification.priority else None,
        )
        if not result.get("success"):
            return False, result.get("error") or "Email delivery failed"

        notification.mark_as_sent()
        return True, None

    async def _send_in_app(self, notification: Notification) -> Tuple[bool, Optional[str]]:
        result = await self.realtime.send_notification(notification)
        if not result.get("success"):
            return False, result.get("error") or "Realtime delivery failed"

        notification.mark_as_sent()
        notification.mark_as_delivered()
        return True, None

    async def _send_push(self, notification: Notification) -> Tuple[bool, Optional[str]]:
        # No push provider is wired up; accept the notification as sent
        logger.debug(f"Push notification {notification.id} accepted")
        notification.mark_as_sent()
        return True, None

    async def _recipient_email(self, notification: Notification) -> Optional[str]:
        address = (notification.data or {}).get("recipient_email")
        if address:
            return address
        return await self._lookup_email(notification.notifiable_id, notification.notifiable_type)

    async def _lookup_email(self, notifiable_id: str, notifiable_type: NotifiableType) -> Optional[str]:
        model = Client if NotifiableType(notifiable_type) == NotifiableType.CLIENT else User
        result = await self.db.execute(select(model.email).where(model.id == notifiable_id))
        return result.scalar_one_or_none()

    # ========================================================================
    # Sweeps
    # ========================================================================

    async def _redeliver(self, notification_id: str, reason: str) -> bool:
        notification = await self.db.get(Notification, notification_id)
        if notification is None:
            return False

        retry_count = notification.retry_count or 0
        snapshot = await self.get_snapshot(notification.notifiable_id, notification.notifiable_type)
        if not is_event_channel_enabled(snapshot, notification.type, notification.channel, self.clock()):
            notification.mark_as_failed("Channel disabled by recipient preferences")
            await self.db.commit()
            return False

        delivered = await self.send_through_channel(notification, snapshot)

        if not delivered and (notification.retry_count or 0) == retry_count:
            notification.mark_as_failed(reason)

        await self.db.commit()
        return delivered

    async def process_queue(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Re-send pending notifications that missed immediate delivery, then
        retry failed ones that are old enough and under the retry cap.
        """
        now = now or self.clock()
        summary = {
            "pending_processed": 0,
            "pending_delivered": 0,
            "retried": 0,
            "retry_delivered": 0,
            "errors": 0,
        }

        pending_cutoff = now - timedelta(minutes=settings.NOTIFICATION_PENDING_GRACE_MINUTES)
        pending = await self.db.execute(
            select(Notification.id)
            .where(
                and_(
                    Notification.status == NotificationStatus.PENDING,
                    Notification.created_at <= pending_cutoff
                )
            )
            .order_by(Notification.created_at)
            .limit(settings.NOTIFICATION_QUEUE_BATCH)
        )
        for notification_id in pending.scalars().all():
            summary["pending_processed"] += 1
            try:
                if await self._redeliver(notification_id, "Delivery unavailable"):
                    summary["pending_delivered"] += 1
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"Error processing pending notification {notification_id}: {e}", exc_info=True)
                await self.db.rollback()

        retry_cutoff = now - timedelta(minutes=settings.NOTIFICATION_RETRY_DELAY_MINUTES)
        failed = await self.db.execute(
            select(Notification.id)
            .where(
                and_(
                    Notification.status == NotificationStatus.FAILED,
                    Notification.retry_count < settings.NOTIFICATION_MAX_RETRIES,
                    Notification.failed_at <= retry_cutoff
                )
            )
            .order_by(Notification.failed_at)
            .limit(settings.NOTIFICATION_RETRY_BATCH)
        )
        for notification_id in failed.scalars().all():
            summary["retried"] += 1
            try:
                if await self._redeliver(notification_id, "Retry failed"):
                    summary["retry_delivered"] += 1
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"Error retrying notification {notification_id}: {e}", exc_info=True)
                await self.db.rollback()

        logger.info(f"Notification queue processed: {summary}")
        return summary

    async def send_digests(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Send one digest email per recipient whose digest window is open."""
        now = now or self.clock()
        summary = {"recipients_checked": 0, "digests_sent": 0, "notifications_sent": 0, "failed": 0}

        result = await self.db.execute(
            select(NotificationPreference).where(NotificationPreference.digest_enabled == True)
        )
        due = [
            (preference.notifiable_id, preference.notifiable_type)
            for preference in result.scalars().all()
            if should_send_digest_now(PreferenceSnapshot.from_model(preference), now)
        ]

        for notifiable_id, notifiable_type in due:
            summary["recipients_checked"] += 1
            try:
                sent = await self._send_digest(notifiable_id, notifiable_type)
                if sent is None:
                    continue
                if sent:
                    summary["digests_sent"] += 1
                    summary["notifications_sent"] += sent
                else:
                    summary["failed"] += 1
            except Exception as e:
                summary["failed"] += 1
                logger.error(f"Error sending digest to {notifiable_id}: {e}", exc_info=True)
                await self.db.rollback()

        logger.info(f"Digest run completed: {summary}")
        return summary

    async def _send_digest(self, notifiable_id: str, notifiable_type: NotifiableType) -> Optional[int]:
        """Returns notifications sent, 0 on send failure, None if nothing was queued."""
        result = await self.db.execute(
            select(Notification)
            .where(
                and_(
                    Notification.notifiable_id == notifiable_id,
                    Notification.notifiable_type == notifiable_type,
                    Notification.channel == NotificationChannel.EMAIL,
                    Notification.status == NotificationStatus.QUEUED
                )
            )
            .order_by(Notification.created_at)
        )
        queued = list(result.scalars().all())
        if not queued:
            return None

        address = None
        for notification in queued:
            address = (notification.data or {}).get("recipient_email")
            if address:
                break
        address = address or await self._lookup_email(notifiable_id, notifiable_type)
        if not address:
            logger.error(f"Cannot send digest to {notifiable_id}: no email address")
            return 0

        groups: Dict[str, List[Dict[str, Any]]] = {}
        for notification in queued:
            groups.setdefault(notification.type, []).append({
                "title": notification.title,
                "message": notification.message,
                "action_url": notification.action_url,
                "action_text": notification.action_text,
            })

        html_body = render_template("digest.html", {
            "total": len(queued),
            "groups": groups,
            "preferences_url": f"{settings.FRONTEND_BASE_URL}/settings/notifications",
        })
        send_result = await self.mailer.send_email(
            to=address,
            subject=f"Your Daily Digest - {len(queued)} Updates",
            html_body=html_body,
        )
        if not send_result.get("success"):
            logger.error(f"Digest email to {address} failed: {send_result.get('error')}")
            return 0

        for notification in queued:
            notification.mark_as_sent()
        await self.db.commit()
        return len(queued)

    # ========================================================================
    # Read state
    # ========================================================================

    async def get_notification(
        self,
        notification_id: str,
        notifiable_id: Optional[str] = None
    ) -> Notification:
        conditions = [Notification.id == notification_id]
        if notifiable_id is not None:
            conditions.append(Notification.notifiable_id == notifiable_id)
        result = await self.db.execute(select(Notification).where(and_(*conditions)))
        notification = result.scalar_one_or_none()
        if notification is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        return notification

    async def mark_as_read(self, notification_id: str, notifiable_id: Optional[str] = None) -> Notification:
        notification = await self.get_notification(notification_id, notifiable_id)
        if not notification.is_read:
            notification.mark_as_read()
            await self.db.commit()
        return notification

    async def mark_as_unread(self, notification_id: str, notifiable_id: Optional[str] = None) -> Notification:
        notification = await self.get_notification(notification_id, notifiable_id)
        if notification.is_read:
            notification.read_at = None
            if notification.delivered_at:
                notification.status = NotificationStatus.DELIVERED
            elif notification.sent_at:
                notification.status = NotificationStatus.SENT
            else:
                notification.status = NotificationStatus.PENDING
            await self.db.commit()
        return notification

    async def _mark_read_where(self, *conditions) -> int:
        result = await self.db.execute(
            update(Notification)
            .where(and_(Notification.read_at.is_(None), *conditions))
            .values(read_at=self.clock(), status=NotificationStatus.READ)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount or 0

    async def mark_multiple_as_read(
        self,
        notification_ids: List[str],
        notifiable_id: str,
        notifiable_type: NotifiableType = NotifiableType.USER
    ) -> int:
        """Mark the given unread notifications of one recipient read in one statement."""
        if not notification_ids:
            return 0
        return await self._mark_read_where(
            Notification.id.in_(notification_ids),
            Notification.notifiable_id == notifiable_id,
            Notification.notifiable_type == notifiable_type,
        )

    async def mark_all_as_read(
        self,
        notifiable_id: str,
        notifiable_type: NotifiableType = NotifiableType.USER
    ) -> int:
        return await self._mark_read_where(
            Notification.notifiable_id == notifiable_id,
            Notification.notifiable_type == notifiable_type,
        )

    async def delete(self, notification_id: str, notifiable_id: Optional[str] = None) -> None:
        notification = await self.get_notification(notification_id, notifiable_id)
        await self.db.delete(notification)
        await self.db.commit()

    # ========================================================================
    # Queries
    # ========================================================================

    def _recipient_conditions(self, notifiable_id: str, notifiable_type: NotifiableType) -> List[Any]:
        return [
            Notification.notifiable_id == notifiable_id,
            Notification.notifiable_type == notifiable_type,
        ]

    async def list_notifications(
        self,
        notifiable_id: str,
        notifiable_type: NotifiableType = NotifiableType.USER,
        unread_only: bool = False,
        type: Optional[str] = None,
        page: int = 1,
        per_page: int = 20
    ) -> Tuple[List[Notification], int]:
        conditions = self._recipient_conditions(notifiable_id, notifiable_type)
        if unread_only:
            conditions.append(Notification.read_at.is_(None))
        if type:
            conditions.append(Notification.type == type)

        count_result = await self.db.execute(
            select(func.count(Notification.id)).where(and_(*conditions))
        )
        total = count_result.scalar() or 0

        result = await self.db.execute(
            select(Notification)
            .where(and_(*conditions))
            .order_by(Notification.created_at.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        return list(result.scalars().all()), total

    async def get_unread(
        self,
        notifiable_id: str,
        notifiable_type: NotifiableType = NotifiableType.USER,
        limit: int = 20
    ) -> List[Notification]:
        result = await self.db.execute(
            select(Notification)
            .where(and_(*self._recipient_conditions(notifiable_id, notifiable_type), Notification.read_at.is_(None)))
            .order_by(Notification.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_stats(
        self,
        notifiable_id: str,
        notifiable_type: NotifiableType = NotifiableType.USER
    ) -> Dict[str, Any]:
        conditions = self._recipient_conditions(notifiable_id, notifiable_type)

        total_result = await self.db.execute(
            select(func.count(Notification.id)).where(and_(*conditions))
        )
        unread_result = await self.db.execute(
            select(func.count(Notification.id)).where(
                and_(*conditions, Notification.read_at.is_(None))
            )
        )
        high_result = await self.db.execute(
            select(func.count(Notification.id)).where(
                and_(
                    *conditions,
                    Notification.read_at.is_(None),
                    Notification.priority.in_(HIGH_PRIORITIES)
                )
            )
        )
        by_type_result = await self.db.execute(
            select(Notification.type, func.count(Notification.id))
            .where(and_(*conditions))
            .group_by(Notification.type)
        )

        return {
            "total": total_result.scalar() or 0,
            "unread": unread_result.scalar() or 0,
            "high_priority_unread": high_result.scalar() or 0,
            "by_type": {row[0]: row[1] for row in by_type_result.all()},
        }

    # ========================================================================
    # Preferences
    # ========================================================================

    async def get_preferences(
        self,
        notifiable_id: str,
        notifiable_type: NotifiableType = NotifiableType.USER
    ) -> Optional[NotificationPreference]:
        result = await self.db.execute(
            select(NotificationPreference).where(
                and_(
                    NotificationPreference.notifiable_id == notifiable_id,
                    NotificationPreference.notifiable_type == notifiable_type
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_snapshot(
        self,
        notifiable_id: str,
        notifiable_type: NotifiableType = NotifiableType.USER
    ) -> PreferenceSnapshot:
        return PreferenceSnapshot.from_model(await self.get_preferences(notifiable_id, notifiable_type))

    async def get_or_create_preferences(
        self,
        notifiable_id: str,
        notifiable_type: NotifiableType = NotifiableType.USER
    ) -> NotificationPreference:
        preference = await self.get_preferences(notifiable_id, notifiable_type)
        if preference is None:
            preference = NotificationPreference(
                notifiable_id=notifiable_id,
                notifiable_type=NotifiableType(notifiable_type),
                events=default_events(),
            )
            self.db.add(preference)
            await self.db.commit()
            await self.db.refresh(preference)
        return preference

    def _validate_preference_changes(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(changes) - PREFERENCE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown preference fields: {', '.join(sorted(unknown))}")

        for name in ("digest_time", "quiet_hours_start", "quiet_hours_end"):
            if changes.get(name) is not None:
                try:
                    parse_clock(changes[name])
                except (ValueError, IndexError):
                    raise ValidationError(f"{name} must use HH:MM format")

        if changes.get("timezone") is not None and not is_valid_timezone(changes["timezone"]):
            raise ValidationError(f"Unknown timezone: {changes['timezone']}")

        if changes.get("email_frequency") is not None:
            changes["email_frequency"] = EmailFrequency(changes["email_frequency"])

        if changes.get("digest_days") is not None:
            days = list(changes["digest_days"])
            if any(not isinstance(d, int) or d < 0 or d > 6 for d in days):
                raise ValidationError("digest_days must contain values 0 (Sunday) to 6 (Saturday)")
            changes["digest_days"] = days

        return changes

    async def update_preferences(
        self,
        notifiable_id: str,
        notifiable_type: NotifiableType,
        changes: Dict[str, Any]
    ) -> NotificationPreference:
        changes = self._validate_preference_changes(dict(changes))
        preference = await self.get_or_create_preferences(notifiable_id, notifiable_type)

        for name, value in changes.items():
            setattr(preference, name, value)

        await self.db.commit()
        await self.db.refresh(preference)
        return preference

    async def update_event_preference(
        self,
        notifiable_id: str,
        notifiable_type: NotifiableType,
        event_type: str,
        channel: NotificationChannel,
        enabled: bool
    ) -> NotificationPreference:
        preference = await self.get_or_create_preferences(notifiable_id, notifiable_type)

        # Reassign a copy so the JSON column is flagged as changed
        events = {event: dict(channels) for event, channels in (preference.events or default_events()).items()}
        events.setdefault(event_type, {})[NotificationChannel(channel).value] = bool(enabled)
        preference.events = events

        await self.db.commit()
        await self.db.refresh(preference)
        return preference

    async def enable_dnd(
        self,
        notifiable_id: str,
        notifiable_type: NotifiableType = NotifiableType.USER,
        until: Optional[datetime] = None
    ) -> NotificationPreference:
        preference = await self.get_or_create_preferences(notifiable_id, notifiable_type)
        preference.dnd_enabled = True
        preference.dnd_until = until
        await self.db.commit()
        await self.db.refresh(preference)
        return preference

    async def disable_dnd(
        self,
        notifiable_id: str,
        notifiable_type: NotifiableType = NotifiableType.USER
    ) -> NotificationPreference:
        preference = await self.get_or_create_preferences(notifiable_id, notifiable_type)
        preference.dnd_enabled = False
        preference.dnd_until = None
        await self.db.commit()
        await self.db.refresh(preference)
        return preference
