"""
Realtime Service

Channel naming, access rules and notification payloads on top of the
ChannelRelay. Publishing is fire-and-forget: success means the relay accepted
the event, not that anyone received it.
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, List, Iterable

from app.core.exceptions import ChannelAuthorizationError
from app.core.realtime import ChannelRelay, is_presence_channel
from app.models.notification import NotifiableType
from app.models.user import AGENT_ROLES, UserRole

logger = logging.getLogger(__name__)

GLOBAL_CHANNEL = "global"
ONLINE_AGENTS_CHANNEL = "presence-online-agents"


def user_channel(user_id: str) -> str:
    return f"private-user-{user_id}"


def client_channel(client_id: str) -> str:
    return f"private-client-{client_id}"


def department_channel(department_id: str) -> str:
    return f"private-department-{department_id}"


def notifiable_channel(notifiable_type: NotifiableType, notifiable_id: str) -> str:
    if NotifiableType(notifiable_type) == NotifiableType.CLIENT:
        return client_channel(notifiable_id)
    return user_channel(notifiable_id)


def event_name(notification_type: str) -> str:
    return notification_type.replace("_", "-")


def _role_value(role: Any) -> Optional[str]:
    if role is None:
        return None
    return role.value if hasattr(role, "value") else str(role)


class RealtimeService:
    """Publishes notification and broadcast events through the relay."""

    def __init__(self, relay: ChannelRelay):
        self.relay = relay

    # ========================================================================
    # Publishing
    # ========================================================================

    def notification_payload(self, notification) -> Dict[str, Any]:
        return {
            "id": notification.id,
            "type": notification.type,
            "title": notification.title,
            "message": notification.message,
            "action_url": notification.action_url,
            "action_text": notification.action_text,
            "priority": _role_value(notification.priority),
            "data": notification.data or {},
            "timestamp": (notification.created_at or datetime.utcnow()).isoformat(),
        }

    async def send_notification(self, notification) -> Dict[str, Any]:
        """Publish a notification on its recipient's private channel."""
        channel = notifiable_channel(notification.notifiable_type, notification.notifiable_id)
        try:
            recipients = await self.relay.trigger(
                channel,
                event_name(notification.type),
                self.notification_payload(notification)
            )
        except Exception as e:
            logger.error(f"Failed to publish notification {notification.id} on {channel}: {e}", exc_info=True)
            return {"success": False, "channel": channel, "recipients": 0, "error": str(e)}

        return {"success": True, "channel": channel, "recipients": recipients, "error": None}

    async def broadcast_to_users(self, user_ids: Iterable[str], event: str, data: Dict[str, Any]) -> int:
        return await self.relay.trigger_batch([
            {"channel": user_channel(user_id), "name": event, "data": data}
            for user_id in user_ids
        ])

    async def broadcast_to_department(self, department_id: str, event: str, data: Dict[str, Any]) -> int:
        return await self.relay.trigger(department_channel(department_id), event, data)

    async def broadcast_global(self, event: str, data: Dict[str, Any]) -> int:
        return await self.relay.trigger(GLOBAL_CHANNEL, event, data)

    # ========================================================================
    # Channel access
    # ========================================================================

    def can_access_channel(self, actor, channel: str) -> bool:
        """
        Decide whether the actor may subscribe to a channel.

        The actor needs `id`, `role` and `department_id` attributes.
        """
        role = _role_value(actor.role)

        if channel == GLOBAL_CHANNEL:
            return True
        if channel == ONLINE_AGENTS_CHANNEL:
            return role in {r.value for r in AGENT_ROLES}
        if channel.startswith("private-user-"):
            return channel == user_channel(actor.id)
        if channel.startswith("private-client-"):
            return channel == client_channel(actor.id) and role == UserRole.CUSTOMER.value
        if channel.startswith("private-department-"):
            return bool(actor.department_id) and channel == department_channel(actor.department_id)
        return False

    def authenticate_channel(
        self,
        actor,
        socket_id: str,
        channel: str,
        user_info: Optional[Dict[str, Any]] = None
    ) -> Dict[str, str]:
        """
        Sign a channel subscription for the actor.

        Raises:
            ChannelAuthorizationError: If the actor may not join the channel.
        """
        if not self.can_access_channel(actor, channel):
            logger.warning(f"Channel authorization denied for {actor.id} on {channel}")
            raise ChannelAuthorizationError(f"Access to channel {channel} denied")

        if is_presence_channel(channel):
            return self.relay.authorize_presence_channel(
                socket_id, channel, str(actor.id), user_info or {"role": _role_value(actor.role)}
            )
        return self.relay.authorize_channel(socket_id, channel)

    def online_agents(self) -> List[Dict[str, Any]]:
        return self.relay.presence_users(ONLINE_AGENTS_CHANNEL)
