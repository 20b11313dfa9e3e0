"""
Channel Relay

In-process pub/sub relay used for in-app notification delivery.

Clients subscribe to named channels (private-user-{id}, private-department-{id},
presence-online-agents, global) and receive events as Server-Sent Events.
Private and presence channels require an auth signature obtained from the
authorization endpoint; signatures are HMAC-SHA256 over
"socket_id:channel[:channel_data]" keyed with the relay secret.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import uuid
from asyncio import Queue
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from app.core.config import settings

logger = logging.getLogger(__name__)

PRIVATE_PREFIX = "private-"
PRESENCE_PREFIX = "presence-"


def is_private_channel(channel: str) -> bool:
    return channel.startswith(PRIVATE_PREFIX)


def is_presence_channel(channel: str) -> bool:
    return channel.startswith(PRESENCE_PREFIX)


def new_socket_id() -> str:
    """Socket ids follow the "<int>.<int>" shape relay clients expect."""
    raw = uuid.uuid4().int
    return f"{raw % 10**9}.{(raw // 10**9) % 10**9}"


@dataclass
class Subscription:
    """A single subscriber connection to one channel."""
    channel: str
    socket_id: str
    member: Optional[Dict[str, Any]] = None
    queue: Queue = field(default_factory=Queue)
    connected_at: datetime = field(default_factory=datetime.utcnow)

    def __hash__(self):
        return hash(id(self))

    def __eq__(self, other):
        return id(self) == id(other)


class ChannelRelay:
    """
    Manages channel subscriptions and event fan-out.

    Delivery is fire-and-forget: an event reaches whoever is subscribed when
    it is triggered; there is no acknowledgement or replay.
    """

    def __init__(self, key: Optional[str] = None, secret: Optional[str] = None):
        self.key = key or settings.REALTIME_KEY
        self.secret = secret or settings.REALTIME_SECRET
        # channel -> subscriptions
        self._channels: Dict[str, Set[Subscription]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        channel: str,
        socket_id: str,
        member: Optional[Dict[str, Any]] = None
    ) -> Subscription:
        subscription = Subscription(channel=channel, socket_id=socket_id, member=member)

        async with self._lock:
            self._channels.setdefault(channel, set()).add(subscription)

        logger.info(
            f"Relay subscription added: channel={channel}, socket={socket_id}, "
            f"subscribers={len(self._channels[channel])}"
        )
        return subscription

    async def unsubscribe(self, subscription: Subscription):
        async with self._lock:
            subscribers = self._channels.get(subscription.channel)
            if subscribers is not None:
                subscribers.discard(subscription)
                if not subscribers:
                    del self._channels[subscription.channel]

        logger.info(
            f"Relay subscription removed: channel={subscription.channel}, "
            f"socket={subscription.socket_id}"
        )

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def trigger(self, channel: str, event: str, data: Any) -> int:
        """
        Publish an event to every subscriber of a channel.

        Returns:
            Number of subscribers the event was queued for
        """
        subscribers = list(self._channels.get(channel, set()))
        if not subscribers:
            logger.debug(f"No subscribers on channel {channel} for event {event}")
            return 0

        message = self._format_sse_message(event, data)
        await asyncio.gather(
            *(self._send(sub, message) for sub in subscribers),
            return_exceptions=True
        )
        logger.debug(f"Triggered {event} on {channel}: recipients={len(subscribers)}")
        return len(subscribers)

    async def trigger_batch(self, events: List[Dict[str, Any]]) -> int:
        """Trigger several events; each item has channel, name and data keys."""
        delivered = 0
        for item in events:
            delivered += await self.trigger(item["channel"], item["name"], item.get("data"))
        return delivered

    async def _send(self, subscription: Subscription, message: str):
        try:
            await subscription.queue.put(message)
        except Exception as e:
            logger.error(f"Failed to queue relay message for {subscription.socket_id}: {e}")

    def _format_sse_message(self, event: str, data: Any) -> str:
        json_data = json.dumps(data, default=str)
        return f"event: {event}\ndata: {json_data}\n\n"

    # ------------------------------------------------------------------
    # Channel authorization
    # ------------------------------------------------------------------

    def _sign(self, payload: str) -> str:
        return hmac.new(
            self.secret.encode("utf-8"),
            payload.encode("utf-8"),
            hashlib.sha256
        ).hexdigest()

    def authorize_channel(self, socket_id: str, channel: str) -> Dict[str, str]:
        """Sign a private channel subscription."""
        signature = self._sign(f"{socket_id}:{channel}")
        return {"auth": f"{self.key}:{signature}"}

    def authorize_presence_channel(
        self,
        socket_id: str,
        channel: str,
        user_id: str,
        user_info: Optional[Dict[str, Any]] = None
    ) -> Dict[str, str]:
        """Sign a presence channel subscription including the member's data."""
        channel_data = json.dumps(
            {"user_id": user_id, "user_info": user_info or {}},
            separators=(",", ":"),
            sort_keys=True
        )
        signature = self._sign(f"{socket_id}:{channel}:{channel_data}")
        return {"auth": f"{self.key}:{signature}", "channel_data": channel_data}

    def verify_auth(
        self,
        socket_id: str,
        channel: str,
        auth: str,
        channel_data: Optional[str] = None
    ) -> bool:
        """Timing-safe check of an auth token produced by authorize_*."""
        if not auth or ":" not in auth:
            return False
        key, signature = auth.split(":", 1)
        if key != self.key:
            return False

        payload = f"{socket_id}:{channel}"
        if channel_data is not None:
            payload = f"{payload}:{channel_data}"
        return hmac.compare_digest(self._sign(payload), signature)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def presence_users(self, channel: str) -> List[Dict[str, Any]]:
        users: Dict[str, Dict[str, Any]] = {}
        for sub in self._channels.get(channel, set()):
            if sub.member and sub.member.get("user_id") is not None:
                users[str(sub.member["user_id"])] = sub.member
        return list(users.values())

    def channel_info(self, channel: str) -> Dict[str, Any]:
        subscribers = self._channels.get(channel, set())
        info = {
            "channel": channel,
            "occupied": bool(subscribers),
            "subscription_count": len(subscribers),
        }
        if is_presence_channel(channel):
            info["user_count"] = len(self.presence_users(channel))
        return info

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_subscriptions": sum(len(s) for s in self._channels.values()),
            "channels": len(self._channels),
            "subscriptions_by_channel": {
                channel: len(subs) for channel, subs in self._channels.items()
            }
        }


# Global relay instance
relay = ChannelRelay()


async def get_relay() -> ChannelRelay:
    """Dependency to get the channel relay."""
    return relay
