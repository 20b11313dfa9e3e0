"""
Tests for the realtime relay, channel authorization and the SSE stream.
"""
import json

import pytest
from httpx import AsyncClient

from app.api.deps import Actor
from app.api.v1.realtime import stream_subscription
from app.core.exceptions import ChannelAuthorizationError
from app.core.realtime import ChannelRelay, new_socket_id
from app.models.notification import NotifiableType
from app.models.user import UserRole
from app.services.realtime_service import (
    GLOBAL_CHANNEL,
    ONLINE_AGENTS_CHANNEL,
    RealtimeService,
    department_channel,
    notifiable_channel,
    user_channel,
)
from tests.conftest import actor_headers


AGENT = Actor(id="42", role=UserRole.AGENT, department_id="support")
CUSTOMER = Actor(id="c-7", role=UserRole.CUSTOMER)


class TestChannelRelay:

    @pytest.mark.asyncio
    async def test_trigger_reaches_subscribers(self, relay: ChannelRelay):
        first = await relay.subscribe("global", "1.1")
        second = await relay.subscribe("global", "1.2")

        delivered = await relay.trigger("global", "maintenance", {"at": "22:00"})

        assert delivered == 2
        assert first.queue.get_nowait() == 'event: maintenance\ndata: {"at": "22:00"}\n\n'
        assert not second.queue.empty()
        assert await relay.trigger("private-user-nobody", "ping", {}) == 0

    @pytest.mark.asyncio
    async def test_unsubscribe_drops_empty_channel(self, relay: ChannelRelay):
        subscription = await relay.subscribe("global", "1.1")
        assert relay.get_stats()["channels"] == 1

        await relay.unsubscribe(subscription)

        assert relay.get_stats() == {"total_subscriptions": 0, "channels": 0, "subscriptions_by_channel": {}}

    def test_private_signature_round_trip(self, relay: ChannelRelay):
        auth = relay.authorize_channel("1.1", "private-user-42")["auth"]

        assert auth.startswith("test-key:")
        assert relay.verify_auth("1.1", "private-user-42", auth)
        assert not relay.verify_auth("1.2", "private-user-42", auth)
        assert not relay.verify_auth("1.1", "private-user-43", auth)
        assert not relay.verify_auth("1.1", "private-user-42", "other-key:" + auth.split(":", 1)[1])
        assert not relay.verify_auth("1.1", "private-user-42", None)

    def test_presence_signature_covers_member_data(self, relay: ChannelRelay):
        signed = relay.authorize_presence_channel("1.1", ONLINE_AGENTS_CHANNEL, "42", {"name": "Ada"})

        assert json.loads(signed["channel_data"]) == {"user_id": "42", "user_info": {"name": "Ada"}}
        assert relay.verify_auth("1.1", ONLINE_AGENTS_CHANNEL, signed["auth"], signed["channel_data"])
        assert not relay.verify_auth("1.1", ONLINE_AGENTS_CHANNEL, signed["auth"], '{"user_id":"1"}')

    @pytest.mark.asyncio
    async def test_presence_users_are_unique(self, relay: ChannelRelay):
        member = {"user_id": "42", "user_info": {}}
        await relay.subscribe(ONLINE_AGENTS_CHANNEL, "1.1", member)
        await relay.subscribe(ONLINE_AGENTS_CHANNEL, "1.2", member)

        info = relay.channel_info(ONLINE_AGENTS_CHANNEL)

        assert info["subscription_count"] == 2
        assert info["user_count"] == 1
        assert relay.presence_users(ONLINE_AGENTS_CHANNEL) == [member]

    def test_socket_id_shape(self):
        left, right = new_socket_id().split(".")
        assert left.isdigit() and right.isdigit()


class TestChannelAccess:

    @pytest.mark.parametrize("actor, channel, allowed", [
        (AGENT, GLOBAL_CHANNEL, True),
        (AGENT, ONLINE_AGENTS_CHANNEL, True),
        (CUSTOMER, ONLINE_AGENTS_CHANNEL, False),
        (AGENT, user_channel("42"), True),
        (AGENT, user_channel("43"), False),
        (AGENT, department_channel("support"), True),
        (AGENT, department_channel("billing"), False),
        (CUSTOMER, department_channel("support"), False),
        (CUSTOMER, "private-client-c-7", True),
        (AGENT, "private-client-42", False),
        (AGENT, "private-anything", False),
    ])
    def test_access_rules(self, relay: ChannelRelay, actor, channel, allowed):
        assert RealtimeService(relay).can_access_channel(actor, channel) is allowed

    def test_notifiable_channels(self):
        assert notifiable_channel(NotifiableType.USER, "42") == "private-user-42"
        assert notifiable_channel(NotifiableType.CLIENT, "c-7") == "private-client-c-7"

    def test_authenticate_denied(self, relay: ChannelRelay):
        with pytest.raises(ChannelAuthorizationError):
            RealtimeService(relay).authenticate_channel(AGENT, "1.1", user_channel("43"))

    def test_authenticate_presence_defaults_user_info_to_role(self, relay: ChannelRelay):
        signed = RealtimeService(relay).authenticate_channel(AGENT, "1.1", ONLINE_AGENTS_CHANNEL)
        assert json.loads(signed["channel_data"]) == {"user_id": "42", "user_info": {"role": "agent"}}


class TestStream:

    @pytest.mark.asyncio
    async def test_stream_yields_events_and_heartbeats(self, relay: ChannelRelay):
        subscription = await relay.subscribe("global", "1.1")
        stream = stream_subscription(relay, subscription, heartbeat_seconds=0.01)

        connected = await stream.__anext__()
        assert connected.startswith("event: connected\n")
        assert json.loads(connected.split("data: ", 1)[1]) == {"channel": "global", "socket_id": "1.1"}

        await relay.trigger("global", "ticket-created", {"id": "t-1"})
        assert await stream.__anext__() == 'event: ticket-created\ndata: {"id": "t-1"}\n\n'
        assert await stream.__anext__() == ": ping\n\n"

        await stream.aclose()
        assert relay.get_stats()["total_subscriptions"] == 0


class TestRealtimeApi:

    @pytest.mark.asyncio
    async def test_auth_private_channel(self, client: AsyncClient, relay: ChannelRelay):
        response = await client.post(
            "/api/v1/realtime/auth",
            json={"socket_id": "1.1", "channel_name": "private-user-42"},
            headers=actor_headers("42")
        )

        assert response.status_code == 200
        body = response.json()
        assert set(body) == {"auth"}
        assert relay.verify_auth("1.1", "private-user-42", body["auth"])

    @pytest.mark.asyncio
    async def test_auth_presence_channel(self, client: AsyncClient, relay: ChannelRelay):
        response = await client.post(
            "/api/v1/realtime/auth",
            json={"socket_id": "1.1", "channel_name": ONLINE_AGENTS_CHANNEL, "user_info": {"name": "Ada"}},
            headers=actor_headers("42")
        )

        body = response.json()
        assert relay.verify_auth("1.1", ONLINE_AGENTS_CHANNEL, body["auth"], body["channel_data"])

    @pytest.mark.asyncio
    async def test_auth_denied_for_foreign_channel(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/realtime/auth",
            json={"socket_id": "1.1", "channel_name": "private-user-43"},
            headers=actor_headers("42")
        )

        assert response.status_code == 403
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_stream_rejects_bad_signature(self, client: AsyncClient, relay: ChannelRelay):
        response = await client.get(
            "/api/v1/realtime/stream",
            params={"channel": "private-user-42", "socket_id": "1.1", "auth": "test-key:forged"}
        )

        assert response.status_code == 403
        assert relay.get_stats()["total_subscriptions"] == 0

    @pytest.mark.asyncio
    async def test_socket_id_endpoint(self, client: AsyncClient):
        response = await client.get("/api/v1/realtime/socket-id")
        assert "." in response.json()["data"]["socket_id"]

    @pytest.mark.asyncio
    async def test_channel_info(self, client: AsyncClient, relay: ChannelRelay):
        await relay.subscribe(ONLINE_AGENTS_CHANNEL, "1.1", {"user_id": "42", "user_info": {}})

        response = await client.get(
            f"/api/v1/realtime/channels/{ONLINE_AGENTS_CHANNEL}", headers=actor_headers("42")
        )
        data = response.json()["data"]
        assert data["occupied"] is True
        assert data["users"] == [{"user_id": "42", "user_info": {}}]

        response = await client.get(
            f"/api/v1/realtime/channels/{ONLINE_AGENTS_CHANNEL}",
            headers=actor_headers("c-7", UserRole.CUSTOMER)
        )
        assert response.status_code == 403
