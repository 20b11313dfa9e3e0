"""
Realtime API Endpoints

Channel authorization and the Server-Sent Events stream that delivers relay
events to browsers.

Example usage:
```javascript
const auth = await fetch('/api/v1/realtime/auth', {method: 'POST', body: ...});
const source = new EventSource(
    `/api/v1/realtime/stream?channel=private-user-42&socket_id=${socketId}&auth=${auth.auth}`
);
source.addEventListener('ticket-assigned', (event) => console.log(JSON.parse(event.data)));
```
"""

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from app.api.deps import Actor, get_actor, get_realtime_service
from app.core.config import settings
from app.core.realtime import (
    ChannelRelay,
    Subscription,
    get_relay,
    is_presence_channel,
    is_private_channel,
    new_socket_id,
)
from app.schemas.common import envelope
from app.schemas.realtime import ChannelAuthRequest, ChannelAuthResponse
from app.services.metrics_service import metrics_collector
from app.services.realtime_service import RealtimeService

logger = logging.getLogger(__name__)

router = APIRouter()


async def stream_subscription(
    relay: ChannelRelay,
    subscription: Subscription,
    heartbeat_seconds: float
):
    """
    Yield SSE frames for one subscription until the client goes away.

    A comment line is sent whenever the queue stays idle for
    `heartbeat_seconds` so proxies keep the connection open.
    """
    connected = json.dumps({"channel": subscription.channel, "socket_id": subscription.socket_id})
    try:
        yield f"event: connected\ndata: {connected}\n\n"
        while True:
            try:
                message = await asyncio.wait_for(subscription.queue.get(), timeout=heartbeat_seconds)
                yield message
            except asyncio.TimeoutError:
                yield ": ping\n\n"
    except asyncio.CancelledError:
        logger.debug(f"Stream cancelled for socket {subscription.socket_id} on {subscription.channel}")
        raise
    finally:
        await relay.unsubscribe(subscription)
        metrics_collector.set_realtime_subscriptions(relay.get_stats()["total_subscriptions"])


@router.post("/auth", response_model=ChannelAuthResponse, response_model_exclude_none=True)
async def authorize_channel(
    request: ChannelAuthRequest,
    actor: Actor = Depends(get_actor),
    realtime: RealtimeService = Depends(get_realtime_service)
):
    """Sign a private or presence channel subscription for the caller."""
    return realtime.authenticate_channel(actor, request.socket_id, request.channel_name, request.user_info)


@router.get("/socket-id")
async def issue_socket_id():
    return envelope({"socket_id": new_socket_id()})


@router.get("/stream")
async def stream_channel(
    channel: str = Query(..., min_length=1),
    socket_id: Optional[str] = Query(None),
    auth: Optional[str] = Query(None, description="Signature from /realtime/auth"),
    channel_data: Optional[str] = Query(None, description="Presence member data from /realtime/auth"),
    relay: ChannelRelay = Depends(get_relay)
):
    """
    Subscribe to a channel and stream its events.

    Private and presence channels need the signature issued by /realtime/auth
    for the same socket id; the global channel is open.
    """
    socket_id = socket_id or new_socket_id()
    member = None

    if is_private_channel(channel) or is_presence_channel(channel):
        if not relay.verify_auth(socket_id, channel, auth, channel_data):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Invalid signature for channel {channel}"
            )
        if is_presence_channel(channel):
            member = json.loads(channel_data) if channel_data else None

    subscription = await relay.subscribe(channel, socket_id, member)
    metrics_collector.set_realtime_subscriptions(relay.get_stats()["total_subscriptions"])

    return StreamingResponse(
        stream_subscription(relay, subscription, settings.REALTIME_HEARTBEAT_SECONDS),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
    )


@router.get("/channels/{channel_name}")
async def get_channel_info(
    channel_name: str,
    actor: Actor = Depends(get_actor),
    realtime: RealtimeService = Depends(get_realtime_service)
):
    """Occupancy of a channel the caller may access; presence channels list members."""
    if not realtime.can_access_channel(actor, channel_name):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Access to channel {channel_name} denied"
        )
    info = realtime.relay.channel_info(channel_name)
    if is_presence_channel(channel_name):
        info["users"] = realtime.relay.presence_users(channel_name)
    return envelope(info)
