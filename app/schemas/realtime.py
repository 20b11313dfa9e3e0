from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ChannelAuthRequest(BaseModel):
    socket_id: str = Field(..., min_length=1)
    channel_name: str = Field(..., min_length=1)
    user_info: Optional[Dict[str, Any]] = None


class ChannelAuthResponse(BaseModel):
    auth: str
    channel_data: Optional[str] = None
