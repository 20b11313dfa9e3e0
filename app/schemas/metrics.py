import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from app.services.aggregation_service import METRIC_TYPES


class AggregateRequest(BaseModel):
    """On-demand aggregation of one metric type."""
    date: Optional[datetime.date] = Field(None, description="Target date; defaults to today")
    type: str = Field("daily", description="daily, hourly, agents, clients or sla")

    @field_validator("type")
    @classmethod
    def known_type(cls, v: str) -> str:
        if v not in METRIC_TYPES:
            raise ValueError(f"type must be one of: {', '.join(METRIC_TYPES)}")
        return v
