"""Response schemas for the cron trigger endpoints."""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from audience.schemas.unique_users import SegmentFailureInfo


class TriggerResponse(BaseModel):
    """JSON body returned by every cron trigger."""

    success: bool
    backfilled_days: Optional[int] = Field(default=None, serialization_alias="backfilledDays")
    duration_ms: Optional[int] = None
    period_key: Optional[str] = Field(default=None, serialization_alias="periodKey")
    error: Optional[str] = None
    failures: Optional[list[SegmentFailureInfo]] = None

    model_config = ConfigDict(populate_by_name=True)
