"""Schemas for the signup-to-activation funnel."""
import enum
from datetime import date, datetime

from pydantic import BaseModel, Field


class PlanBucket(str, enum.Enum):
    """Plan at the instant of activation."""

    FREE = "free"
    PAID = "paid"
    UNKNOWN = "unknown"


class ActivationRecord(BaseModel):
    """Earliest occurrence of one activation event type for one user."""

    user_id: str
    event_type: str
    activated_at: datetime
    plan_bucket: PlanBucket


class DailyActivationTrend(BaseModel):
    """Activation figures for the signups of one calendar day."""

    date: date
    signups: int
    activated: int
    rate: float


class ActivationResult(BaseModel):
    """Activation funnel for a signup cohort."""

    total_signups: int = 0
    activated_users: int = 0
    rate: float = Field(0.0, description="activated_users / total_signups * 100, 0 without signups")
    breakdown_by_event_type: dict[str, int] = Field(default_factory=dict)
    breakdown_by_event_type_and_plan: dict[str, dict[str, int]] = Field(default_factory=dict)
    daily_trend: list[DailyActivationTrend] = Field(default_factory=list)
    activations: list[ActivationRecord] = Field(default_factory=list)


class RetentionResult(BaseModel):
    """Day-N retention for a signup cohort."""

    day: int
    cohort_size: int = 0
    retained: int = 0
    rate: float = 0.0
