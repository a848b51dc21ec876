"""Schemas for rows read through the event store interface."""
from datetime import datetime
from typing import NamedTuple, Optional

from pydantic import BaseModel, Field


class IdentityPair(NamedTuple):
    """The identifiers of one event, as returned by distinct-identity reads."""

    user_id: Optional[str]
    anonymous_id: Optional[str]


class EventRecord(BaseModel):
    """A raw event as written by the ingestion collaborator."""

    event_type: str = Field(..., min_length=1, description="Event name, e.g. page_viewed")
    user_id: Optional[str] = Field(default=None, description="Account id, or 'anon:<id>' for anonymous rows")
    anonymous_id: Optional[str] = Field(default=None, description="Client-side anonymous visitor id")
    email: Optional[str] = Field(default=None, description="Email of the acting account, if known")
    created_at: datetime = Field(..., description="Event instant (aware)")
    page_path: Optional[str] = Field(default=None, description="Path for page_viewed events")
    plan_type: Optional[str] = Field(default=None, description="Plan carried by plan-change events")


class Signup(BaseModel):
    """An account creation."""

    user_id: str
    signup_at: datetime
    email: Optional[str] = None


class UserEvent(BaseModel):
    """A signed-in user's event, used for activation and retention."""

    user_id: str
    event_type: str
    created_at: datetime


class PlanChange(BaseModel):
    """A plan-change event carrying the plan the user moved to."""

    user_id: str
    event_type: str
    plan_type: Optional[str] = None
    created_at: datetime
