"""Schemas for daily unique-user snapshots and range reads."""
from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, Field


class DaySegmentResult(BaseModel):
    """Distinct canonical identities for one day and segment."""

    metric_date: date
    segment: str
    user_ids: frozenset[str] = Field(default_factory=frozenset)
    user_count: int = Field(..., ge=0)
    resolution: Literal["linked", "degraded"] = Field(
        default="linked",
        description="Whether identity links were available for this computation",
    )


class DailySnapshotRecord(BaseModel):
    """A persisted DailyUserSnapshot row."""

    metric_date: date
    segment: str
    user_ids: frozenset[str] = Field(default_factory=frozenset)
    user_count: int = Field(..., ge=0)


class SegmentFailureInfo(BaseModel):
    """A (day, segment) computation that failed during backfill."""

    metric_date: date
    segment: str
    error: str


class BackfillReport(BaseModel):
    """Outcome of one backfill run."""

    start: date
    end: date
    days_processed: int = Field(0, description="Days whose five segments were all upserted")
    days: list[date] = Field(default_factory=list, description="Closed days visited by the run")
    failures: list[SegmentFailureInfo] = Field(default_factory=list)
    resolution: Literal["linked", "degraded"] = "linked"

    @property
    def partial(self) -> bool:
        """True when at least one segment failed."""
        return bool(self.failures)


class DayCount(BaseModel):
    """One day of a range read."""

    metric_date: date
    user_count: int = Field(..., ge=0)
    source: Literal["snapshot", "live"] = "snapshot"


class RangeQueryResult(BaseModel):
    """
    Persisted per-day counts for a range.

    ``live_date`` is set when the range reaches today: that day is never read
    from a snapshot and is left to a live computation.
    """

    segment: str
    start: date
    end: date
    days: list[DayCount] = Field(default_factory=list)
    missing_dates: list[date] = Field(default_factory=list, description="Closed days with no snapshot yet")
    live_date: Optional[date] = None


class WindowSummary(BaseModel):
    """Unique users over a multi-day window, derived from daily snapshots."""

    start: date
    end: date
    segment_users: dict[str, int] = Field(default_factory=dict, description="segment -> unique users in window")
    returning_users: int = Field(0, description="Identities active on 2+ distinct days")
    grimoire_only_users: int = Field(0, description="Grimoire readers with no app_opened activity")
    active_days_distribution: dict[str, int] = Field(default_factory=dict)
