"""Pydantic schemas for engine inputs, results and API responses."""
from audience.schemas.activation import (
    ActivationRecord,
    ActivationResult,
    DailyActivationTrend,
    PlanBucket,
    RetentionResult,
)
from audience.schemas.cron import TriggerResponse
from audience.schemas.error import ErrorDetail, ErrorResponse
from audience.schemas.events import EventRecord, IdentityPair, PlanChange, Signup, UserEvent
from audience.schemas.metric_snapshot import DigestField, MetricDelta, MetricSnapshotData, PeriodFigures
from audience.schemas.unique_users import (
    BackfillReport,
    DailySnapshotRecord,
    DayCount,
    DaySegmentResult,
    RangeQueryResult,
    SegmentFailureInfo,
    WindowSummary,
)

__all__ = [
    "ActivationRecord",
    "ActivationResult",
    "BackfillReport",
    "DailyActivationTrend",
    "DailySnapshotRecord",
    "DayCount",
    "DaySegmentResult",
    "DigestField",
    "ErrorDetail",
    "ErrorResponse",
    "EventRecord",
    "IdentityPair",
    "MetricDelta",
    "MetricSnapshotData",
    "PeriodFigures",
    "PlanBucket",
    "PlanChange",
    "RangeQueryResult",
    "RetentionResult",
    "SegmentFailureInfo",
    "Signup",
    "TriggerResponse",
    "UserEvent",
    "WindowSummary",
]
