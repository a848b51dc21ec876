"""Schemas for period metric snapshots and week-over-week deltas."""
from datetime import date
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# Numeric fields carried by every period snapshot, in digest order.
SNAPSHOT_NUMERIC_FIELDS = (
    "new_signups",
    "new_trials",
    "new_paying_subscribers",
    "wau",
    "activation_rate",
    "trial_to_paid_conversion_rate",
    "mrr",
    "active_subscribers",
    "churn_rate",
    "d7_retention",
)


class MetricSnapshotData(BaseModel):
    """A period snapshot as computed by the pipeline or read back from storage."""

    period_type: str = "weekly"
    period_key: str = Field(..., description="ISO week, e.g. 2025-W07")
    period_start: date
    period_end: date

    new_signups: int = 0
    new_trials: int = 0
    new_paying_subscribers: int = 0
    wau: int = 0
    activation_rate: float = 0.0
    trial_to_paid_conversion_rate: float = 0.0
    mrr: float = 0.0
    active_subscribers: int = 0
    churn_rate: float = 0.0
    d7_retention: float = 0.0

    extras: dict[str, Any] = Field(
        default_factory=dict,
        description=(
            "Documented keys: top_features, activation_breakdown, activation_breakdown_by_plan, "
            "segment_wau, returning_users, grimoire_only_users, active_days_distribution, "
            "identity_resolution, activated_users, data_completeness_score, funnel, "
            "avg_sessions_per_active_user, avg_events_per_active_user, gross_revenue, "
            "arr_run_rate_end_of_week, arpu_week, w4_retention, w4_cohort_size"
        ),
    )

    model_config = ConfigDict(from_attributes=True)

    def rounded(self) -> "MetricSnapshotData":
        """Copy with every numeric field rounded to 2 decimal places."""
        updates = {}
        for name in SNAPSHOT_NUMERIC_FIELDS:
            value = getattr(self, name)
            updates[name] = value if isinstance(value, int) else round(float(value), 2)
        return self.model_copy(update=updates)


class MetricDelta(BaseModel):
    """Week-over-week change for one numeric field."""

    field: str
    current: float
    previous: Optional[float] = None
    pct: Optional[float] = Field(None, description="None when there is no usable baseline")

    @property
    def display(self) -> str:
        """Signed percentage such as ``+20%``, or ``n/a`` without a baseline."""
        if self.pct is None:
            return "n/a"
        rounded = round(self.pct, 1)
        text = f"{rounded:+.1f}".rstrip("0").rstrip(".")
        return f"{text}%"


class DigestField(BaseModel):
    """One grouped block of the weekly digest."""

    name: str
    value: str
    inline: bool = True


class PeriodFigures(BaseModel):
    """Revenue figures for one period, as reported by the billing collaborator."""

    mrr: float = 0.0
    active_subscribers: int = 0
    active_subscribers_start: int = 0
    churned: int = 0
    churn_rate: float = Field(0.0, description="churned / active_subscribers_start * 100, 0 without a base")
    gross_revenue: float = Field(0.0, description="monthly_amount_due of paying subscriptions created in the period")
