"""
Period metric snapshot model.

One row per (period_type, period_key), e.g. ("weekly", "2025-W07").
Re-running a period overwrites the row; values are never merged.
"""
from sqlalchemy import Column, Date, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB

from audience.models.base import Base


class MetricSnapshot(Base):
    """Rolled-up metrics for one reporting period."""

    __tablename__ = "metric_snapshots"

    period_type = Column(String(16), nullable=False, index=True, comment="weekly")
    period_key = Column(String(16), nullable=False, comment="ISO week, e.g. 2025-W07")
    period_start = Column(Date, nullable=False, index=True)
    period_end = Column(Date, nullable=False)

    new_signups = Column(Integer, nullable=False, default=0)
    new_trials = Column(Integer, nullable=False, default=0)
    new_paying_subscribers = Column(Integer, nullable=False, default=0)
    wau = Column(Integer, nullable=False, default=0)
    activation_rate = Column(Numeric(precision=7, scale=2), nullable=False, default=0)
    trial_to_paid_conversion_rate = Column(Numeric(precision=7, scale=2), nullable=False, default=0)
    mrr = Column(Numeric(precision=15, scale=2), nullable=False, default=0)
    active_subscribers = Column(Integer, nullable=False, default=0)
    churn_rate = Column(Numeric(precision=7, scale=2), nullable=False, default=0)
    d7_retention = Column(Numeric(precision=7, scale=2), nullable=False, default=0)

    extras = Column(
        JSONB,
        nullable=False,
        default=dict,
        comment="Ancillary figures: top_features, activation breakdowns, segment_wau, ...",
    )

    __table_args__ = (
        UniqueConstraint("period_type", "period_key", name="uq_metric_snapshots_period"),
    )

    def __repr__(self) -> str:
        return f"<MetricSnapshot(period={self.period_type}:{self.period_key}, wau={self.wau})>"


class PeriodType:
    """Constants for snapshot period types."""

    WEEKLY = "weekly"
