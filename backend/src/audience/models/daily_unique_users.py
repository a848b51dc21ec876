"""Per-day, per-segment distinct identity snapshots."""
from sqlalchemy import Column, Date, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import ARRAY

from audience.models.base import Base


class DailyUniqueUsers(Base):
    """
    Distinct canonical identities active on one UTC day within one segment.

    Upserted by the backfill path on ``(metric_date, segment)``; read-only
    for range queries afterwards.
    """

    __tablename__ = "daily_unique_users"

    metric_date = Column(Date, nullable=False, index=True)
    segment = Column(String(32), nullable=False, index=True, comment="all, product, app_opened, reach, grimoire")
    user_ids = Column(ARRAY(Text), nullable=False, default=list)
    user_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("metric_date", "segment", name="uq_daily_unique_users_date_segment"),
    )

    def __repr__(self) -> str:
        return (
            f"<DailyUniqueUsers("
            f"date={self.metric_date}, "
            f"segment={self.segment}, "
            f"count={self.user_count}"
            f")>"
        )
