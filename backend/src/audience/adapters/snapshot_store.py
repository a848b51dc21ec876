"""
Persistence for daily unique-user snapshots and period metric snapshots.

Both tables are written with PostgreSQL ``INSERT ... ON CONFLICT DO UPDATE``
on their natural keys, so re-running a day or a week overwrites the row and
concurrent writers need no application locks.
"""
from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from audience.models.base import utcnow
from audience.models.daily_unique_users import DailyUniqueUsers
from audience.models.metric_snapshot import MetricSnapshot
from audience.schemas.metric_snapshot import SNAPSHOT_NUMERIC_FIELDS, MetricSnapshotData
from audience.schemas.unique_users import DailySnapshotRecord, DaySegmentResult

logger = structlog.get_logger(__name__)


class SnapshotStore(ABC):
    """Snapshot persistence interface."""

    @abstractmethod
    async def upsert_daily_snapshot(self, result: DaySegmentResult) -> None:
        """Insert or overwrite the snapshot for ``(metric_date, segment)``."""

    @abstractmethod
    async def get_daily_snapshots(self, start: date, end: date, segment: str) -> list[DailySnapshotRecord]:
        """Persisted snapshots of one segment with ``start <= metric_date <= end``, ascending."""

    @abstractmethod
    async def upsert_metric_snapshot(self, snapshot: MetricSnapshotData) -> None:
        """Insert or overwrite the snapshot for ``(period_type, period_key)``."""

    @abstractmethod
    async def get_snapshots(
        self, period_type: str, limit: int, before: Optional[date] = None
    ) -> list[MetricSnapshotData]:
        """Most recent period snapshots by ``period_start`` descending, only those starting before ``before`` if given."""


def _to_float(value) -> float:
    if isinstance(value, Decimal):
        return float(value)
    return float(value or 0)


class SqlSnapshotStore(SnapshotStore):
    """SnapshotStore backed by PostgreSQL."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def upsert_daily_snapshot(self, result: DaySegmentResult) -> None:
        user_ids = sorted(result.user_ids)
        stmt = insert(DailyUniqueUsers).values(
            metric_date=result.metric_date,
            segment=result.segment,
            user_ids=user_ids,
            user_count=result.user_count,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_daily_unique_users_date_segment",
            set_={
                "user_ids": stmt.excluded.user_ids,
                "user_count": stmt.excluded.user_count,
                "updated_at": utcnow(),
            },
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()

        logger.debug(
            "daily_snapshot_upserted",
            metric_date=result.metric_date.isoformat(),
            segment=result.segment,
            user_count=result.user_count,
        )

    async def get_daily_snapshots(self, start: date, end: date, segment: str) -> list[DailySnapshotRecord]:
        stmt = (
            select(DailyUniqueUsers)
            .where(
                DailyUniqueUsers.segment == segment,
                DailyUniqueUsers.metric_date >= start,
                DailyUniqueUsers.metric_date <= end,
            )
            .order_by(DailyUniqueUsers.metric_date)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()

        return [
            DailySnapshotRecord(
                metric_date=row.metric_date,
                segment=row.segment,
                user_ids=frozenset(row.user_ids or ()),
                user_count=row.user_count,
            )
            for row in rows
        ]

    async def upsert_metric_snapshot(self, snapshot: MetricSnapshotData) -> None:
        values = {
            "period_type": snapshot.period_type,
            "period_key": snapshot.period_key,
            "period_start": snapshot.period_start,
            "period_end": snapshot.period_end,
            "extras": snapshot.extras,
        }
        for name in SNAPSHOT_NUMERIC_FIELDS:
            values[name] = getattr(snapshot, name)

        stmt = insert(MetricSnapshot).values(**values)
        update = {name: stmt.excluded[name] for name in values if name not in ("period_type", "period_key")}
        update["updated_at"] = utcnow()
        stmt = stmt.on_conflict_do_update(constraint="uq_metric_snapshots_period", set_=update)

        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()

        logger.info(
            "metric_snapshot_upserted",
            period_type=snapshot.period_type,
            period_key=snapshot.period_key,
        )

    async def get_snapshots(
        self, period_type: str, limit: int, before: Optional[date] = None
    ) -> list[MetricSnapshotData]:
        stmt = select(MetricSnapshot).where(MetricSnapshot.period_type == period_type)
        if before is not None:
            stmt = stmt.where(MetricSnapshot.period_start < before)
        stmt = stmt.order_by(MetricSnapshot.period_start.desc()).limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [self._to_data(row) for row in rows]

    @staticmethod
    def _to_data(row: MetricSnapshot) -> MetricSnapshotData:
        values: dict[str, Optional[object]] = {
            "period_type": row.period_type,
            "period_key": row.period_key,
            "period_start": row.period_start,
            "period_end": row.period_end,
            "extras": dict(row.extras or {}),
        }
        for name in SNAPSHOT_NUMERIC_FIELDS:
            raw = getattr(row, name)
            values[name] = raw if isinstance(raw, int) else _to_float(raw)
        return MetricSnapshotData(**values)
