"""
Daily unique-user aggregation.

Closed days (strictly before today in the UTC store calendar) are computed
once by the backfill path and persisted per ``(metric_date, segment)``. Range
reads only ever serve persisted days; the still-open current day is computed
live on request and labelled as such.

Multi-day figures (WAU, MAU, returning users, active-days distribution) are
unions over persisted daily ``user_ids`` rather than scans of raw events.
"""
import asyncio
import time
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

import structlog

from audience import metrics
from audience.adapters.event_store import EventStore
from audience.adapters.snapshot_store import SnapshotStore
from audience.errors import InvalidInputError, SegmentComputationFailure
from audience.schemas.unique_users import (
    BackfillReport,
    DayCount,
    DaySegmentResult,
    RangeQueryResult,
    SegmentFailureInfo,
    WindowSummary,
)
from audience.services.identity import Capabilities, build_resolver, is_signed_in_user_id
from audience.services.segments import ExcludedAccounts, Segment, segment_definitions
from audience.utils.calendar import iter_days, store_today, utc_day_bounds, utc_now

logger = structlog.get_logger(__name__)

T = TypeVar("T")

ACTIVE_DAYS_BUCKETS = ("days_1", "days_2_3", "days_4_7", "days_8_14", "days_15_plus")


def active_days_bucket(active_days: int) -> str:
    """Bucket name for an identity active on ``active_days`` distinct days."""
    if active_days <= 1:
        return "days_1"
    if active_days <= 3:
        return "days_2_3"
    if active_days <= 7:
        return "days_4_7"
    if active_days <= 14:
        return "days_8_14"
    return "days_15_plus"


class UniqueUserAggregator:
    """
    Computes, persists and reads segmented daily unique users.

    Args:
        event_store: Raw event reads
        snapshot_store: Daily snapshot persistence
        capabilities: Optional features detected at startup
        excluded_accounts: Test/QA accounts dropped from every segment
        concurrency: Maximum concurrent segment computations
        query_timeout: Seconds allowed for each external read or write
        clock: Returns the current aware instant
    """

    def __init__(
        self,
        event_store: EventStore,
        snapshot_store: SnapshotStore,
        capabilities: Capabilities,
        excluded_accounts: ExcludedAccounts,
        concurrency: int = 5,
        query_timeout: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.event_store = event_store
        self.snapshot_store = snapshot_store
        self.capabilities = capabilities
        self.definitions = segment_definitions(excluded_accounts)
        self.concurrency = max(1, concurrency)
        self.query_timeout = query_timeout
        self.clock = clock

    def today(self) -> date:
        return store_today(self.clock())

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.query_timeout)

    async def compute_day_segment(self, day: date, segment: Segment | str) -> DaySegmentResult:
        """
        Distinct canonical identities active on ``day`` within ``segment``.

        Args:
            day: UTC metric date
            segment: Segment name or enum member

        Returns:
            DaySegmentResult with the resolved ids and their count
        """
        segment = _as_segment(segment)
        definition = self.definitions[segment]
        start, end = utc_day_bounds(day)

        pairs = await self._bounded(self.event_store.query_distinct_identities(start, end, definition.event_filter))

        links: dict[str, str] = {}
        if self.capabilities.has_identity_links:
            anonymous_ids = {p.anonymous_id for p in pairs if p.anonymous_id and not is_signed_in_user_id(p.user_id)}
            if anonymous_ids:
                links = await self._bounded(self.event_store.get_identity_links(anonymous_ids))
        else:
            metrics.degraded_resolutions_total.inc()

        resolver = build_resolver(self.capabilities, signed_in_only=definition.signed_in_only)
        user_ids = resolver.resolve_all(pairs, links)

        return DaySegmentResult(
            metric_date=day,
            segment=segment.value,
            user_ids=frozenset(user_ids),
            user_count=len(user_ids),
            resolution=resolver.mode,
        )

    async def _compute_and_store(
        self, day: date, segment: Segment, semaphore: asyncio.Semaphore
    ) -> Optional[SegmentFailureInfo]:
        async with semaphore:
            started = time.perf_counter()
            try:
                result = await self.compute_day_segment(day, segment)
                await self._bounded(self.snapshot_store.upsert_daily_snapshot(result))
            except Exception as exc:
                failure = SegmentComputationFailure(day, segment.value, exc)
                status = "timeout" if isinstance(exc, asyncio.TimeoutError) else "failed"
                metrics.segment_computations_total.labels(segment=segment.value, status=status).inc()
                logger.error(
                    "segment_computation_failed",
                    metric_date=day.isoformat(),
                    segment=segment.value,
                    error=str(failure),
                    error_type=type(exc).__name__,
                )
                return SegmentFailureInfo(
                    metric_date=day,
                    segment=segment.value,
                    error=str(exc) or type(exc).__name__,
                )
            finally:
                metrics.segment_computation_seconds.labels(segment=segment.value).observe(
                    time.perf_counter() - started
                )

        metrics.segment_computations_total.labels(segment=segment.value, status="success").inc()
        return None

    async def _backfill_days(self, days: list[date]) -> tuple[int, list[SegmentFailureInfo]]:
        semaphore = asyncio.Semaphore(self.concurrency)
        jobs = [(day, segment) for day in days for segment in Segment]
        outcomes = await asyncio.gather(*(self._compute_and_store(day, segment, semaphore) for day, segment in jobs))

        failures = [outcome for outcome in outcomes if outcome is not None]
        failed_days = {failure.metric_date for failure in failures}
        days_processed = sum(1 for day in days if day not in failed_days)
        metrics.snapshot_days_backfilled_total.inc(days_processed)
        return days_processed, failures

    async def backfill(self, start: date, end: date) -> BackfillReport:
        """
        Recompute and upsert every segment for each closed day in ``[start, end]``.

        Days on or after today are skipped. Re-running overwrites, so the
        result reflects the identity links present at run time.

        Raises:
            InvalidInputError: If start is after end
        """
        if start > end:
            raise InvalidInputError(
                "start must not be after end", field="start", value=start.isoformat(), code="invalid_range"
            )

        today = self.today()
        days = [day for day in iter_days(start, end) if day < today]

        logger.info(
            "backfill_started",
            start=start.isoformat(),
            end=end.isoformat(),
            days=len(days),
            resolution=self.capabilities.resolution_mode,
        )

        days_processed, failures = await self._backfill_days(days)

        log = logger.warning if failures else logger.info
        log(
            "backfill_completed",
            days_processed=days_processed,
            failures=len(failures),
        )

        return BackfillReport(
            start=start,
            end=end,
            days_processed=days_processed,
            days=days,
            failures=failures,
            resolution=self.capabilities.resolution_mode,
        )

    async def backfill_recent(self, days: int) -> BackfillReport:
        """Backfill the ``days`` closed days ending yesterday."""
        end = self.today() - timedelta(days=1)
        start = end - timedelta(days=max(days, 1) - 1)
        return await self.backfill(start, end)

    async def ensure_backfilled(self, start: date, end: date) -> Optional[BackfillReport]:
        """
        Backfill only the closed days in ``[start, end]`` lacking any segment snapshot.

        Returns:
            The backfill report, or None when nothing was missing
        """
        today = self.today()
        closed_end = min(end, today - timedelta(days=1))
        if start > closed_end:
            return None

        per_segment = await asyncio.gather(
            *(self._bounded(self.snapshot_store.get_daily_snapshots(start, closed_end, s.value)) for s in Segment)
        )
        expected = set(iter_days(start, closed_end))
        missing = set()
        for records in per_segment:
            missing |= expected - {record.metric_date for record in records}
        if not missing:
            return None

        days = sorted(missing)
        logger.info("backfill_missing_days", start=start.isoformat(), end=closed_end.isoformat(), missing=len(days))
        days_processed, failures = await self._backfill_days(days)
        return BackfillReport(
            start=days[0],
            end=days[-1],
            days_processed=days_processed,
            days=days,
            failures=failures,
            resolution=self.capabilities.resolution_mode,
        )

    async def range_query(self, start: date, end: date, segment: Segment | str) -> RangeQueryResult:
        """
        Persisted per-day counts for ``[start, end]``.

        Closed days are served from snapshots only, never recomputed; days
        without a snapshot are listed in ``missing_dates``. Today is flagged
        through ``live_date`` and days after today are ignored.

        Raises:
            InvalidInputError: If start is after end
        """
        if start > end:
            raise InvalidInputError(
                "start must not be after end", field="start", value=start.isoformat(), code="invalid_range"
            )
        segment = _as_segment(segment)

        today = self.today()
        closed_end = min(end, today - timedelta(days=1))

        records = []
        if start <= closed_end:
            records = await self._bounded(self.snapshot_store.get_daily_snapshots(start, closed_end, segment.value))
        by_date = {record.metric_date: record for record in records}

        days = []
        missing_dates = []
        if start <= closed_end:
            for day in iter_days(start, closed_end):
                record = by_date.get(day)
                if record is None:
                    missing_dates.append(day)
                else:
                    days.append(DayCount(metric_date=day, user_count=record.user_count, source="snapshot"))

        return RangeQueryResult(
            segment=segment.value,
            start=start,
            end=end,
            days=days,
            missing_dates=missing_dates,
            live_date=today if start <= today <= end else None,
        )

    async def range_with_live(self, start: date, end: date, segment: Segment | str) -> RangeQueryResult:
        """``range_query`` plus a live computation for today, labelled ``source="live"``."""
        result = await self.range_query(start, end, segment)
        if result.live_date is None:
            return result

        live = await self.compute_day_segment(result.live_date, Segment(result.segment))
        days = result.days + [DayCount(metric_date=live.metric_date, user_count=live.user_count, source="live")]
        return result.model_copy(update={"days": days})

    async def _daily_sets(self, start: date, end: date, segment: Segment) -> dict[date, frozenset[str]]:
        records = await self._bounded(self.snapshot_store.get_daily_snapshots(start, end, segment.value))
        return {record.metric_date: record.user_ids for record in records}

    async def unique_users_in_window(self, start: date, end: date, segment: Segment | str = Segment.ALL) -> int:
        """
        Distinct identities over a window of persisted days (WAU over 7, MAU over 30).

        Raises:
            InvalidInputError: If start is after end
        """
        if start > end:
            raise InvalidInputError(
                "start must not be after end", field="start", value=start.isoformat(), code="invalid_range"
            )
        segment = _as_segment(segment)
        daily = await self._daily_sets(start, end, segment)
        return len(_union(daily.values()))

    async def returning_users(self, start: date, end: date, segment: Segment | str = Segment.ALL) -> int:
        """Identities present on two or more distinct days of the window."""
        segment = _as_segment(segment)
        daily = await self._daily_sets(start, end, segment)
        counts = _active_day_counts(daily.values())
        return sum(1 for active_days in counts.values() if active_days >= 2)

    async def grimoire_only_users(self, start: date, end: date) -> int:
        """Grimoire readers in the window with no app_opened activity in the same window."""
        grimoire, app_opened = await asyncio.gather(
            self._daily_sets(start, end, Segment.GRIMOIRE),
            self._daily_sets(start, end, Segment.APP_OPENED),
        )
        return len(_union(grimoire.values()) - _union(app_opened.values()))

    async def active_days_distribution(
        self, start: date, end: date, segment: Segment | str = Segment.ALL
    ) -> dict[str, int]:
        """Identities bucketed by how many distinct days of the window they were active."""
        segment = _as_segment(segment)
        daily = await self._daily_sets(start, end, segment)
        return _distribution(_active_day_counts(daily.values()))

    async def window_summary(self, start: date, end: date) -> WindowSummary:
        """All window figures for one date range, read from snapshots in one pass per segment."""
        per_segment = await asyncio.gather(*(self._daily_sets(start, end, s) for s in Segment))
        daily = dict(zip(Segment, per_segment))

        all_counts = _active_day_counts(daily[Segment.ALL].values())
        grimoire_only = _union(daily[Segment.GRIMOIRE].values()) - _union(daily[Segment.APP_OPENED].values())

        return WindowSummary(
            start=start,
            end=end,
            segment_users={s.value: len(_union(daily[s].values())) for s in Segment},
            returning_users=sum(1 for active_days in all_counts.values() if active_days >= 2),
            grimoire_only_users=len(grimoire_only),
            active_days_distribution=_distribution(all_counts),
        )


def _union(sets: Iterable[frozenset[str]]) -> set[str]:
    merged: set[str] = set()
    for user_ids in sets:
        merged |= user_ids
    return merged


def _active_day_counts(sets: Iterable[frozenset[str]]) -> Counter:
    counts: Counter = Counter()
    for user_ids in sets:
        counts.update(user_ids)
    return counts


def _distribution(counts: Counter) -> dict[str, int]:
    buckets = {name: 0 for name in ACTIVE_DAYS_BUCKETS}
    for active_days in counts.values():
        buckets[active_days_bucket(active_days)] += 1
    return buckets


def _as_segment(value: Segment | str) -> Segment:
    return value if isinstance(value, Segment) else Segment.parse(value)
