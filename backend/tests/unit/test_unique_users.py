"""Unit tests for daily unique-user snapshots, range reads and window figures."""
import asyncio
from datetime import date, datetime, timezone

import pytest

from audience.errors import InvalidInputError
from audience.services.identity import Capabilities
from audience.services.segments import Segment
from audience.services.unique_users import UniqueUserAggregator, active_days_bucket
from utils.factories import EventFactory

MON = date(2025, 2, 10)
TUE = date(2025, 2, 11)
TODAY = date(2025, 2, 12)


def at(day: date, hour: int = 12) -> datetime:
    return datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc)


def seed_day(event_store, day: date = MON) -> None:
    event_store.add(
        EventFactory.create({"event_type": "tarot_drawn", "user_id": "user_1", "created_at": at(day)}),
        EventFactory.create({"event_type": "app_opened", "user_id": "user_2", "created_at": at(day)}),
        EventFactory.anonymous("a1", {"page_path": "/grimoire/runes", "created_at": at(day)}),
        EventFactory.anonymous("a2", {"page_path": "/blog/full-moon", "created_at": at(day)}),
        EventFactory.create(
            {"event_type": "tarot_drawn", "user_id": "user_qa", "email": "bot@test.example.com", "created_at": at(day)}
        ),
    )


def user_ids(snapshot_store, day: date, segment: Segment) -> frozenset:
    return snapshot_store.daily[(day, segment.value)].user_ids


@pytest.mark.asyncio
async def test_backfill_persists_every_segment(aggregator, event_store, snapshot_store) -> None:
    seed_day(event_store)

    report = await aggregator.backfill(MON, MON)

    assert report.days == [MON]
    assert report.days_processed == 1
    assert report.failures == []
    assert user_ids(snapshot_store, MON, Segment.ALL) == {"user_1", "user_2", "a1", "a2"}
    assert user_ids(snapshot_store, MON, Segment.PRODUCT) == {"user_1"}
    assert user_ids(snapshot_store, MON, Segment.APP_OPENED) == {"user_2"}
    assert user_ids(snapshot_store, MON, Segment.REACH) == {"a1", "a2"}
    assert user_ids(snapshot_store, MON, Segment.GRIMOIRE) == {"a1"}
    assert snapshot_store.daily[(MON, "all")].user_count == 4


@pytest.mark.asyncio
async def test_segments_are_nested(aggregator, event_store, snapshot_store) -> None:
    seed_day(event_store)
    await aggregator.backfill(MON, MON)

    everyone = user_ids(snapshot_store, MON, Segment.ALL)
    assert user_ids(snapshot_store, MON, Segment.PRODUCT) <= everyone
    assert user_ids(snapshot_store, MON, Segment.APP_OPENED) <= everyone
    assert user_ids(snapshot_store, MON, Segment.GRIMOIRE) <= user_ids(snapshot_store, MON, Segment.REACH)


@pytest.mark.asyncio
async def test_backfill_is_idempotent(aggregator, event_store, snapshot_store) -> None:
    seed_day(event_store)
    await aggregator.backfill(MON, TUE)
    first = dict(snapshot_store.daily)

    await aggregator.backfill(MON, TUE)

    assert snapshot_store.daily == first
    assert len(snapshot_store.daily) == 2 * len(Segment)


@pytest.mark.asyncio
async def test_rerun_attributes_visits_to_later_links(aggregator, event_store, snapshot_store) -> None:
    """A link created after the visit folds the anonymous visitor into the account on the next run."""
    event_store.add(
        EventFactory.anonymous("a1", {"page_path": "/grimoire/runes", "created_at": at(MON, 9)}),
        EventFactory.create({"event_type": "tarot_drawn", "user_id": "user_1", "created_at": at(MON, 18)}),
    )
    await aggregator.backfill(MON, MON)
    assert user_ids(snapshot_store, MON, Segment.ALL) == {"a1", "user_1"}

    event_store.links["a1"] = "user_1"
    await aggregator.backfill(MON, MON)

    assert user_ids(snapshot_store, MON, Segment.ALL) == {"user_1"}
    assert user_ids(snapshot_store, MON, Segment.GRIMOIRE) == {"user_1"}


@pytest.mark.asyncio
async def test_degraded_mode_counts_anonymous_ids(event_store, snapshot_store, test_accounts, clock) -> None:
    event_store.links["a1"] = "user_1"
    event_store.add(
        EventFactory.anonymous("a1", {"created_at": at(MON)}),
        EventFactory.create({"event_type": "tarot_drawn", "user_id": "user_1", "created_at": at(MON)}),
    )
    aggregator = UniqueUserAggregator(
        event_store, snapshot_store, Capabilities(has_identity_links=False), test_accounts, clock=clock
    )

    result = await aggregator.compute_day_segment(MON, "all")

    assert result.resolution == "degraded"
    assert result.user_ids == {"a1", "user_1"}
    assert (await aggregator.compute_day_segment(MON, Segment.PRODUCT)).user_ids == {"user_1"}


@pytest.mark.asyncio
async def test_backfill_never_touches_today(aggregator, event_store, snapshot_store) -> None:
    seed_day(event_store, TODAY)

    report = await aggregator.backfill(MON, date(2025, 2, 14))

    assert report.days == [MON, TUE]
    assert not any(day >= TODAY for day, _ in snapshot_store.daily)


@pytest.mark.asyncio
async def test_backfill_recent_ends_yesterday(aggregator) -> None:
    report = await aggregator.backfill_recent(3)
    assert report.days == [date(2025, 2, 9), MON, TUE]


@pytest.mark.asyncio
async def test_backfill_rejects_inverted_range(aggregator) -> None:
    with pytest.raises(InvalidInputError) as exc_info:
        await aggregator.backfill(TUE, MON)
    assert exc_info.value.code == "invalid_range"


@pytest.mark.asyncio
async def test_failed_segment_does_not_block_siblings(aggregator, event_store, snapshot_store) -> None:
    seed_day(event_store)

    async def fail_grimoire(start, event_filter):
        if event_filter.page_path_prefix == "/grimoire":
            raise RuntimeError("statement timeout")

    event_store.query_hook = fail_grimoire

    report = await aggregator.backfill(MON, MON)

    assert report.partial
    assert [(f.metric_date, f.segment) for f in report.failures] == [(MON, "grimoire")]
    assert "statement timeout" in report.failures[0].error
    assert report.days_processed == 0
    assert {segment for _, segment in snapshot_store.daily} == {"all", "product", "app_opened", "reach"}


@pytest.mark.asyncio
async def test_slow_segment_times_out(aggregator, event_store, snapshot_store) -> None:
    async def slow_reach(start, event_filter):
        if event_filter.include_types == frozenset({"page_viewed"}) and event_filter.page_path_prefix is None:
            await asyncio.sleep(5)

    event_store.query_hook = slow_reach
    aggregator.query_timeout = 0.05

    report = await aggregator.backfill(MON, TUE)

    assert sorted((f.metric_date, f.segment) for f in report.failures) == [(MON, "reach"), (TUE, "reach")]
    assert len(snapshot_store.daily) == 2 * (len(Segment) - 1)


@pytest.mark.asyncio
async def test_range_query_reads_snapshots_only(aggregator, event_store, snapshot_store) -> None:
    seed_day(event_store)
    await aggregator.backfill(MON, MON)
    queries = event_store.identity_queries

    result = await aggregator.range_query(date(2025, 2, 9), TUE, "all")

    assert event_store.identity_queries == queries
    assert [(d.metric_date, d.user_count, d.source) for d in result.days] == [(MON, 4, "snapshot")]
    assert result.missing_dates == [date(2025, 2, 9), TUE]
    assert result.live_date is None


@pytest.mark.asyncio
async def test_range_with_live_labels_today(aggregator, event_store) -> None:
    seed_day(event_store, MON)
    seed_day(event_store, TODAY)
    await aggregator.backfill(MON, TUE)

    result = await aggregator.range_with_live(MON, date(2025, 2, 15), Segment.REACH)

    assert result.live_date == TODAY
    assert [(d.metric_date, d.user_count, d.source) for d in result.days] == [
        (MON, 2, "snapshot"),
        (TUE, 0, "snapshot"),
        (TODAY, 2, "live"),
    ]
    assert result.missing_dates == []


@pytest.mark.asyncio
async def test_range_query_rejects_unknown_segment(aggregator) -> None:
    with pytest.raises(InvalidInputError):
        await aggregator.range_query(MON, TUE, "visitors")


@pytest.mark.asyncio
async def test_ensure_backfilled_only_fills_missing_days(aggregator, event_store, snapshot_store) -> None:
    seed_day(event_store)
    await aggregator.backfill(MON, MON)
    queries = event_store.identity_queries

    report = await aggregator.ensure_backfilled(MON, TODAY)

    assert report.days == [TUE]
    assert event_store.identity_queries - queries == len(Segment)
    assert await aggregator.ensure_backfilled(MON, TUE) is None


@pytest.mark.asyncio
async def test_window_figures_from_snapshots(aggregator, event_store) -> None:
    sun = date(2025, 2, 9)
    event_store.add(
        EventFactory.create({"event_type": "app_opened", "user_id": "user_1", "created_at": at(sun)}),
        EventFactory.create({"event_type": "app_opened", "user_id": "user_1", "created_at": at(MON)}),
        EventFactory.create({"event_type": "app_opened", "user_id": "user_1", "created_at": at(TUE)}),
        EventFactory.create({"event_type": "tarot_drawn", "user_id": "user_2", "created_at": at(MON)}),
        EventFactory.anonymous("a1", {"page_path": "/grimoire/runes", "created_at": at(MON)}),
        EventFactory.anonymous("a1", {"page_path": "/grimoire/crystals", "created_at": at(TUE)}),
    )
    await aggregator.backfill(sun, TUE)

    assert await aggregator.unique_users_in_window(sun, TUE) == 3
    assert await aggregator.unique_users_in_window(sun, TUE, "product") == 1
    assert await aggregator.returning_users(sun, TUE) == 2
    assert await aggregator.grimoire_only_users(sun, TUE) == 1

    distribution = await aggregator.active_days_distribution(sun, TUE)
    assert distribution == {"days_1": 1, "days_2_3": 2, "days_4_7": 0, "days_8_14": 0, "days_15_plus": 0}

    summary = await aggregator.window_summary(sun, TUE)
    assert summary.segment_users == {"all": 3, "product": 1, "app_opened": 1, "reach": 1, "grimoire": 1}
    assert summary.returning_users == 2
    assert summary.grimoire_only_users == 1
    assert summary.active_days_distribution == distribution


@pytest.mark.parametrize(
    "days,bucket",
    [(1, "days_1"), (2, "days_2_3"), (3, "days_2_3"), (7, "days_4_7"), (8, "days_8_14"), (15, "days_15_plus")],
)
def test_active_days_bucket(days, bucket) -> None:
    assert active_days_bucket(days) == bucket
