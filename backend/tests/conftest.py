"""Pytest configuration and fixtures for the metrics engine."""
from datetime import datetime, timezone
from typing import Callable, Generator

import pytest
from fastapi.testclient import TestClient

from audience.schemas.metric_snapshot import PeriodFigures
from audience.services.activation import ActivationFunnelCalculator
from audience.services.identity import Capabilities
from audience.services.period_metrics import PeriodMetricsPipeline
from audience.services.segments import ExcludedAccounts
from audience.services.unique_users import UniqueUserAggregator
from utils.fakes import InMemoryEventStore, InMemorySnapshotStore, RecordingNotifier, StaticBillingMetrics

# Wednesday; the closed days end on Tuesday 2025-02-11
NOW = datetime(2025, 2, 12, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock(now: datetime) -> Callable[[], datetime]:
    """Fixed clock for the aggregator and pipeline."""
    return lambda: now


@pytest.fixture
def test_accounts() -> ExcludedAccounts:
    return ExcludedAccounts.from_lists(["qa@astro.example"], ["@test.example.com"])


@pytest.fixture
def event_store(test_accounts: ExcludedAccounts) -> InMemoryEventStore:
    return InMemoryEventStore(excluded_accounts=test_accounts)


@pytest.fixture
def snapshot_store() -> InMemorySnapshotStore:
    return InMemorySnapshotStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def billing() -> StaticBillingMetrics:
    return StaticBillingMetrics(
        PeriodFigures(mrr=1250.0, active_subscribers=50, active_subscribers_start=48, churned=2, churn_rate=4.17)
    )


@pytest.fixture
def aggregator(
    event_store: InMemoryEventStore,
    snapshot_store: InMemorySnapshotStore,
    test_accounts: ExcludedAccounts,
    clock,
) -> UniqueUserAggregator:
    """Aggregator with identity links available."""
    return UniqueUserAggregator(
        event_store=event_store,
        snapshot_store=snapshot_store,
        capabilities=Capabilities(has_identity_links=True),
        excluded_accounts=test_accounts,
        concurrency=3,
        query_timeout=1.0,
        clock=clock,
    )


@pytest.fixture
def funnel(event_store: InMemoryEventStore) -> ActivationFunnelCalculator:
    return ActivationFunnelCalculator(
        event_store=event_store,
        activation_event_types=["chart_viewed", "tarot_drawn"],
        plan_change_event_types=["trial_started", "subscription_started"],
        paid_plan_types=["monthly", "yearly"],
        free_plan_types=["free"],
        window_days=7,
        query_timeout=1.0,
    )


@pytest.fixture
def pipeline(
    aggregator: UniqueUserAggregator,
    funnel: ActivationFunnelCalculator,
    event_store: InMemoryEventStore,
    snapshot_store: InMemorySnapshotStore,
    billing: StaticBillingMetrics,
    notifier: RecordingNotifier,
    clock,
) -> PeriodMetricsPipeline:
    return PeriodMetricsPipeline(
        aggregator=aggregator,
        funnel=funnel,
        event_store=event_store,
        snapshot_store=snapshot_store,
        billing=billing,
        notifier=notifier,
        report_timezone="Europe/London",
        feature_groups={"Tarot": ["tarot_drawn"], "Birth Chart": ["chart_viewed"]},
        query_timeout=1.0,
        clock=clock,
    )


@pytest.fixture
def client(
    monkeypatch: pytest.MonkeyPatch,
    aggregator: UniqueUserAggregator,
    funnel: ActivationFunnelCalculator,
    pipeline: PeriodMetricsPipeline,
) -> Generator[TestClient, None, None]:
    """
    FastAPI test client wired to the in-memory stores.

    Startup capability detection runs against an empty in-memory store and
    the cron secret is set to ``s3cret``.
    """
    from audience import main
    from audience.api.deps import get_aggregator, get_funnel, get_pipeline
    from audience.config import settings

    monkeypatch.setattr(main, "build_event_store", lambda: InMemoryEventStore())
    monkeypatch.setattr(settings, "cron_secret", "s3cret")

    main.app.dependency_overrides[get_aggregator] = lambda: aggregator
    main.app.dependency_overrides[get_funnel] = lambda: funnel
    main.app.dependency_overrides[get_pipeline] = lambda: pipeline

    with TestClient(main.app) as test_client:
        yield test_client

    main.app.dependency_overrides.clear()
