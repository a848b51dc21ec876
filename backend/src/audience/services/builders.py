"""Wiring of stores and services from settings, shared by the API and the worker."""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from audience.adapters.event_store import SqlEventStore
from audience.adapters.snapshot_store import SqlSnapshotStore
from audience.cache import cache
from audience.config import Settings, settings
from audience.database import AsyncSessionLocal
from audience.integrations.notification_service import WebhookDigestNotifier
from audience.services.activation import ActivationFunnelCalculator
from audience.services.billing_metrics import SqlBillingMetricsProvider
from audience.services.identity import Capabilities
from audience.services.period_metrics import PeriodMetricsPipeline
from audience.services.segments import ExcludedAccounts
from audience.services.unique_users import UniqueUserAggregator


def excluded_accounts(config: Settings = settings) -> ExcludedAccounts:
    return ExcludedAccounts.from_lists(config.test_account_emails, config.test_account_suffixes)


def build_event_store(session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal) -> SqlEventStore:
    return SqlEventStore(session_factory, excluded_accounts())


def build_snapshot_store(session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal) -> SqlSnapshotStore:
    return SqlSnapshotStore(session_factory)


def build_aggregator(event_store, snapshot_store, capabilities: Capabilities) -> UniqueUserAggregator:
    return UniqueUserAggregator(
        event_store=event_store,
        snapshot_store=snapshot_store,
        capabilities=capabilities,
        excluded_accounts=excluded_accounts(),
        concurrency=settings.segment_concurrency,
        query_timeout=settings.query_timeout_seconds,
    )


def build_funnel(event_store) -> ActivationFunnelCalculator:
    return ActivationFunnelCalculator(
        event_store=event_store,
        activation_event_types=settings.activation_event_types,
        plan_change_event_types=settings.plan_change_event_types,
        paid_plan_types=settings.paid_plan_types,
        free_plan_types=settings.free_plan_types,
        window_days=settings.activation_window_days,
        query_timeout=settings.query_timeout_seconds,
    )


def build_notifier() -> WebhookDigestNotifier:
    return WebhookDigestNotifier(
        webhook_url=settings.notifier_webhook_url,
        cache=cache,
        dedupe_ttl_seconds=settings.notifier_dedupe_ttl_seconds,
    )


def build_pipeline(
    capabilities: Capabilities,
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    notifier=None,
) -> PeriodMetricsPipeline:
    """Weekly pipeline over the SQL stores and the webhook notifier."""
    event_store = build_event_store(session_factory)
    snapshot_store = build_snapshot_store(session_factory)
    return PeriodMetricsPipeline(
        aggregator=build_aggregator(event_store, snapshot_store, capabilities),
        funnel=build_funnel(event_store),
        event_store=event_store,
        snapshot_store=snapshot_store,
        billing=SqlBillingMetricsProvider(session_factory, excluded_accounts()),
        notifier=notifier or build_notifier(),
        report_timezone=settings.report_timezone,
        trial_event_types=settings.trial_event_types,
        paying_event_types=settings.paying_event_types,
        paywall_event_types=settings.paywall_event_types,
        session_event_types=settings.session_event_types,
        feature_groups=settings.feature_groups,
        top_features_limit=settings.top_features_limit,
        retention_day=settings.retention_day,
        concurrency=settings.segment_concurrency,
        query_timeout=settings.query_timeout_seconds,
    )
