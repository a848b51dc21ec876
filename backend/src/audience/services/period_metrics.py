"""
Weekly period metrics pipeline.

Invoked by the scheduler once a week. Each run:

1. resolves the previous calendar week in the reporting timezone
2. backfills any missing daily snapshots of that week, then computes WAU,
   activation, the conversion funnel, trial and revenue figures, D7 and W4
   retention and top features concurrently
3. upserts one MetricSnapshot keyed ("weekly", ISO week)
4. compares it with the previous weekly snapshot
5. sends the digest once per ISO week

Any failure moves the run to FAILED, attempts an alert and re-raises as
PipelineFailure. The snapshot is written in one statement after every figure
is known, so a failed run never leaves a partial row.

The daily snapshot store is keyed by UTC dates; the seven civil dates of the
reporting week are read as UTC metric dates, which can shift up to one hour
of activity across the week boundary during British Summer Time.
"""
import asyncio
import enum
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

import structlog

from audience import metrics
from audience.adapters.event_store import EventStore
from audience.adapters.snapshot_store import SnapshotStore
from audience.errors import AudienceError, PipelineFailure
from audience.integrations.notification_service import DigestNotifier
from audience.models.metric_snapshot import PeriodType
from audience.schemas.metric_snapshot import (
    SNAPSHOT_NUMERIC_FIELDS,
    DigestField,
    MetricDelta,
    MetricSnapshotData,
)
from audience.services.activation import ActivationFunnelCalculator
from audience.services.billing_metrics import BillingMetricsProvider
from audience.services.unique_users import UniqueUserAggregator
from audience.tracing import get_tracer
from audience.utils.calendar import iso_week_key, previous_week_bounds, utc_now

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)

ALERT_TITLE = "Weekly Metrics Pipeline Failed"


class PipelineState(str, enum.Enum):
    """Pipeline run states; FAILED is reachable from every non-terminal state."""

    IDLE = "idle"
    COMPUTING_BOUNDARIES = "computing_boundaries"
    COMPUTING_METRICS = "computing_metrics"
    PERSISTING = "persisting"
    COMPUTING_DELTAS = "computing_deltas"
    NOTIFYING = "notifying"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PipelineOutcome:
    """Result of a successful run."""

    state: PipelineState
    period_key: str
    snapshot: MetricSnapshotData
    deltas: dict[str, MetricDelta] = field(default_factory=dict)
    digest_sent: bool = False
    duration_ms: int = 0


def compute_delta(name: str, current: float, previous: Optional[float]) -> MetricDelta:
    """
    Percentage change of one field.

    Returns a delta with ``pct=None`` when there is no previous value or the
    previous value is zero.
    """
    if previous is None or previous == 0:
        return MetricDelta(field=name, current=current, previous=previous, pct=None)
    return MetricDelta(
        field=name,
        current=current,
        previous=previous,
        pct=(current - previous) / previous * 100,
    )


def compute_deltas(current: MetricSnapshotData, previous: Optional[MetricSnapshotData]) -> dict[str, MetricDelta]:
    """Deltas for every numeric snapshot field."""
    return {
        name: compute_delta(
            name,
            float(getattr(current, name)),
            float(getattr(previous, name)) if previous is not None else None,
        )
        for name in SNAPSHOT_NUMERIC_FIELDS
    }


def data_completeness_score(
    new_signups: int, wau: int, mrr: float, active_subscribers: int, retention_available: bool = True
) -> int:
    """100, minus 10 per figure that is zero while a related figure says it should not be, minus 5 without retention."""
    score = 100
    if wau == 0 and new_signups > 0:
        score -= 10
    if mrr == 0 and active_subscribers > 0:
        score -= 10
    if not retention_available:
        score -= 5
    return score


def _rate(numerator: float, denominator: float) -> float:
    return round(numerator / denominator * 100, 2) if denominator else 0.0


def conversion_funnel(
    visits: int, signups: int, activated: int, paywall_views: int, trials: int, paying: int
) -> dict[str, Any]:
    """Step counts of the weekly funnel and the conversion rate between adjacent steps."""
    return {
        "visit_or_app_open": visits,
        "signup": signups,
        "activation": activated,
        "paywall_view": paywall_views,
        "trial_start": trials,
        "subscription_start": paying,
        "conversion_visit_to_signup": _rate(signups, visits),
        "conversion_signup_to_activation": _rate(activated, signups),
        "conversion_activation_to_trial": _rate(trials, activated),
        "conversion_trial_to_paid": _rate(paying, trials),
    }


async def gather_or_cancel(*awaitables: Awaitable[Any]) -> list[Any]:
    """
    Run awaitables concurrently and return their results in order.

    On the first error every unfinished sibling is cancelled and awaited
    before the error propagates.
    """
    tasks = [asyncio.ensure_future(awaitable) for awaitable in awaitables]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def _number(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}"


def _line(label: str, value: float, delta: Optional[MetricDelta], suffix: str = "") -> str:
    text = f"{label}: {_number(value)}{suffix}"
    if delta is not None and delta.pct is not None:
        text += f" ({delta.display})"
    return text


def _w4_line(rate: Optional[float]) -> str:
    return "W4 retention: n/a" if rate is None else _line("W4 retention", rate, None, "%")


def build_digest(
    snapshot: MetricSnapshotData, deltas: Mapping[str, MetricDelta]
) -> tuple[str, str, list[DigestField]]:
    """
    Render the weekly digest.

    Returns:
        (title, message, fields) where fields are grouped as week,
        acquisition, engagement & revenue, health and top features
    """
    d = deltas.get
    extras = snapshot.extras

    title = f"Weekly Metrics {snapshot.period_key}"
    message = (
        f"{snapshot.period_start.isoformat()} to {snapshot.period_end.isoformat()}: "
        f"{_number(snapshot.wau)} weekly active users, {_number(snapshot.new_signups)} new signups"
    )

    fields = [
        DigestField(
            name="Week",
            value=f"{snapshot.period_key} ({snapshot.period_start.isoformat()} to {snapshot.period_end.isoformat()})",
            inline=False,
        ),
        DigestField(
            name="Acquisition",
            value="\n".join(
                [
                    _line("New signups", snapshot.new_signups, d("new_signups")),
                    _line("New trials", snapshot.new_trials, d("new_trials")),
                    _line("New paying", snapshot.new_paying_subscribers, d("new_paying_subscribers")),
                    _line("Trial to paid", snapshot.trial_to_paid_conversion_rate, d("trial_to_paid_conversion_rate"), "%"),
                ]
            ),
        ),
        DigestField(
            name="Engagement & Revenue",
            value="\n".join(
                [
                    _line("WAU", snapshot.wau, d("wau")),
                    _line("Returning users", extras.get("returning_users", 0), None),
                    _line("Activation rate", snapshot.activation_rate, d("activation_rate"), "%"),
                    _line("MRR", snapshot.mrr, d("mrr")),
                    _line("Active subscribers", snapshot.active_subscribers, d("active_subscribers")),
                    _line("Gross revenue", extras.get("gross_revenue", 0), None),
                    _line("ARR run rate", extras.get("arr_run_rate_end_of_week", snapshot.mrr * 12), None),
                ]
            ),
        ),
        DigestField(
            name="Health",
            value="\n".join(
                [
                    _line("Churn rate", snapshot.churn_rate, d("churn_rate"), "%"),
                    _line("D7 retention", snapshot.d7_retention, d("d7_retention"), "%"),
                    _w4_line(extras.get("w4_retention")),
                    f"Identity resolution: {extras.get('identity_resolution', 'linked')}",
                    f"Data completeness: {extras.get('data_completeness_score', 100)}/100",
                ]
            ),
        ),
    ]

    top_features = extras.get("top_features") or []
    fields.append(
        DigestField(
            name="Top Features",
            value="\n".join(f"{item['feature']}: {_number(item['distinct_users'])}" for item in top_features)
            or "No feature usage recorded",
            inline=False,
        )
    )
    return title, message, fields


class PeriodMetricsPipeline:
    """
    Orchestrates one weekly metrics run.

    Args:
        aggregator: Daily unique-user snapshots and window figures
        funnel: Activation and retention
        event_store: Trial, paying and feature counts
        snapshot_store: Period snapshot persistence
        billing: Revenue figures
        notifier: Digest and alert delivery
        report_timezone: Civil timezone for week boundaries
        trial_event_types: Events counted as new trials
        paying_event_types: Events counted as new paying subscribers
        paywall_event_types: Events counted as a paywall view in the funnel
        session_event_types: Events counted as one session
        feature_groups: Feature name -> event types for the top features list
        top_features_limit: How many features the digest lists
        retention_day: Day-N for the retention figure
        concurrency: Maximum concurrent metric calls
        query_timeout: Seconds allowed for each metric call
        clock: Returns the current aware instant
    """

    def __init__(
        self,
        aggregator: UniqueUserAggregator,
        funnel: ActivationFunnelCalculator,
        event_store: EventStore,
        snapshot_store: SnapshotStore,
        billing: BillingMetricsProvider,
        notifier: DigestNotifier,
        report_timezone: str = "Europe/London",
        trial_event_types: Sequence[str] = ("trial_started",),
        paying_event_types: Sequence[str] = ("trial_converted", "subscription_started"),
        paywall_event_types: Sequence[str] = ("pricing_page_viewed",),
        session_event_types: Sequence[str] = ("app_opened",),
        feature_groups: Optional[Mapping[str, Sequence[str]]] = None,
        top_features_limit: int = 5,
        retention_day: int = 7,
        concurrency: int = 5,
        query_timeout: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.aggregator = aggregator
        self.funnel = funnel
        self.event_store = event_store
        self.snapshot_store = snapshot_store
        self.billing = billing
        self.notifier = notifier
        self.report_timezone = report_timezone
        self.trial_event_types = list(trial_event_types)
        self.paying_event_types = list(paying_event_types)
        self.paywall_event_types = list(paywall_event_types)
        self.session_event_types = list(session_event_types)
        self.feature_groups = dict(feature_groups or {})
        self.top_features_limit = top_features_limit
        self.retention_day = retention_day
        self.concurrency = max(1, concurrency)
        self.query_timeout = query_timeout
        self.clock = clock
        self.state = PipelineState.IDLE

    def _enter(self, state: PipelineState) -> None:
        self.state = state
        logger.info("pipeline_state", state=state.value)

    async def run(self, now: Optional[datetime] = None) -> PipelineOutcome:
        """
        Compute, persist and announce the previous week's metrics.

        Args:
            now: Reference instant; defaults to the clock

        Returns:
            PipelineOutcome in state DONE

        Raises:
            PipelineFailure: Wrapping the first error; an alert has been attempted
        """
        started = time.perf_counter()
        now = now or self.clock()
        self.state = PipelineState.IDLE

        try:
            self._enter(PipelineState.COMPUTING_BOUNDARIES)
            with tracer.start_as_current_span("weekly_metrics.boundaries"):
                week_start, week_end = previous_week_bounds(now, self.report_timezone)
                period_key = iso_week_key(week_start.date())

            self._enter(PipelineState.COMPUTING_METRICS)
            with tracer.start_as_current_span("weekly_metrics.compute"):
                snapshot = await self._compute_snapshot(week_start, week_end, period_key)

            self._enter(PipelineState.PERSISTING)
            with tracer.start_as_current_span("weekly_metrics.persist"):
                await asyncio.wait_for(self.snapshot_store.upsert_metric_snapshot(snapshot), self.query_timeout)
                metrics.metric_snapshots_upserted_total.labels(period_type=snapshot.period_type).inc()

            self._enter(PipelineState.COMPUTING_DELTAS)
            with tracer.start_as_current_span("weekly_metrics.deltas"):
                earlier = await asyncio.wait_for(
                    self.snapshot_store.get_snapshots(PeriodType.WEEKLY, limit=1, before=snapshot.period_start),
                    self.query_timeout,
                )
                previous = earlier[0] if earlier else None
                deltas = compute_deltas(snapshot, previous)

            self._enter(PipelineState.NOTIFYING)
            with tracer.start_as_current_span("weekly_metrics.notify"):
                title, message, fields = build_digest(snapshot, deltas)
                sent = await self.notifier.send_digest(
                    title=title,
                    message=message,
                    fields=fields,
                    dedupe_key=f"weekly-metrics-{period_key}",
                    priority="normal",
                )

            self._enter(PipelineState.DONE)
        except Exception as exc:
            failed_stage = self.state
            self._enter(PipelineState.FAILED)
            metrics.pipeline_runs_total.labels(state=PipelineState.FAILED.value).inc()
            logger.error(
                "weekly_metrics_failed",
                stage=failed_stage.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await self._alert(failed_stage, exc)
            raise PipelineFailure(failed_stage.value, exc) from exc

        duration_ms = int((time.perf_counter() - started) * 1000)
        metrics.pipeline_runs_total.labels(state=PipelineState.DONE.value).inc()
        logger.info("weekly_metrics_completed", period_key=period_key, digest_sent=sent, duration_ms=duration_ms)
        return PipelineOutcome(
            state=PipelineState.DONE,
            period_key=period_key,
            snapshot=snapshot,
            deltas=deltas,
            digest_sent=sent,
            duration_ms=duration_ms,
        )

    async def _alert(self, stage: PipelineState, exc: BaseException) -> None:
        try:
            await self.notifier.send_alert(
                title=ALERT_TITLE,
                message=f"Failed while {stage.value.replace('_', ' ')}: {exc}",
                priority="high",
            )
        except Exception as alert_error:
            logger.error("failure_alert_failed", error=str(alert_error), error_type=type(alert_error).__name__)

    async def _compute_snapshot(self, week_start: datetime, week_end: datetime, period_key: str) -> MetricSnapshotData:
        first_day = week_start.date()
        last_day = (week_end - timedelta(days=1)).date()
        utc_start = week_start.astimezone(timezone.utc)
        utc_end = week_end.astimezone(timezone.utc)

        report = await self.aggregator.ensure_backfilled(first_day, last_day)
        if report is not None and report.failures:
            first = report.failures[0]
            raise AudienceError(
                f"{len(report.failures)} daily snapshot(s) could not be computed, "
                f"first {first.segment} on {first.metric_date.isoformat()}: {first.error}"
            )

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(awaitable: Awaitable[Any]) -> Any:
            async with semaphore:
                return await asyncio.wait_for(awaitable, self.query_timeout)

        # week-4 cohort: accounts created four weeks before the reported week
        w4_cohort_start = utc_start - timedelta(days=28)
        feature_names = list(self.feature_groups)
        (
            window,
            activation,
            retention,
            w4,
            new_trials,
            new_paying,
            paywall_views,
            sessions,
            total_events,
            billing,
            *feature_counts,
        ) = await gather_or_cancel(
            bounded(self.aggregator.window_summary(first_day, last_day)),
            bounded(self.funnel.compute_activation(utc_start, utc_end)),
            bounded(
                self.funnel.compute_retention(
                    utc_start - timedelta(days=7), utc_start, day=self.retention_day
                )
            ),
            bounded(self.funnel.compute_week_retention(w4_cohort_start, w4_cohort_start + timedelta(days=7), week=4)),
            bounded(self.event_store.count_distinct_users(utc_start, utc_end, self.trial_event_types)),
            bounded(self.event_store.count_distinct_users(utc_start, utc_end, self.paying_event_types)),
            bounded(self.event_store.count_distinct_users(utc_start, utc_end, self.paywall_event_types)),
            bounded(self.event_store.count_events(utc_start, utc_end, self.session_event_types)),
            bounded(self.event_store.count_events(utc_start, utc_end, None)),
            bounded(self.billing.get_period_figures(utc_start, utc_end)),
            *(
                bounded(self.event_store.count_distinct_users(utc_start, utc_end, self.feature_groups[name]))
                for name in feature_names
            ),
        )

        wau = window.segment_users.get("all", 0)
        top_features = sorted(
            (
                {"feature": name, "distinct_users": count}
                for name, count in zip(feature_names, feature_counts)
                if count > 0
            ),
            key=lambda item: item["distinct_users"],
            reverse=True,
        )[: self.top_features_limit]

        extras = {
            "top_features": top_features,
            "activation_breakdown": activation.breakdown_by_event_type,
            "activation_breakdown_by_plan": activation.breakdown_by_event_type_and_plan,
            "segment_wau": window.segment_users,
            "returning_users": window.returning_users,
            "grimoire_only_users": window.grimoire_only_users,
            "active_days_distribution": window.active_days_distribution,
            "identity_resolution": self.aggregator.capabilities.resolution_mode,
            "activated_users": activation.activated_users,
            "funnel": conversion_funnel(
                wau, activation.total_signups, activation.activated_users, paywall_views, new_trials, new_paying
            ),
            "avg_sessions_per_active_user": round(sessions / wau, 2) if wau else 0.0,
            "avg_events_per_active_user": round(total_events / wau, 2) if wau else 0.0,
            "gross_revenue": round(billing.gross_revenue, 2),
            "arr_run_rate_end_of_week": round(billing.mrr * 12, 2),
            "arpu_week": round(billing.gross_revenue / wau, 2) if wau else 0.0,
            "w4_retention": round(w4.rate, 2) if w4.cohort_size else None,
            "w4_cohort_size": w4.cohort_size,
            "data_completeness_score": data_completeness_score(
                activation.total_signups,
                wau,
                billing.mrr,
                billing.active_subscribers,
                retention_available=retention.cohort_size > 0,
            ),
        }

        snapshot = MetricSnapshotData(
            period_type=PeriodType.WEEKLY,
            period_key=period_key,
            period_start=first_day,
            period_end=last_day,
            new_signups=activation.total_signups,
            new_trials=new_trials,
            new_paying_subscribers=new_paying,
            wau=wau,
            activation_rate=activation.rate,
            trial_to_paid_conversion_rate=new_paying / new_trials * 100 if new_trials else 0.0,
            mrr=billing.mrr,
            active_subscribers=billing.active_subscribers,
            churn_rate=billing.churn_rate,
            d7_retention=retention.rate,
            extras=extras,
        ).rounded()

        logger.info(
            "weekly_metrics_computed",
            period_key=period_key,
            wau=snapshot.wau,
            new_signups=snapshot.new_signups,
            activation_rate=snapshot.activation_rate,
            mrr=snapshot.mrr,
        )
        return snapshot
