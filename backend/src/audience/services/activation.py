"""
Signup-to-activation funnel.

A signup is activated by the earliest occurrence of any activation event
type within ``[signup_at, signup_at + 7 x 24h]`` (both ends inclusive). Each
activation is bucketed by the user's plan at that instant: the latest
plan-change event at or before the activation, defaulting to free.
"""
import asyncio
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Sequence

import structlog

from audience.adapters.event_store import EventStore
from audience.errors import InvalidInputError
from audience.schemas.activation import (
    ActivationRecord,
    ActivationResult,
    DailyActivationTrend,
    PlanBucket,
    RetentionResult,
)
from audience.schemas.events import PlanChange, Signup

logger = structlog.get_logger(__name__)


def plan_bucket_for(
    plan_changes: Sequence[PlanChange],
    at: datetime,
    paid_plan_types: Sequence[str],
    free_plan_types: Sequence[str],
) -> PlanBucket:
    """
    As-of join: bucket the latest plan change with ``created_at <= at``.

    Args:
        plan_changes: One user's plan-change events, any order
        at: Activation instant
        paid_plan_types: plan_type values counted as paid
        free_plan_types: plan_type values counted as free

    Returns:
        FREE when no plan change precedes ``at``, otherwise the bucket of
        the latest one's plan_type (UNKNOWN when it matches neither set)
    """
    latest: Optional[PlanChange] = None
    for change in plan_changes:
        if change.created_at <= at and (latest is None or change.created_at >= latest.created_at):
            latest = change

    if latest is None:
        return PlanBucket.FREE
    if latest.plan_type in paid_plan_types:
        return PlanBucket.PAID
    if latest.plan_type in free_plan_types:
        return PlanBucket.FREE
    return PlanBucket.UNKNOWN


def _pct(numerator: int, denominator: int) -> float:
    return numerator / denominator * 100 if denominator else 0.0


class ActivationFunnelCalculator:
    """Computes activation, day-N and week-N retention for signup cohorts."""

    def __init__(
        self,
        event_store: EventStore,
        activation_event_types: Sequence[str],
        plan_change_event_types: Sequence[str],
        paid_plan_types: Sequence[str],
        free_plan_types: Sequence[str],
        window_days: int = 7,
        query_timeout: float = 30.0,
    ):
        self.event_store = event_store
        self.activation_event_types = list(activation_event_types)
        self.plan_change_event_types = list(plan_change_event_types)
        self.paid_plan_types = list(paid_plan_types)
        self.free_plan_types = list(free_plan_types)
        self.window = timedelta(days=window_days)
        self.query_timeout = query_timeout

    async def _bounded(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.query_timeout)

    async def _signups(self, start: datetime, end: datetime) -> list[Signup]:
        if start > end:
            raise InvalidInputError(
                "start must not be after end", field="start", value=start.isoformat(), code="invalid_range"
            )
        return await self._bounded(self.event_store.list_signups(start, end, exclude_test_accounts=True))

    async def compute_activation(
        self,
        signup_start: datetime,
        signup_end: datetime,
        activation_event_types: Optional[Sequence[str]] = None,
        plan_change_event_types: Optional[Sequence[str]] = None,
    ) -> ActivationResult:
        """
        Activation funnel for accounts created in ``[signup_start, signup_end)``.

        Args:
            signup_start: Cohort window start (aware)
            signup_end: Cohort window end, exclusive (aware)
            activation_event_types: Overrides the configured activation types
            plan_change_event_types: Overrides the configured plan-change types

        Returns:
            ActivationResult with rate, breakdowns and a daily trend
        """
        activation_types = list(activation_event_types or self.activation_event_types)
        plan_types = list(plan_change_event_types or self.plan_change_event_types)

        signups = await self._signups(signup_start, signup_end)
        if not signups:
            logger.info("activation_computed", total_signups=0, activated_users=0)
            return ActivationResult()

        user_ids = [signup.user_id for signup in signups]
        earliest_signup = min(signup.signup_at for signup in signups)
        latest_deadline = max(signup.signup_at for signup in signups) + self.window

        events, plan_changes = await asyncio.gather(
            self._bounded(self.event_store.list_user_events(user_ids, activation_types, earliest_signup, latest_deadline)),
            self._bounded(self.event_store.list_plan_change_events(user_ids, plan_types)),
        )

        signup_at = {signup.user_id: signup.signup_at for signup in signups}
        first_by_type: dict[tuple[str, str], datetime] = {}
        for event in events:
            started = signup_at.get(event.user_id)
            if started is None or not (started <= event.created_at <= started + self.window):
                continue
            key = (event.user_id, event.event_type)
            if key not in first_by_type or event.created_at < first_by_type[key]:
                first_by_type[key] = event.created_at

        changes_by_user: dict[str, list[PlanChange]] = defaultdict(list)
        for change in plan_changes:
            changes_by_user[change.user_id].append(change)

        activations = [
            ActivationRecord(
                user_id=user_id,
                event_type=event_type,
                activated_at=activated_at,
                plan_bucket=plan_bucket_for(
                    changes_by_user.get(user_id, []), activated_at, self.paid_plan_types, self.free_plan_types
                ),
            )
            for (user_id, event_type), activated_at in sorted(first_by_type.items(), key=lambda item: item[1])
        ]

        activated_ids = {record.user_id for record in activations}
        breakdown = {event_type: 0 for event_type in activation_types}
        breakdown_by_plan = {event_type: {bucket.value: 0 for bucket in PlanBucket} for event_type in activation_types}
        for record in activations:
            breakdown[record.event_type] = breakdown.get(record.event_type, 0) + 1
            breakdown_by_plan.setdefault(record.event_type, {bucket.value: 0 for bucket in PlanBucket})
            breakdown_by_plan[record.event_type][record.plan_bucket.value] += 1

        per_day_signups: dict[date, int] = defaultdict(int)
        per_day_activated: dict[date, int] = defaultdict(int)
        for signup in signups:
            day = _utc_date(signup.signup_at)
            per_day_signups[day] += 1
            if signup.user_id in activated_ids:
                per_day_activated[day] += 1

        daily_trend = [
            DailyActivationTrend(
                date=day,
                signups=per_day_signups[day],
                activated=per_day_activated[day],
                rate=_pct(per_day_activated[day], per_day_signups[day]),
            )
            for day in sorted(per_day_signups)
        ]

        result = ActivationResult(
            total_signups=len(signups),
            activated_users=len(activated_ids),
            rate=_pct(len(activated_ids), len(signups)),
            breakdown_by_event_type=breakdown,
            breakdown_by_event_type_and_plan=breakdown_by_plan,
            daily_trend=daily_trend,
            activations=activations,
        )

        logger.info(
            "activation_computed",
            total_signups=result.total_signups,
            activated_users=result.activated_users,
            rate=result.rate,
        )
        return result

    async def compute_retention(self, cohort_start: datetime, cohort_end: datetime, day: int = 7) -> RetentionResult:
        """
        Day-N retention for accounts created in ``[cohort_start, cohort_end)``.

        A signup is retained when it has any event in
        ``[signup_at + N x 24h, signup_at + (N+1) x 24h)``.
        """
        signups = await self._signups(cohort_start, cohort_end)
        if not signups:
            return RetentionResult(day=day)

        offset = timedelta(days=day)
        span = timedelta(days=1)
        user_ids = [signup.user_id for signup in signups]
        events = await self._bounded(
            self.event_store.list_user_events(
                user_ids,
                None,
                min(s.signup_at for s in signups) + offset,
                max(s.signup_at for s in signups) + offset + span,
            )
        )

        signup_at = {signup.user_id: signup.signup_at for signup in signups}
        retained = set()
        for event in events:
            started = signup_at.get(event.user_id)
            if started is not None and started + offset <= event.created_at < started + offset + span:
                retained.add(event.user_id)

        result = RetentionResult(
            day=day,
            cohort_size=len(signups),
            retained=len(retained),
            rate=_pct(len(retained), len(signups)),
        )
        logger.info("retention_computed", day=day, cohort_size=result.cohort_size, retained=result.retained)
        return result

    async def compute_week_retention(self, cohort_start: datetime, cohort_end: datetime, week: int = 4) -> RetentionResult:
        """
        Week-N retention for accounts created in ``[cohort_start, cohort_end)``.

        A signup is retained when it has any event in the cohort window
        shifted by N x 7 days. ``day`` on the result is N x 7.
        """
        offset = timedelta(days=7 * week)
        signups = await self._signups(cohort_start, cohort_end)
        if not signups:
            return RetentionResult(day=offset.days)

        active_start = cohort_start + offset
        active_end = cohort_end + offset
        events = await self._bounded(
            self.event_store.list_user_events([s.user_id for s in signups], None, active_start, active_end)
        )
        retained = {event.user_id for event in events if active_start <= event.created_at < active_end}

        result = RetentionResult(
            day=offset.days,
            cohort_size=len(signups),
            retained=len(retained),
            rate=_pct(len(retained), len(signups)),
        )
        logger.info("week_retention_computed", week=week, cohort_size=result.cohort_size, retained=result.retained)
        return result


def _utc_date(instant: datetime) -> date:
    if instant.tzinfo is None:
        return instant.date()
    return instant.astimezone(timezone.utc).date()
