"""In-memory implementations of the store, billing and notifier interfaces."""
from datetime import date, datetime
from typing import Awaitable, Callable, Iterable, Optional, Sequence

from audience.adapters.event_store import EventStore
from audience.adapters.snapshot_store import SnapshotStore
from audience.integrations.notification_service import DigestNotifier, NotificationError
from audience.schemas.events import EventRecord, IdentityPair, PlanChange, Signup, UserEvent
from audience.schemas.metric_snapshot import DigestField, MetricSnapshotData, PeriodFigures
from audience.schemas.unique_users import DailySnapshotRecord, DaySegmentResult
from audience.services.billing_metrics import BillingMetricsProvider
from audience.services.identity import is_signed_in_user_id
from audience.services.segments import EventFilter, ExcludedAccounts

QueryHook = Callable[[datetime, EventFilter], Awaitable[None]]


class InMemoryEventStore(EventStore):
    """
    Event store over plain lists.

    ``query_hook`` runs before every identity query and may sleep or raise
    to simulate slow or failing segments.
    """

    def __init__(
        self,
        events: Optional[list[EventRecord]] = None,
        signups: Optional[list[Signup]] = None,
        links: Optional[dict[str, str]] = None,
        has_links: bool = True,
        excluded_accounts: ExcludedAccounts = ExcludedAccounts(),
        query_hook: Optional[QueryHook] = None,
    ):
        self.events = list(events or [])
        self.signups = list(signups or [])
        self.links = dict(links or {})
        self.has_links = has_links
        self.excluded_accounts = excluded_accounts
        self.query_hook = query_hook
        self.identity_queries = 0

    def add(self, *events: EventRecord) -> None:
        self.events.extend(events)

    async def query_distinct_identities(
        self, start: datetime, end: datetime, event_filter: EventFilter
    ) -> list[IdentityPair]:
        self.identity_queries += 1
        if self.query_hook is not None:
            await self.query_hook(start, event_filter)
        pairs = {
            IdentityPair(e.user_id, e.anonymous_id)
            for e in self.events
            if start <= e.created_at < end and event_filter.matches(e.event_type, e.page_path, e.email)
        }
        return sorted(pairs, key=lambda p: (p.user_id or "", p.anonymous_id or ""))

    async def get_identity_links(self, anonymous_ids: Iterable[str]) -> dict[str, str]:
        return {a: self.links[a] for a in anonymous_ids if a in self.links}

    async def has_identity_link_table(self) -> bool:
        return self.has_links

    async def list_signups(self, start: datetime, end: datetime, exclude_test_accounts: bool = True) -> list[Signup]:
        return sorted(
            (
                s
                for s in self.signups
                if start <= s.signup_at < end
                and not (exclude_test_accounts and self.excluded_accounts.matches(s.email))
            ),
            key=lambda s: s.signup_at,
        )

    async def list_user_events(
        self,
        user_ids: Sequence[str],
        event_types: Optional[Sequence[str]],
        start: datetime,
        end: datetime,
    ) -> list[UserEvent]:
        wanted = set(user_ids)
        return [
            UserEvent(user_id=e.user_id, event_type=e.event_type, created_at=e.created_at)
            for e in sorted(self.events, key=lambda e: e.created_at)
            if e.user_id in wanted
            and (event_types is None or e.event_type in event_types)
            and start <= e.created_at <= end
        ]

    async def list_plan_change_events(self, user_ids: Sequence[str], event_types: Sequence[str]) -> list[PlanChange]:
        wanted = set(user_ids)
        return [
            PlanChange(user_id=e.user_id, event_type=e.event_type, plan_type=e.plan_type, created_at=e.created_at)
            for e in sorted(self.events, key=lambda e: e.created_at)
            if e.user_id in wanted and e.event_type in event_types
        ]

    async def count_distinct_users(self, start: datetime, end: datetime, event_types: Sequence[str]) -> int:
        return len(
            {
                e.user_id
                for e in self.events
                if e.event_type in event_types
                and start <= e.created_at < end
                and is_signed_in_user_id(e.user_id)
                and not self.excluded_accounts.matches(e.email)
            }
        )

    async def count_events(self, start: datetime, end: datetime, event_types: Optional[Sequence[str]]) -> int:
        return sum(
            1
            for e in self.events
            if (event_types is None or e.event_type in event_types)
            and start <= e.created_at < end
            and not self.excluded_accounts.matches(e.email)
        )


class InMemorySnapshotStore(SnapshotStore):
    """Snapshot store keyed like the SQL unique constraints."""

    def __init__(self):
        self.daily: dict[tuple[date, str], DailySnapshotRecord] = {}
        self.periods: dict[tuple[str, str], MetricSnapshotData] = {}
        self.daily_upserts = 0
        self.fail_metric_upsert: Optional[Exception] = None

    async def upsert_daily_snapshot(self, result: DaySegmentResult) -> None:
        self.daily_upserts += 1
        self.daily[(result.metric_date, result.segment)] = DailySnapshotRecord(
            metric_date=result.metric_date,
            segment=result.segment,
            user_ids=result.user_ids,
            user_count=result.user_count,
        )

    async def get_daily_snapshots(self, start: date, end: date, segment: str) -> list[DailySnapshotRecord]:
        return sorted(
            (r for (d, s), r in self.daily.items() if s == segment and start <= d <= end),
            key=lambda r: r.metric_date,
        )

    async def upsert_metric_snapshot(self, snapshot: MetricSnapshotData) -> None:
        if self.fail_metric_upsert is not None:
            raise self.fail_metric_upsert
        self.periods[(snapshot.period_type, snapshot.period_key)] = snapshot

    async def get_snapshots(
        self, period_type: str, limit: int, before: Optional[date] = None
    ) -> list[MetricSnapshotData]:
        rows = [
            s
            for (t, _), s in self.periods.items()
            if t == period_type and (before is None or s.period_start < before)
        ]
        return sorted(rows, key=lambda s: s.period_start, reverse=True)[:limit]


class StaticBillingMetrics(BillingMetricsProvider):
    def __init__(self, figures: Optional[PeriodFigures] = None, error: Optional[Exception] = None):
        self.figures = figures or PeriodFigures()
        self.error = error

    async def get_period_figures(self, start: datetime, end: datetime) -> PeriodFigures:
        if self.error is not None:
            raise self.error
        return self.figures


class RecordingNotifier(DigestNotifier):
    """Keeps every delivery; dedupes in memory like the Redis claim."""

    def __init__(self, fail_digest: bool = False, fail_alert: bool = False):
        self.digests: list[dict] = []
        self.alerts: list[dict] = []
        self.claimed: set[str] = set()
        self.fail_digest = fail_digest
        self.fail_alert = fail_alert

    async def send_digest(
        self,
        title: str,
        message: str,
        fields: Sequence[DigestField],
        dedupe_key: str,
        priority: str = "normal",
    ) -> bool:
        if self.fail_digest:
            raise NotificationError("webhook returned HTTP 502")
        if dedupe_key in self.claimed:
            return False
        self.claimed.add(dedupe_key)
        self.digests.append(
            {"title": title, "message": message, "fields": list(fields), "dedupe_key": dedupe_key, "priority": priority}
        )
        return True

    async def send_alert(self, title: str, message: str, priority: str = "high") -> None:
        if self.fail_alert:
            raise NotificationError("alert channel down")
        self.alerts.append({"title": title, "message": message, "priority": priority})
