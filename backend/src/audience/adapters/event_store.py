"""
Read-only access to raw events, signups and identity links.

The engine never writes these tables. ``SqlEventStore`` opens a session per
call through the session factory so that concurrent segment computations do
not share one ``AsyncSession``.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional, Sequence

import structlog
from sqlalchemy import and_, func, inspect, not_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from audience.models.event import ConversionEvent, User
from audience.models.identity_link import IdentityLink
from audience.schemas.events import IdentityPair, PlanChange, Signup, UserEvent
from audience.services.identity import ANON_PREFIX
from audience.services.segments import EventFilter, ExcludedAccounts

logger = structlog.get_logger(__name__)

IDENTITY_LINK_TABLE = IdentityLink.__tablename__


class EventStore(ABC):
    """Event read interface used by the aggregator, funnel and pipeline."""

    @abstractmethod
    async def query_distinct_identities(
        self, start: datetime, end: datetime, event_filter: EventFilter
    ) -> list[IdentityPair]:
        """Distinct (user_id, anonymous_id) pairs of matching events in ``[start, end)``."""

    @abstractmethod
    async def get_identity_links(self, anonymous_ids: Iterable[str]) -> dict[str, str]:
        """Map of anonymous_id -> user_id for the ids that have a link."""

    @abstractmethod
    async def has_identity_link_table(self) -> bool:
        """Whether the optional identity link table exists."""

    @abstractmethod
    async def list_signups(self, start: datetime, end: datetime, exclude_test_accounts: bool = True) -> list[Signup]:
        """Accounts created in ``[start, end)``."""

    @abstractmethod
    async def list_user_events(
        self,
        user_ids: Sequence[str],
        event_types: Optional[Sequence[str]],
        start: datetime,
        end: datetime,
    ) -> list[UserEvent]:
        """
        Events of the given signed-in users with ``start <= created_at <= end``.

        ``event_types=None`` means any event type.
        """

    @abstractmethod
    async def list_plan_change_events(self, user_ids: Sequence[str], event_types: Sequence[str]) -> list[PlanChange]:
        """Every plan-change event of the given users, oldest first."""

    @abstractmethod
    async def count_distinct_users(self, start: datetime, end: datetime, event_types: Sequence[str]) -> int:
        """Distinct signed-in users with one of ``event_types`` in ``[start, end)``, test accounts excluded."""

    @abstractmethod
    async def count_events(self, start: datetime, end: datetime, event_types: Optional[Sequence[str]]) -> int:
        """
        Events in ``[start, end)`` of any identity, test accounts excluded.

        ``event_types=None`` means any event type.
        """


def excluded_accounts_clause(column, accounts: ExcludedAccounts):
    """SQL predicate keeping rows whose email is null or not a test account."""
    if not accounts.emails and not accounts.suffixes:
        return None
    lowered = func.lower(column)
    conditions = []
    if accounts.emails:
        conditions.append(lowered.not_in(sorted(accounts.emails)))
    for suffix in accounts.suffixes:
        conditions.append(not_(lowered.endswith(suffix, autoescape=True)))
    return or_(column.is_(None), and_(*conditions))


def signed_in_clause(column):
    return and_(column.is_not(None), column != "", not_(column.startswith(ANON_PREFIX, autoescape=True)))


class SqlEventStore(EventStore):
    """EventStore backed by the shared PostgreSQL database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], excluded_accounts: ExcludedAccounts):
        """
        Initialize the store.

        Args:
            session_factory: Factory used to open one session per read
            excluded_accounts: Test/QA accounts dropped from every read
        """
        self.session_factory = session_factory
        self.excluded_accounts = excluded_accounts

    def _event_filter_clauses(self, event_filter: EventFilter) -> list:
        clauses = []
        if event_filter.include_types is not None:
            clauses.append(ConversionEvent.event_type.in_(sorted(event_filter.include_types)))
        if event_filter.exclude_types:
            clauses.append(ConversionEvent.event_type.not_in(sorted(event_filter.exclude_types)))
        if event_filter.page_path_prefix is not None:
            clauses.append(ConversionEvent.page_path.startswith(event_filter.page_path_prefix, autoescape=True))
        excluded = excluded_accounts_clause(ConversionEvent.user_email, event_filter.excluded_accounts)
        if excluded is not None:
            clauses.append(excluded)
        return clauses

    async def query_distinct_identities(
        self, start: datetime, end: datetime, event_filter: EventFilter
    ) -> list[IdentityPair]:
        stmt = (
            select(ConversionEvent.user_id, ConversionEvent.anonymous_id)
            .distinct()
            .where(
                ConversionEvent.created_at >= start,
                ConversionEvent.created_at < end,
                *self._event_filter_clauses(event_filter),
            )
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [IdentityPair(row.user_id, row.anonymous_id) for row in result]

    async def get_identity_links(self, anonymous_ids: Iterable[str]) -> dict[str, str]:
        ids = sorted({a for a in anonymous_ids if a})
        if not ids:
            return {}
        stmt = select(IdentityLink.anonymous_id, IdentityLink.user_id).where(IdentityLink.anonymous_id.in_(ids))
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return {row.anonymous_id: row.user_id for row in result}

    async def has_identity_link_table(self) -> bool:
        async with self.session_factory() as session:
            connection = await session.connection()
            exists = await connection.run_sync(
                lambda sync_conn: inspect(sync_conn).has_table(IDENTITY_LINK_TABLE)
            )
        logger.info("identity_link_table_checked", exists=exists)
        return exists

    async def list_signups(self, start: datetime, end: datetime, exclude_test_accounts: bool = True) -> list[Signup]:
        stmt = select(User.id, User.email, User.created_at).where(User.created_at >= start, User.created_at < end)
        if exclude_test_accounts:
            excluded = excluded_accounts_clause(User.email, self.excluded_accounts)
            if excluded is not None:
                stmt = stmt.where(excluded)
        stmt = stmt.order_by(User.created_at)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [Signup(user_id=row.id, email=row.email, signup_at=row.created_at) for row in result]

    async def list_user_events(
        self,
        user_ids: Sequence[str],
        event_types: Optional[Sequence[str]],
        start: datetime,
        end: datetime,
    ) -> list[UserEvent]:
        if not user_ids:
            return []
        stmt = select(ConversionEvent.user_id, ConversionEvent.event_type, ConversionEvent.created_at).where(
            ConversionEvent.user_id.in_(list(user_ids)),
            ConversionEvent.created_at >= start,
            ConversionEvent.created_at <= end,
        )
        if event_types is not None:
            stmt = stmt.where(ConversionEvent.event_type.in_(list(event_types)))
        stmt = stmt.order_by(ConversionEvent.created_at)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [
                UserEvent(user_id=row.user_id, event_type=row.event_type, created_at=row.created_at)
                for row in result
            ]

    async def list_plan_change_events(self, user_ids: Sequence[str], event_types: Sequence[str]) -> list[PlanChange]:
        if not user_ids or not event_types:
            return []
        stmt = (
            select(
                ConversionEvent.user_id,
                ConversionEvent.event_type,
                ConversionEvent.plan_type,
                ConversionEvent.created_at,
            )
            .where(
                ConversionEvent.user_id.in_(list(user_ids)),
                ConversionEvent.event_type.in_(list(event_types)),
            )
            .order_by(ConversionEvent.created_at)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [
                PlanChange(
                    user_id=row.user_id,
                    event_type=row.event_type,
                    plan_type=row.plan_type,
                    created_at=row.created_at,
                )
                for row in result
            ]

    async def count_distinct_users(self, start: datetime, end: datetime, event_types: Sequence[str]) -> int:
        if not event_types:
            return 0
        stmt = select(func.count(func.distinct(ConversionEvent.user_id))).where(
            ConversionEvent.event_type.in_(list(event_types)),
            ConversionEvent.created_at >= start,
            ConversionEvent.created_at < end,
            signed_in_clause(ConversionEvent.user_id),
        )
        excluded = excluded_accounts_clause(ConversionEvent.user_email, self.excluded_accounts)
        if excluded is not None:
            stmt = stmt.where(excluded)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one() or 0)

    async def count_events(self, start: datetime, end: datetime, event_types: Optional[Sequence[str]]) -> int:
        if event_types is not None and not event_types:
            return 0
        stmt = select(func.count()).select_from(ConversionEvent).where(
            ConversionEvent.created_at >= start,
            ConversionEvent.created_at < end,
        )
        if event_types is not None:
            stmt = stmt.where(ConversionEvent.event_type.in_(list(event_types)))
        excluded = excluded_accounts_clause(ConversionEvent.user_email, self.excluded_accounts)
        if excluded is not None:
            stmt = stmt.where(excluded)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one() or 0)
