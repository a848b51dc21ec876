"""
Revenue figures read from the billing collaborator's subscriptions table.

Calculations:
- MRR: sum of ``monthly_amount_due`` over subscriptions paying at period end
- Active subscribers: distinct users paying at an instant
- Churn rate: (users cancelled in the period / users paying at period start) * 100
- Gross revenue: sum of ``monthly_amount_due`` over paying subscriptions created in the period
"""
from abc import ABC, abstractmethod
from datetime import datetime

import structlog
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from audience.adapters.event_store import excluded_accounts_clause
from audience.models.subscription import Subscription, SubscriptionStatus
from audience.schemas.metric_snapshot import PeriodFigures
from audience.services.segments import ExcludedAccounts

logger = structlog.get_logger(__name__)

PAYING_STATUSES = [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]


class BillingMetricsProvider(ABC):
    """Read interface to revenue figures."""

    @abstractmethod
    async def get_period_figures(self, start: datetime, end: datetime) -> PeriodFigures:
        """Figures for the half-open period ``[start, end)``."""


class SqlBillingMetricsProvider(BillingMetricsProvider):
    """BillingMetricsProvider over the ``subscriptions`` read model."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], excluded_accounts: ExcludedAccounts):
        self.session_factory = session_factory
        self.excluded_accounts = excluded_accounts

    def _paying_at(self, instant: datetime):
        """Subscriptions that existed and were paying at ``instant``."""
        clauses = [
            Subscription.created_at < instant,
            or_(
                and_(Subscription.status.in_(PAYING_STATUSES), Subscription.cancelled_at.is_(None)),
                and_(Subscription.cancelled_at.is_not(None), Subscription.cancelled_at >= instant),
            ),
        ]
        excluded = excluded_accounts_clause(Subscription.user_email, self.excluded_accounts)
        if excluded is not None:
            clauses.append(excluded)
        return and_(*clauses)

    async def get_period_figures(self, start: datetime, end: datetime) -> PeriodFigures:
        logger.info("calculating_period_figures", period_start=start.isoformat(), period_end=end.isoformat())

        stmt_mrr = select(
            func.coalesce(func.sum(Subscription.monthly_amount_due), 0),
            func.count(func.distinct(Subscription.user_id)),
        ).where(self._paying_at(end))

        stmt_start = select(func.count(func.distinct(Subscription.user_id))).where(self._paying_at(start))

        stmt_churned = select(func.count(func.distinct(Subscription.user_id))).where(
            Subscription.cancelled_at >= start,
            Subscription.cancelled_at < end,
        )
        stmt_gross = select(func.coalesce(func.sum(Subscription.monthly_amount_due), 0)).where(
            Subscription.created_at >= start,
            Subscription.created_at < end,
            Subscription.status.in_(PAYING_STATUSES),
            Subscription.monthly_amount_due > 0,
        )

        excluded = excluded_accounts_clause(Subscription.user_email, self.excluded_accounts)
        if excluded is not None:
            stmt_churned = stmt_churned.where(excluded)
            stmt_gross = stmt_gross.where(excluded)

        async with self.session_factory() as session:
            mrr_row = (await session.execute(stmt_mrr)).one()
            active_at_start = (await session.execute(stmt_start)).scalar() or 0
            churned = (await session.execute(stmt_churned)).scalar() or 0
            gross = (await session.execute(stmt_gross)).scalar() or 0

        mrr, active_subscribers = mrr_row
        churn_rate = (churned / active_at_start) * 100 if active_at_start > 0 else 0.0

        figures = PeriodFigures(
            mrr=float(mrr or 0),
            active_subscribers=int(active_subscribers or 0),
            active_subscribers_start=int(active_at_start),
            churned=int(churned),
            churn_rate=churn_rate,
            gross_revenue=float(gross),
        )

        logger.info(
            "period_figures_calculated",
            mrr=figures.mrr,
            active_subscribers=figures.active_subscribers,
            churn_rate=figures.churn_rate,
        )
        return figures
