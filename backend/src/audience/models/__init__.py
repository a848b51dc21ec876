"""SQLAlchemy ORM models for the metrics engine."""
# Import all models here to ensure they are registered with Alembic

from audience.models.base import Base
from audience.models.event import ConversionEvent, User
from audience.models.identity_link import IdentityLink
from audience.models.daily_unique_users import DailyUniqueUsers
from audience.models.metric_snapshot import MetricSnapshot, PeriodType
from audience.models.subscription import Subscription, SubscriptionStatus

__all__ = [
    "Base",
    "ConversionEvent",
    "User",
    "IdentityLink",
    "DailyUniqueUsers",
    "MetricSnapshot",
    "PeriodType",
    "Subscription",
    "SubscriptionStatus",
]
