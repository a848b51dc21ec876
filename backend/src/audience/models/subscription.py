"""Read model for the subscriptions table owned by the billing collaborator."""
import enum

from sqlalchemy import Column, DateTime, Numeric, String

from audience.database import Base


class SubscriptionStatus(enum.Enum):
    """Subscription lifecycle status as written by billing."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class Subscription(Base):
    """A user's subscription with its normalised monthly amount."""

    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    user_email = Column(String, nullable=True)
    status = Column(String, nullable=False, index=True)
    plan_type = Column(String, nullable=True)
    monthly_amount_due = Column(Numeric(precision=12, scale=2), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, user_id={self.user_id}, status={self.status})>"
