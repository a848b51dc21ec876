"""Anonymous visitor to account links, written when a visitor authenticates."""
from sqlalchemy import Column, DateTime, String

from audience.database import Base


class IdentityLink(Base):
    """
    Maps an anonymous id to the account it later signed in as.

    At most one user per anonymous id; the writer overwrites on re-link.
    The table is optional: deployments without it run in degraded
    resolution mode.
    """

    __tablename__ = "analytics_identity_links"

    anonymous_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    first_seen_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<IdentityLink(anonymous_id={self.anonymous_id}, user_id={self.user_id})>"
