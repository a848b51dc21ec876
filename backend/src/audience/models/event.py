"""
Read models for tables owned by the ingestion and auth collaborators.

The engine never writes to these tables; they are mapped so the event store
can build typed queries against them.
"""
from sqlalchemy import Column, DateTime, Index, String

from audience.database import Base


class ConversionEvent(Base):
    """A raw product/analytics event."""

    __tablename__ = "conversion_events"

    id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)  # "anon:<id>" for anonymous rows
    anonymous_id = Column(String, nullable=True, index=True)
    user_email = Column(String, nullable=True)
    page_path = Column(String, nullable=True)
    plan_type = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_conversion_events_created_at_type", "created_at", "event_type"),
    )

    def __repr__(self) -> str:
        return f"<ConversionEvent(type={self.event_type}, user_id={self.user_id}, at={self.created_at})>"


class User(Base):
    """A signed-up account; ``created_at`` is the signup instant."""

    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, created_at={self.created_at})>"
