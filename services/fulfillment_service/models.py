"""Database models for the Fulfillment Service."""
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text, Uuid

from shared.database import Base, utcnow


class WebhookEvent(Base):
    """One externally delivered payment gateway event, keyed by the gateway's event id."""

    __tablename__ = "webhook_events"

    id = Column(Uuid, primary_key=True, default=uuid4)
    external_event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)

    processed = Column(Boolean, nullable=False, default=False)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    # Set while a worker owns the event; cleared when its attempt is recorded
    in_progress = Column(Boolean, nullable=False, default=False)
    claimed_at = Column(DateTime(timezone=True), nullable=True)

    processed_at = Column(DateTime(timezone=True), nullable=True)
    order_id = Column(Uuid, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_webhook_events_processed_created", "processed", "created_at"),
    )
