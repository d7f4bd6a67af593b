"""OutboxEvent model — events persisted before they are published to the log."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from fulfillment.db.base import Base
from fulfillment.db.models._types import JSONType


class OutboxEvent(Base):
    __tablename__ = "event_outbox"
    __table_args__ = (Index("ix_event_outbox_unpublished", "published_at", "created_at"),)

    event_id = Column(String(255), primary_key=True)
    correlation_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    topic = Column(String(255), nullable=False)
    envelope = Column(JSONType, nullable=False)

    publish_attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    published_at = Column(DateTime(timezone=True), nullable=True)
