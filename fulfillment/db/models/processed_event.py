"""ProcessedEvent model for idempotency tracking across consumers."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, String, UniqueConstraint

from fulfillment.db.base import Base
from fulfillment.db.models._types import JSONType


class ProcessedEvent(Base):
    """Tracks (correlation_id, event_type) pairs already handled to prevent duplicate effects."""

    __tablename__ = "processed_events"
    __table_args__ = (UniqueConstraint("correlation_id", "event_type", name="unique_correlation_event"),)

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    correlation_id = Column(String(255), nullable=False, index=True)
    payload = Column(JSONType, nullable=False, default=dict)
    source = Column(String(100), nullable=False)  # consuming stage
    version = Column(String(20), nullable=False, default="1.0.0")
    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
