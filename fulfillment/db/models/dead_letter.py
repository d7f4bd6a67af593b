"""DeadLetter model — events a stage gave up on, awaiting manual replay."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint, Uuid

from fulfillment.db.base import Base
from fulfillment.db.models._types import JSONType


class DeadLetter(Base):
    __tablename__ = "dead_letters"
    __table_args__ = (UniqueConstraint("event_id", "consumer", name="unique_dead_letter"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id = Column(String(255), nullable=False)
    correlation_id = Column(String(255), nullable=True, index=True)
    event_type = Column(String(100), nullable=True, index=True)
    consumer = Column(String(100), nullable=False)

    original_event = Column(JSONType, nullable=False)
    error = Column(Text, nullable=False)
    error_type = Column(String(255), nullable=False)
    attempt_count = Column(Integer, nullable=False, default=1)

    # Log position the event was read from (None when not read from the log)
    topic = Column(String(255), nullable=True)
    log_partition = Column(Integer, nullable=True)
    log_offset = Column(Integer, nullable=True)

    failed_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    replayed_at = Column(DateTime(timezone=True), nullable=True)
