"""TutoringSession model — one bookable slot of an allocation."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Column, Date, DateTime, ForeignKey, Index, String, Time, UniqueConstraint, Uuid

from fulfillment.db.base import Base


class TutoringSession(Base):
    __tablename__ = "sessions"
    __table_args__ = (
        UniqueConstraint("allocation_id", "scheduled_date", "scheduled_time", name="unique_session_slot"),
        Index("ix_sessions_allocation_status", "allocation_id", "status"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    allocation_id = Column(Uuid, ForeignKey("allocations.id"), nullable=False)
    student_id = Column(String(255), nullable=False, index=True)
    tutor_id = Column(String(255), nullable=False, index=True)

    scheduled_date = Column(Date, nullable=False)
    scheduled_time = Column(Time, nullable=False)
    status = Column(String(20), nullable=False, default="scheduled")  # scheduled, completed, cancelled

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
