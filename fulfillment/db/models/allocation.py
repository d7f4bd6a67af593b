"""Allocation model — a tutor assigned to a student for one course.

Status lifecycle: approved -> active -> ended. At most one approved/active
allocation may exist per (student, course); the partial unique index below is
what makes concurrent coordinators converge on a single row.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Uuid, text

from fulfillment.db.base import Base
from fulfillment.db.models._types import JSONType

OPEN_ALLOCATION_STATUSES = ("approved", "active")


class Allocation(Base):
    __tablename__ = "allocations"
    __table_args__ = (
        Index(
            "unique_active_allocation",
            "student_id",
            "course_id",
            unique=True,
            postgresql_where=text("status IN ('approved', 'active')"),
            sqlite_where=text("status IN ('approved', 'active')"),
        ),
        Index("ix_allocations_status", "status"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(String(255), nullable=False, index=True)
    course_id = Column(String(255), nullable=False)
    tutor_id = Column(String(255), nullable=False, index=True)
    purchase_id = Column(Uuid, ForeignKey("purchases.id"), nullable=True)
    correlation_id = Column(String(255), nullable=False)

    status = Column(String(20), nullable=False, default="approved")  # approved, active, ended
    # sessionCount, startDate, timeSlot, daysOfWeek
    metadata_ = Column("metadata", JSONType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
