"""Purchase model — one active purchase per (student, course)."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Uuid, text

from fulfillment.db.base import Base
from fulfillment.db.models._types import JSONType


class Purchase(Base):
    __tablename__ = "purchases"
    __table_args__ = (
        Index(
            "unique_active_purchase",
            "student_id",
            "course_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(String(255), nullable=False, index=True)
    course_id = Column(String(255), nullable=False)
    payment_id = Column(String(255), nullable=True, index=True)
    correlation_id = Column(String(255), nullable=False, index=True)

    tier = Column(Integer, nullable=False)  # number of sessions purchased
    metadata_ = Column("metadata", JSONType, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
