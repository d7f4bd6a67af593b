"""Payment model — written by the payment collaborator, read at confirmation."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Numeric, String

from fulfillment.db.base import Base
from fulfillment.db.models._types import JSONType


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(255), primary_key=True)
    student_id = Column(String(255), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="INR")
    status = Column(String(20), nullable=False, default="pending")  # pending, succeeded, failed
    provider_reference = Column(String(255), nullable=False, unique=True)
    metadata_ = Column("metadata", JSONType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
