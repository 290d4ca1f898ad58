"""RetryAttempt model: append-then-seal log of recovery charges."""

from enum import Enum

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class RetryAttemptStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RetryAttempt(Base):
    __tablename__ = "dunning_retry_attempts"
    __table_args__ = (
        UniqueConstraint("dunning_case_id", "attempt_number", name="uq_retry_attempt_case_number"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    dunning_case_id = Column(
        UUIDType,
        ForeignKey("dunning_cases.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    attempt_number = Column(Integer, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(
        String(20), nullable=False, default=RetryAttemptStatus.PENDING.value, index=True
    )
    failure_reason = Column(Text, nullable=True)
    failure_code = Column(String(100), nullable=True)
    payment_intent_id = Column(String(255), nullable=True)
    attempted_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
