"""DunningCase model: one recovery effort per failed (subscription, invoice)."""

from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)

from app.core.database import Base
from app.models.shared import DEFAULT_ORGANIZATION_ID, UUIDType, generate_uuid


class DunningCaseStatus(str, Enum):
    ACTIVE = "active"
    RETRYING = "retrying"
    GRACE_PERIOD = "grace_period"
    SUSPENDED = "suspended"
    RECOVERED = "recovered"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {DunningCaseStatus.RECOVERED.value, DunningCaseStatus.CANCELLED.value}
)
OPEN_STATUSES = frozenset(s.value for s in DunningCaseStatus) - TERMINAL_STATUSES
RETRYABLE_STATUSES = frozenset({DunningCaseStatus.ACTIVE.value, DunningCaseStatus.RETRYING.value})

_OPEN_CASE_PREDICATE = "status NOT IN ('recovered', 'cancelled')"


class DunningCase(Base):
    """Durable record of a failed-payment recovery effort.

    Policy values are snapshotted from the plan's DunningConfig at creation
    time and never re-read, so later config edits do not affect open cases.
    """

    __tablename__ = "dunning_cases"
    __table_args__ = (
        Index(
            "uq_dunning_cases_open_invoice",
            "subscription_id",
            "invoice_id",
            unique=True,
            sqlite_where=text(_OPEN_CASE_PREDICATE),
            postgresql_where=text(_OPEN_CASE_PREDICATE),
        ),
        Index("ix_dunning_cases_status_next_retry_at", "status", "next_retry_at"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    organization_id = Column(
        UUIDType,
        ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        default=DEFAULT_ORGANIZATION_ID,
    )
    subscription_id = Column(String(255), nullable=False, index=True)
    invoice_id = Column(String(255), nullable=False, index=True)
    payment_intent_id = Column(String(255), nullable=True)

    payment_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    status = Column(
        String(20), nullable=False, default=DunningCaseStatus.ACTIVE.value, index=True
    )
    current_retry_attempt = Column(Integer, nullable=False, default=0)
    max_retry_attempts = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False, default=0)

    failure_reason = Column(Text, nullable=True)
    failure_code = Column(String(100), nullable=True)

    payment_failed_at = Column(DateTime(timezone=True), nullable=False)
    grace_period_ends_at = Column(DateTime(timezone=True), nullable=False)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    suspended_at = Column(DateTime(timezone=True), nullable=True)
    recovered_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    emails_sent = Column(Integer, nullable=False, default=0)
    sms_sent = Column(Integer, nullable=False, default=0)

    # Policy snapshot
    plan_name = Column(String(100), nullable=False)
    grace_period_days = Column(Integer, nullable=False)
    retry_intervals = Column(JSON, nullable=False)
    suspension_delay_days = Column(Integer, nullable=False)
    auto_cancel_days = Column(Integer, nullable=False)
    send_email_notifications = Column(Boolean, nullable=False, default=True)
    send_sms_notifications = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
