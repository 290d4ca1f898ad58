"""Communication model: outbound dunning notifications and their delivery status."""

from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, func

from app.core.database import Base
from app.models.shared import DEFAULT_ORGANIZATION_ID, UUIDType, generate_uuid


class CommunicationType(str, Enum):
    RETRY_REMINDER = "retry_reminder"
    GRACE_PERIOD_WARNING = "grace_period_warning"
    SUSPENSION_NOTICE = "suspension_notice"
    RECOVERY_CONFIRMATION = "recovery_confirmation"
    CANCELLATION_NOTICE = "cancellation_notice"


class DeliveryMethod(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class CommunicationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    OPENED = "opened"
    CLICKED = "clicked"


# Delivery progresses forward only; "failed" sits beside "sent" and is
# reachable from pending/sent.
STATUS_RANK = {
    CommunicationStatus.PENDING.value: 0,
    CommunicationStatus.FAILED.value: 1,
    CommunicationStatus.SENT.value: 1,
    CommunicationStatus.DELIVERED.value: 2,
    CommunicationStatus.OPENED.value: 3,
    CommunicationStatus.CLICKED.value: 4,
}


class DunningCommunication(Base):
    __tablename__ = "dunning_communications"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    organization_id = Column(
        UUIDType,
        ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        default=DEFAULT_ORGANIZATION_ID,
    )
    dunning_case_id = Column(
        UUIDType,
        ForeignKey("dunning_cases.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    communication_type = Column(String(50), nullable=False)
    delivery_method = Column(String(10), nullable=False)
    recipient_email = Column(String(255), nullable=True)
    recipient_phone = Column(String(50), nullable=True)
    subject = Column(String(255), nullable=True)
    message_body = Column(Text, nullable=False)
    status = Column(
        String(20), nullable=False, default=CommunicationStatus.PENDING.value, index=True
    )
    provider_message_id = Column(String(255), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    opened_at = Column(DateTime(timezone=True), nullable=True)
    clicked_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)
    retries = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    last_retried_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
