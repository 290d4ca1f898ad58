"""DunningCase schemas."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.dunning_case import DunningCaseStatus
from app.models.dunning_communication import CommunicationType


class DunningCaseCreate(BaseModel):
    """A payment-failure event that opens (or re-finds) a dunning case."""

    organization_id: UUID | None = None
    subscription_id: str = Field(..., min_length=1, max_length=255)
    invoice_id: str = Field(..., min_length=1, max_length=255)
    payment_intent_id: str | None = Field(default=None, max_length=255)
    payment_amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    failure_reason: str | None = None
    failure_code: str | None = Field(default=None, max_length=100)
    failed_at: datetime | None = None


class DunningCaseCreateResponse(BaseModel):
    case_id: UUID
    created: bool
    status: DunningCaseStatus


class DunningCaseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    subscription_id: str
    invoice_id: str
    payment_intent_id: str | None = None
    plan_name: str
    payment_amount: Decimal
    currency: str
    status: DunningCaseStatus
    current_retry_attempt: int
    max_retry_attempts: int
    failure_reason: str | None = None
    failure_code: str | None = None
    payment_failed_at: datetime
    grace_period_ends_at: datetime
    next_retry_at: datetime | None = None
    suspended_at: datetime | None = None
    recovered_at: datetime | None = None
    cancelled_at: datetime | None = None
    emails_sent: int
    sms_sent: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DunningCaseDetailResponse(DunningCaseResponse):
    """Case detail including the policy snapshot and owner contact."""

    grace_period_days: int
    retry_intervals: list[int]
    suspension_delay_days: int
    auto_cancel_days: int
    send_email_notifications: bool
    send_sms_notifications: bool
    organization_name: str | None = None
    owner_email: str | None = None
    owner_phone: str | None = None


class ProcessRetryResponse(BaseModel):
    processed: bool
    new_state: DunningCaseStatus


class RecoverCaseRequest(BaseModel):
    payment_intent_id: str | None = Field(default=None, max_length=255)


class RecoverCaseResponse(BaseModel):
    recovered: bool


class QueueNotificationRequest(BaseModel):
    communication_type: CommunicationType


class QueueNotificationResponse(BaseModel):
    notification_id: UUID | None = None


class AccountActionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    dunning_case_id: UUID
    action: str
    status: str
    retries: int
    last_error: str | None = None
    completed_at: datetime | None = None
