"""Dunning communication schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.dunning_communication import CommunicationStatus


class CommunicationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    dunning_case_id: UUID
    communication_type: str
    delivery_method: str
    recipient_email: str | None = None
    recipient_phone: str | None = None
    subject: str | None = None
    message_body: str
    status: CommunicationStatus
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    opened_at: datetime | None = None
    clicked_at: datetime | None = None
    failure_reason: str | None = None
    created_at: datetime | None = None


class DeliveryStatusUpdate(BaseModel):
    """Delivery callback posted by the notifier."""

    status: CommunicationStatus
    occurred_at: datetime | None = None
    provider_message_id: str | None = Field(default=None, max_length=255)
    failure_reason: str | None = None


class DeliveryStatusResponse(BaseModel):
    communication_id: UUID
    status: CommunicationStatus
    applied: bool
