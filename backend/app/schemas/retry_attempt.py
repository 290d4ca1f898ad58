"""RetryAttempt schemas."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.models.retry_attempt import RetryAttemptStatus


class RetryAttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    dunning_case_id: UUID
    attempt_number: int
    amount: Decimal
    currency: str
    status: RetryAttemptStatus
    failure_reason: str | None = None
    failure_code: str | None = None
    payment_intent_id: str | None = None
    attempted_at: datetime
    completed_at: datetime | None = None
    next_retry_at: datetime | None = None
