"""DunningConfig schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models.dunning_config import (
    DEFAULT_AUTO_CANCEL_DAYS,
    DEFAULT_GRACE_PERIOD_DAYS,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    DEFAULT_RETRY_INTERVALS,
    DEFAULT_SUSPENSION_DELAY_DAYS,
)


class DunningConfigUpdate(BaseModel):
    """Administrator payload for creating or replacing a plan's dunning policy.

    Unknown fields are rejected rather than passed through.
    """

    model_config = ConfigDict(extra="forbid")

    grace_period_days: int = Field(default=DEFAULT_GRACE_PERIOD_DAYS, ge=0, le=365)
    max_retry_attempts: int = Field(default=DEFAULT_MAX_RETRY_ATTEMPTS, ge=1, le=20)
    retry_intervals: list[int] = Field(
        default_factory=lambda: list(DEFAULT_RETRY_INTERVALS), min_length=1, max_length=20
    )
    suspension_delay_days: int = Field(default=DEFAULT_SUSPENSION_DELAY_DAYS, ge=0, le=365)
    auto_cancel_days: int = Field(default=DEFAULT_AUTO_CANCEL_DAYS, ge=1, le=3650)
    send_email_notifications: bool = True
    send_sms_notifications: bool = False

    @field_validator("retry_intervals")
    @classmethod
    def _intervals_strictly_increasing(cls, value: list[int]) -> list[int]:
        if any(day <= 0 for day in value):
            raise ValueError("retry_intervals must be positive day offsets")
        if any(later <= earlier for earlier, later in zip(value, value[1:], strict=False)):
            raise ValueError("retry_intervals must be strictly increasing")
        return value

    @model_validator(mode="after")
    def _schedule_covers_attempts(self) -> "DunningConfigUpdate":
        if len(self.retry_intervals) < self.max_retry_attempts:
            raise ValueError(
                "retry_intervals must provide an offset for every retry attempt "
                f"({len(self.retry_intervals)} < {self.max_retry_attempts})"
            )
        return self


class DunningConfigResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID | None = None
    plan_name: str
    grace_period_days: int
    max_retry_attempts: int
    retry_intervals: list[int]
    suspension_delay_days: int
    auto_cancel_days: int
    send_email_notifications: bool
    send_sms_notifications: bool
    is_default: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
