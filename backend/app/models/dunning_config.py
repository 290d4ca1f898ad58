"""DunningConfig model: per-billing-plan dunning policy."""

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, func

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid

DEFAULT_GRACE_PERIOD_DAYS = 3
DEFAULT_MAX_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_INTERVALS = (1, 3, 7)
DEFAULT_SUSPENSION_DELAY_DAYS = 7
DEFAULT_AUTO_CANCEL_DAYS = 30


class DunningConfig(Base):
    """Dunning policy keyed by plan name."""

    __tablename__ = "dunning_configs"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    plan_name = Column(String(100), nullable=False, unique=True, index=True)
    grace_period_days = Column(Integer, nullable=False, default=DEFAULT_GRACE_PERIOD_DAYS)
    max_retry_attempts = Column(Integer, nullable=False, default=DEFAULT_MAX_RETRY_ATTEMPTS)
    retry_intervals = Column(
        JSON, nullable=False, default=lambda: list(DEFAULT_RETRY_INTERVALS)
    )
    suspension_delay_days = Column(
        Integer, nullable=False, default=DEFAULT_SUSPENSION_DELAY_DAYS
    )
    auto_cancel_days = Column(Integer, nullable=False, default=DEFAULT_AUTO_CANCEL_DAYS)
    send_email_notifications = Column(Boolean, nullable=False, default=True)
    send_sms_notifications = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
