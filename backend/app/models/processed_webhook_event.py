"""ProcessedWebhookEvent model: dedup window for gateway webhook redelivery."""

from sqlalchemy import Column, DateTime, String, UniqueConstraint, func

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class ProcessedWebhookEvent(Base):
    """Gateway event ids that have been fully handled."""

    __tablename__ = "processed_webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_processed_webhook_event"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    provider = Column(String(50), nullable=False)
    event_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    outcome = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
