"""Repository for ProcessedWebhookEvent records."""

from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.processed_webhook_event import ProcessedWebhookEvent


class ProcessedEventRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, provider: str, event_id: str) -> ProcessedWebhookEvent | None:
        return (
            self.db.query(ProcessedWebhookEvent)
            .filter(
                ProcessedWebhookEvent.provider == provider,
                ProcessedWebhookEvent.event_id == event_id,
            )
            .first()
        )

    def record(
        self,
        *,
        provider: str,
        event_id: str,
        event_type: str,
        outcome: str | None = None,
    ) -> bool:
        """Record a handled event. Returns False if it was already recorded."""
        event = ProcessedWebhookEvent(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
        )
        self.db.add(event)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False
        return True

    def delete_expired(self, now: datetime, max_age_hours: int = 72) -> int:
        cutoff = now - timedelta(hours=max_age_hours)
        count = (
            self.db.query(ProcessedWebhookEvent)
            .filter(ProcessedWebhookEvent.created_at < cutoff)
            .delete()
        )
        self.db.commit()
        return int(count)
