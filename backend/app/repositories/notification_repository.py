from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from app.models.notification import Notification
from app.models.shared import generate_uuid


class NotificationRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        *,
        organization_id: UUID,
        category: str,
        title: str,
        message: str,
        severity: str = "warning",
        resource_type: str | None = None,
        resource_id: UUID | None = None,
    ) -> Notification:
        notification = Notification(
            id=generate_uuid(),
            organization_id=organization_id,
            category=category,
            severity=severity,
            title=title,
            message=message,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        self.db.add(notification)
        self.db.commit()
        self.db.refresh(notification)
        return notification

    def get_all(
        self,
        organization_id: UUID,
        *,
        category: str | None = None,
        severity: str | None = None,
        resource_id: UUID | None = None,
        unread_only: bool = False,
        skip: int = 0,
        limit: int = 50,
    ) -> list[Notification]:
        """Newest first."""
        query = self.db.query(Notification).filter(
            Notification.organization_id == organization_id
        )
        if category is not None:
            query = query.filter(Notification.category == category)
        if severity is not None:
            query = query.filter(Notification.severity == severity)
        if resource_id is not None:
            query = query.filter(Notification.resource_id == resource_id)
        if unread_only:
            query = query.filter(Notification.is_read.is_(False))
        return query.order_by(Notification.created_at.desc()).offset(skip).limit(limit).all()

    def mark_as_read(self, notification_id: UUID, organization_id: UUID) -> Notification | None:
        """None if the alert does not exist or belongs to another organization."""
        notification = (
            self.db.query(Notification)
            .filter(
                Notification.id == notification_id,
                Notification.organization_id == organization_id,
            )
            .first()
        )
        if notification is None:
            return None
        if not notification.is_read:
            notification.is_read = True  # type: ignore[assignment]
            self.db.commit()
            self.db.refresh(notification)
        return notification
