"""Operator alerts for dunning side effects that ran out of retries."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.notification import Notification
from app.repositories.notification_repository import NotificationRepository

logger = logging.getLogger(__name__)

CATEGORY_DUNNING = "dunning"
RESOURCE_DUNNING_CASE = "dunning_case"

SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"


class NotificationService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = NotificationRepository(db)

    def _case_alert(
        self,
        organization_id: UUID,
        dunning_case_id: UUID,
        title: str,
        message: str,
        severity: str,
    ) -> Notification:
        logger.warning("%s (case %s): %s", title, dunning_case_id, message)
        return self.repo.create(
            organization_id=organization_id,
            category=CATEGORY_DUNNING,
            severity=severity,
            title=title,
            message=message[:1000],
            resource_type=RESOURCE_DUNNING_CASE,
            resource_id=dunning_case_id,
        )

    def notify_account_action_exhausted(
        self,
        *,
        organization_id: UUID,
        action: str,
        dunning_case_id: UUID,
        error: str | None = None,
    ) -> Notification:
        """Alert operators that a suspend/restore could not be applied.

        Critical: the account's access no longer matches its dunning state
        until someone intervenes.
        """
        message = f"Account {action} for dunning case {dunning_case_id} failed after all retries."
        if error:
            message += f" Last error: {error}"
        return self._case_alert(
            organization_id,
            dunning_case_id,
            title=f"Account {action} failed",
            message=message,
            severity=SEVERITY_CRITICAL,
        )

    def notify_communication_exhausted(
        self,
        *,
        organization_id: UUID,
        communication_type: str,
        delivery_method: str,
        dunning_case_id: UUID,
        error: str | None = None,
    ) -> Notification:
        message = (
            f"Dunning {communication_type} via {delivery_method} for case "
            f"{dunning_case_id} could not be sent."
        )
        if error:
            message += f" Error: {error}"
        return self._case_alert(
            organization_id,
            dunning_case_id,
            title="Dunning notification failed",
            message=message,
            severity=SEVERITY_WARNING,
        )
