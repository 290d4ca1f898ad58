"""Repository for the dunning Communication log."""

from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.dunning_communication import (
    STATUS_RANK,
    CommunicationStatus,
    DunningCommunication,
)

_TIMESTAMP_FOR_STATUS = {
    CommunicationStatus.SENT.value: "sent_at",
    CommunicationStatus.DELIVERED.value: "delivered_at",
    CommunicationStatus.OPENED.value: "opened_at",
    CommunicationStatus.CLICKED.value: "clicked_at",
}


class DunningCommunicationRepository:
    """Repository for DunningCommunication model."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        *,
        organization_id: UUID,
        dunning_case_id: UUID,
        communication_type: str,
        delivery_method: str,
        message_body: str,
        subject: str | None = None,
        recipient_email: str | None = None,
        recipient_phone: str | None = None,
        max_retries: int = 3,
    ) -> DunningCommunication:
        communication = DunningCommunication(
            organization_id=organization_id,
            dunning_case_id=dunning_case_id,
            communication_type=communication_type,
            delivery_method=delivery_method,
            subject=subject,
            message_body=message_body,
            recipient_email=recipient_email,
            recipient_phone=recipient_phone,
            status=CommunicationStatus.PENDING.value,
            max_retries=max_retries,
        )
        self.db.add(communication)
        self.db.commit()
        self.db.refresh(communication)
        return communication

    def get_by_id(
        self,
        communication_id: UUID,
        organization_id: UUID | None = None,
    ) -> DunningCommunication | None:
        query = self.db.query(DunningCommunication).filter(
            DunningCommunication.id == communication_id
        )
        if organization_id is not None:
            query = query.filter(DunningCommunication.organization_id == organization_id)
        return query.first()

    def get_by_case(self, dunning_case_id: UUID) -> list[DunningCommunication]:
        return (
            self.db.query(DunningCommunication)
            .filter(DunningCommunication.dunning_case_id == dunning_case_id)
            .order_by(DunningCommunication.created_at.asc())
            .all()
        )

    def get_all(
        self,
        organization_id: UUID | None = None,
        communication_type: str | None = None,
        status: str | None = None,
        skip: int = 0,
        limit: int = 50,
    ) -> list[DunningCommunication]:
        query = self.db.query(DunningCommunication)
        if organization_id is not None:
            query = query.filter(DunningCommunication.organization_id == organization_id)
        if communication_type is not None:
            query = query.filter(DunningCommunication.communication_type == communication_type)
        if status is not None:
            query = query.filter(DunningCommunication.status == status)
        return (
            query.order_by(DunningCommunication.created_at.desc()).offset(skip).limit(limit).all()
        )

    def get_failed_for_retry(self) -> list[DunningCommunication]:
        """Failed dispatches with retries left."""
        return (
            self.db.query(DunningCommunication)
            .filter(
                DunningCommunication.status == CommunicationStatus.FAILED.value,
                DunningCommunication.retries < DunningCommunication.max_retries,
                DunningCommunication.sent_at.is_(None),
            )
            .order_by(DunningCommunication.created_at.asc())
            .all()
        )

    def increment_retry(self, communication_id: UUID, now: datetime) -> None:
        self.db.query(DunningCommunication).filter(
            DunningCommunication.id == communication_id
        ).update(
            {
                "retries": DunningCommunication.retries + 1,
                "last_retried_at": now,
            },
            synchronize_session=False,
        )
        self.db.commit()
        self.db.expire_all()

    def abandon(self, communication_id: UUID, reason: str) -> None:
        """Stop retrying a failed communication; it stays failed."""
        self.db.query(DunningCommunication).filter(
            DunningCommunication.id == communication_id,
            DunningCommunication.status == CommunicationStatus.FAILED.value,
        ).update(
            {
                "retries": DunningCommunication.max_retries,
                "failure_reason": reason[:1000],
            },
            synchronize_session=False,
        )
        self.db.commit()
        self.db.expire_all()

    def mark_sent(
        self,
        communication_id: UUID,
        sent_at: datetime,
        provider_message_id: str | None = None,
    ) -> bool:
        """Record the first hand-off to the notifier.

        Conditional on ``sent_at IS NULL`` so a communication is counted as
        sent at most once. Returns whether this call made the transition.
        """
        values: dict[str, object] = {
            "status": CommunicationStatus.SENT.value,
            "sent_at": sent_at,
            "failure_reason": None,
        }
        if provider_message_id is not None:
            values["provider_message_id"] = provider_message_id
        updated = (
            self.db.query(DunningCommunication)
            .filter(
                DunningCommunication.id == communication_id,
                DunningCommunication.sent_at.is_(None),
                DunningCommunication.status.in_(
                    [CommunicationStatus.PENDING.value, CommunicationStatus.FAILED.value]
                ),
            )
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        return bool(updated)

    def mark_failed(self, communication_id: UUID, reason: str) -> bool:
        updated = (
            self.db.query(DunningCommunication)
            .filter(
                DunningCommunication.id == communication_id,
                DunningCommunication.status.in_(
                    [CommunicationStatus.PENDING.value, CommunicationStatus.FAILED.value]
                ),
            )
            .update(
                {
                    "status": CommunicationStatus.FAILED.value,
                    "failure_reason": reason[:1000],
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        self.db.expire_all()
        return bool(updated)

    def advance_status(
        self,
        communication: DunningCommunication,
        status: CommunicationStatus,
        occurred_at: datetime,
        provider_message_id: str | None = None,
        failure_reason: str | None = None,
    ) -> bool:
        """Move a communication forward in the delivery order.

        Callbacks that would move it backwards or sideways are ignored, which
        makes redelivered callbacks no-ops. The update is conditional on the
        status read here so two concurrent callbacks cannot both apply.
        """
        current = str(communication.status)
        if status == CommunicationStatus.FAILED:
            if current not in (CommunicationStatus.PENDING.value, CommunicationStatus.SENT.value):
                return False
        elif STATUS_RANK[status.value] <= STATUS_RANK[current]:
            return False

        values: dict[str, object] = {"status": status.value}
        column = _TIMESTAMP_FOR_STATUS.get(status.value)
        if column is not None:
            values[column] = occurred_at
        # A callback that skips "sent" still marks the hand-off time.
        if status.value in ("delivered", "opened", "clicked") and communication.sent_at is None:
            values["sent_at"] = occurred_at
        if provider_message_id is not None:
            values["provider_message_id"] = provider_message_id
        if failure_reason is not None:
            values["failure_reason"] = failure_reason[:1000]

        updated = (
            self.db.query(DunningCommunication)
            .filter(
                DunningCommunication.id == communication.id,
                DunningCommunication.status == current,
            )
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        return bool(updated)
