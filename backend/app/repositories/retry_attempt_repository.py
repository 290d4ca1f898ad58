"""Repository for the RetryAttempt log."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import DependencyError
from app.models.retry_attempt import RetryAttempt, RetryAttemptStatus
from app.models.shared import generate_uuid


class RetryAttemptRepository:
    """Append-then-seal access to retry attempts.

    Rows are inserted ``pending`` and sealed exactly once; sealing is a
    conditional update on ``completed_at IS NULL``.
    """

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def build_pending(
        *,
        dunning_case_id: UUID,
        attempt_number: int,
        amount: Decimal,
        currency: str,
        attempted_at: datetime,
    ) -> RetryAttempt:
        """A new pending attempt, not yet added to the session.

        The caller persists it together with the case update that claims
        the attempt number.
        """
        return RetryAttempt(
            id=generate_uuid(),
            dunning_case_id=dunning_case_id,
            attempt_number=attempt_number,
            amount=amount,
            currency=currency,
            status=RetryAttemptStatus.PENDING.value,
            attempted_at=attempted_at,
        )

    def get_by_id(self, attempt_id: UUID) -> RetryAttempt | None:
        return self.db.query(RetryAttempt).filter(RetryAttempt.id == attempt_id).first()

    def get_by_case(self, dunning_case_id: UUID) -> list[RetryAttempt]:
        return (
            self.db.query(RetryAttempt)
            .filter(RetryAttempt.dunning_case_id == dunning_case_id)
            .order_by(RetryAttempt.attempt_number.asc())
            .all()
        )

    def get_pending_for_case(self, dunning_case_id: UUID) -> list[RetryAttempt]:
        return (
            self.db.query(RetryAttempt)
            .filter(
                RetryAttempt.dunning_case_id == dunning_case_id,
                RetryAttempt.status == RetryAttemptStatus.PENDING.value,
            )
            .order_by(RetryAttempt.attempt_number.asc())
            .all()
        )

    def has_pending(self, dunning_case_id: UUID) -> bool:
        return bool(self.get_pending_for_case(dunning_case_id))

    def get_stale_pending(self, attempted_before: datetime, limit: int = 500) -> list[RetryAttempt]:
        """Pending attempts started before the cutoff, oldest first."""
        return (
            self.db.query(RetryAttempt)
            .filter(
                RetryAttempt.status == RetryAttemptStatus.PENDING.value,
                RetryAttempt.attempted_at <= attempted_before,
            )
            .order_by(RetryAttempt.attempted_at.asc())
            .limit(limit)
            .all()
        )

    def set_payment_intent(self, attempt_id: UUID, payment_intent_id: str) -> None:
        self.db.query(RetryAttempt).filter(
            RetryAttempt.id == attempt_id,
            RetryAttempt.completed_at.is_(None),
        ).update({"payment_intent_id": payment_intent_id}, synchronize_session=False)
        self.db.commit()

    def seal(
        self,
        attempt_id: UUID,
        *,
        status: RetryAttemptStatus,
        completed_at: datetime,
        failure_reason: str | None = None,
        failure_code: str | None = None,
        payment_intent_id: str | None = None,
        next_retry_at: datetime | None = None,
        commit: bool = True,
    ) -> bool:
        """Seal a pending attempt. Returns False if it was already sealed.

        With ``commit=False`` the update joins the session's transaction and
        is committed (or rolled back) by the caller's case transition.
        """
        values: dict[str, object] = {
            "status": status.value,
            "completed_at": completed_at,
            "failure_reason": failure_reason,
            "failure_code": failure_code,
            "next_retry_at": next_retry_at,
        }
        if payment_intent_id is not None:
            values["payment_intent_id"] = payment_intent_id
        try:
            updated = (
                self.db.query(RetryAttempt)
                .filter(
                    RetryAttempt.id == attempt_id,
                    RetryAttempt.completed_at.is_(None),
                )
                .update(values, synchronize_session=False)
            )
            if commit:
                self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise DependencyError(f"Failed to seal retry attempt {attempt_id}: {exc}") from exc
        if commit:
            self.db.expire_all()
        return bool(updated)
