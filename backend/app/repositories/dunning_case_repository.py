"""DunningCase repository: the single source of truth for case state.

Every state change goes through ``transition``, a compare-and-swap keyed on
the case id, its expected status and its version. Writers that lose the
race get ``False`` back and must re-read instead of overwriting.
"""

from collections.abc import Sequence
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import DependencyError
from app.models.dunning_case import (
    OPEN_STATUSES,
    RETRYABLE_STATUSES,
    DunningCase,
    DunningCaseStatus,
)
from app.models.shared import ensure_utc


class DunningCaseRepository:
    """Repository for DunningCase model."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        case_id: UUID,
        organization_id: UUID | None = None,
    ) -> DunningCase | None:
        """Get a case by ID, optionally scoped to an organization."""
        query = self.db.query(DunningCase).filter(DunningCase.id == case_id)
        if organization_id is not None:
            query = query.filter(DunningCase.organization_id == organization_id)
        return query.first()

    def get_fresh(self, case_id: UUID) -> DunningCase | None:
        """Re-read a case, bypassing anything cached in the session."""
        return (
            self.db.query(DunningCase)
            .filter(DunningCase.id == case_id)
            .populate_existing()
            .first()
        )

    def get_open_for_invoice(self, subscription_id: str, invoice_id: str) -> DunningCase | None:
        return (
            self.db.query(DunningCase)
            .filter(
                DunningCase.subscription_id == subscription_id,
                DunningCase.invoice_id == invoice_id,
                DunningCase.status.in_(OPEN_STATUSES),
            )
            .first()
        )

    def get_all(
        self,
        organization_id: UUID | None = None,
        status: str | None = None,
        skip: int = 0,
        limit: int = 20,
    ) -> list[DunningCase]:
        """List cases newest first. ``organization_id=None`` lists every organization."""
        query = self.db.query(DunningCase)
        if organization_id is not None:
            query = query.filter(DunningCase.organization_id == organization_id)
        if status is not None:
            query = query.filter(DunningCase.status == status)
        return query.order_by(DunningCase.created_at.desc()).offset(skip).limit(limit).all()

    def create(self, **values: Any) -> DunningCase | None:
        """Insert a new case.

        Returns ``None`` when the open-case uniqueness constraint rejects the
        insert, i.e. another writer already opened a case for this invoice.
        """
        dunning_case = DunningCase(**values)
        self.db.add(dunning_case)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return None
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise DependencyError(f"Failed to persist dunning case: {exc}") from exc
        self.db.refresh(dunning_case)
        return dunning_case

    def transition(
        self,
        case_id: UUID,
        expected_status: str,
        expected_version: int,
        values: dict[str, Any],
        also_add: Sequence[Any] = (),
    ) -> bool:
        """Conditionally update a case.

        Applies ``values`` only if the row still has ``expected_status`` and
        ``expected_version``, and bumps the version. Anything already pending
        in the session (e.g. an uncommitted attempt seal) plus ``also_add``
        commits in the same transaction, or is rolled back with it.

        Returns whether the update was applied. A failed write rolls back and
        raises ``DependencyError`` so the case keeps its prior state.
        """
        values = {**values, "version": expected_version + 1}
        try:
            updated = (
                self.db.query(DunningCase)
                .filter(
                    DunningCase.id == case_id,
                    DunningCase.status == expected_status,
                    DunningCase.version == expected_version,
                )
                .update(values, synchronize_session=False)
            )
            if not updated:
                self.db.rollback()
                return False
            for obj in also_add:
                self.db.add(obj)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise DependencyError(f"Failed to update dunning case {case_id}: {exc}") from exc
        self.db.expire_all()
        return True

    def increment_counter(self, case_id: UUID, column: str) -> None:
        """Atomically bump a side-effect counter (``emails_sent`` / ``sms_sent``)."""
        field = getattr(DunningCase, column)
        try:
            self.db.query(DunningCase).filter(DunningCase.id == case_id).update(
                {column: field + 1}, synchronize_session=False
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise DependencyError(f"Failed to update counter on case {case_id}: {exc}") from exc
        self.db.expire_all()

    # --- Sweep queries ---

    def get_due_for_retry(self, now: datetime, limit: int = 500) -> list[DunningCase]:
        return (
            self.db.query(DunningCase)
            .filter(
                DunningCase.status.in_(RETRYABLE_STATUSES),
                DunningCase.next_retry_at.isnot(None),
                DunningCase.next_retry_at <= now,
            )
            .order_by(DunningCase.next_retry_at.asc())
            .limit(limit)
            .all()
        )

    def get_due_for_suspension(self, now: datetime, limit: int = 500) -> list[DunningCase]:
        return (
            self.db.query(DunningCase)
            .filter(
                DunningCase.status == DunningCaseStatus.GRACE_PERIOD.value,
                DunningCase.grace_period_ends_at <= now,
            )
            .order_by(DunningCase.grace_period_ends_at.asc())
            .limit(limit)
            .all()
        )

    def get_due_for_cancellation(self, now: datetime, limit: int = 500) -> list[DunningCase]:
        """Suspended cases past their auto-cancel deadline.

        ``auto_cancel_days`` is a per-case snapshot, so SQL only narrows the
        candidates using the shortest window among suspended cases and the
        exact deadline is checked in Python.
        """
        suspended = self.db.query(DunningCase).filter(
            DunningCase.status == DunningCaseStatus.SUSPENDED.value,
            DunningCase.suspended_at.isnot(None),
        )
        shortest = (
            self.db.query(func.min(DunningCase.auto_cancel_days))
            .filter(DunningCase.status == DunningCaseStatus.SUSPENDED.value)
            .scalar()
        )
        if shortest is None:
            return []
        candidates = (
            suspended.filter(DunningCase.suspended_at <= now - timedelta(days=int(shortest)))
            .order_by(DunningCase.suspended_at.asc())
            .all()
        )
        due: list[DunningCase] = []
        for dunning_case in candidates:
            suspended_at = ensure_utc(dunning_case.suspended_at)  # type: ignore[arg-type]
            assert suspended_at is not None
            if now >= suspended_at + timedelta(days=int(dunning_case.auto_cancel_days)):
                due.append(dunning_case)
                if len(due) >= limit:
                    break
        return due

    def get_by_status(self, status: str) -> list[DunningCase]:
        return self.db.query(DunningCase).filter(DunningCase.status == status).all()

    def has_other_suspended(self, organization_id: UUID, case_id: UUID) -> bool:
        return (
            self.db.query(DunningCase.id)
            .filter(
                DunningCase.organization_id == organization_id,
                DunningCase.status == DunningCaseStatus.SUSPENDED.value,
                DunningCase.id != case_id,
            )
            .first()
            is not None
        )

    def get_recovered_after_suspension(self) -> list[DunningCase]:
        return (
            self.db.query(DunningCase)
            .filter(
                DunningCase.status == DunningCaseStatus.RECOVERED.value,
                DunningCase.suspended_at.isnot(None),
            )
            .all()
        )

    # --- Dashboard aggregates ---

    def count_by_status(self, organization_id: UUID | None = None) -> dict[str, int]:
        query = self.db.query(DunningCase.status, func.count(DunningCase.id))
        if organization_id is not None:
            query = query.filter(DunningCase.organization_id == organization_id)
        rows = query.group_by(DunningCase.status).all()
        return {str(status): int(count) for status, count in rows}

    def sum_outstanding(self, organization_id: UUID | None = None) -> Decimal:
        query = self.db.query(func.coalesce(func.sum(DunningCase.payment_amount), 0)).filter(
            DunningCase.status.in_(OPEN_STATUSES)
        )
        if organization_id is not None:
            query = query.filter(DunningCase.organization_id == organization_id)
        return Decimal(str(query.scalar() or 0))

    def recovery_durations_days(self, organization_id: UUID | None = None) -> list[float]:
        query = self.db.query(DunningCase.payment_failed_at, DunningCase.recovered_at).filter(
            DunningCase.status == DunningCaseStatus.RECOVERED.value,
            DunningCase.recovered_at.isnot(None),
        )
        if organization_id is not None:
            query = query.filter(DunningCase.organization_id == organization_id)
        durations: list[float] = []
        for failed_at, recovered_at in query.all():
            start = ensure_utc(failed_at)
            end = ensure_utc(recovered_at)
            assert start is not None and end is not None
            durations.append((end - start).total_seconds() / 86400)
        return durations
