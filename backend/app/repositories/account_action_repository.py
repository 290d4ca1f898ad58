"""Repository for queued account suspend/restore actions."""

from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.account_action import AccountAction, AccountActionStatus

OPEN_ACTION_STATUSES = (AccountActionStatus.PENDING.value, AccountActionStatus.FAILED.value)


class AccountActionRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        *,
        organization_id: UUID,
        dunning_case_id: UUID,
        action: str,
        max_retries: int,
    ) -> AccountAction:
        account_action = AccountAction(
            organization_id=organization_id,
            dunning_case_id=dunning_case_id,
            action=action,
            status=AccountActionStatus.PENDING.value,
            max_retries=max_retries,
        )
        self.db.add(account_action)
        self.db.commit()
        self.db.refresh(account_action)
        return account_action

    def get_by_id(self, action_id: UUID) -> AccountAction | None:
        return self.db.query(AccountAction).filter(AccountAction.id == action_id).first()

    def get_by_case(self, dunning_case_id: UUID) -> list[AccountAction]:
        return (
            self.db.query(AccountAction)
            .filter(AccountAction.dunning_case_id == dunning_case_id)
            .order_by(AccountAction.created_at.asc())
            .all()
        )

    def get_open_for_case(self, dunning_case_id: UUID, action: str) -> AccountAction | None:
        """An unfinished action of this type (pending, or failed with retries left)."""
        return (
            self.db.query(AccountAction)
            .filter(
                AccountAction.dunning_case_id == dunning_case_id,
                AccountAction.action == action,
                AccountAction.status.in_(OPEN_ACTION_STATUSES),
                AccountAction.retries < AccountAction.max_retries,
            )
            .first()
        )

    def get_latest_for_case(self, dunning_case_id: UUID, action: str) -> AccountAction | None:
        return (
            self.db.query(AccountAction)
            .filter(
                AccountAction.dunning_case_id == dunning_case_id,
                AccountAction.action == action,
            )
            .order_by(AccountAction.created_at.desc(), AccountAction.retries.desc())
            .first()
        )

    def get_failed_for_retry(self) -> list[AccountAction]:
        return (
            self.db.query(AccountAction)
            .filter(
                AccountAction.status == AccountActionStatus.FAILED.value,
                AccountAction.retries < AccountAction.max_retries,
            )
            .order_by(AccountAction.created_at.asc())
            .all()
        )

    def mark_succeeded(self, account_action: AccountAction, now: datetime) -> AccountAction:
        account_action.status = AccountActionStatus.SUCCEEDED.value  # type: ignore[assignment]
        account_action.completed_at = now  # type: ignore[assignment]
        account_action.last_error = None  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(account_action)
        return account_action

    def mark_failed(self, account_action: AccountAction, error: str) -> AccountAction:
        account_action.status = AccountActionStatus.FAILED.value  # type: ignore[assignment]
        account_action.last_error = error[:1000]  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(account_action)
        return account_action

    def increment_retry(self, account_action: AccountAction, now: datetime) -> AccountAction:
        account_action.retries = int(account_action.retries) + 1  # type: ignore[assignment]
        account_action.last_retried_at = now  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(account_action)
        return account_action

    def mark_superseded(self, account_action: AccountAction, now: datetime) -> AccountAction:
        account_action.status = AccountActionStatus.SUPERSEDED.value  # type: ignore[assignment]
        account_action.completed_at = now  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(account_action)
        return account_action

    def supersede_open_for_case(
        self, dunning_case_id: UUID, action: str, now: datetime
    ) -> list[AccountAction]:
        """Close every unfinished action of this type for the case."""
        open_actions = (
            self.db.query(AccountAction)
            .filter(
                AccountAction.dunning_case_id == dunning_case_id,
                AccountAction.action == action,
                AccountAction.status.in_(OPEN_ACTION_STATUSES),
            )
            .all()
        )
        for account_action in open_actions:
            account_action.status = AccountActionStatus.SUPERSEDED.value  # type: ignore[assignment]
            account_action.completed_at = now  # type: ignore[assignment]
        if open_actions:
            self.db.commit()
        return open_actions
