"""Account-access side effects: suspending and restoring an organization.

The case state is the authoritative record of intent. Side effects are
queued as AccountAction rows, attempted once immediately, then retried with
exponential backoff (2^retries minutes) by the reconciliation sweep until
they succeed or exhaust their retries, at which point operators are alerted.
"""

import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import DependencyError
from app.models.account_action import AccountAction, AccountActionType
from app.models.dunning_case import DunningCaseStatus
from app.models.organization import AccessStatus
from app.models.shared import ensure_utc
from app.repositories.account_action_repository import (
    OPEN_ACTION_STATUSES,
    AccountActionRepository,
)
from app.repositories.dunning_case_repository import DunningCaseRepository
from app.repositories.organization_repository import OrganizationRepository
from app.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


class AccountAccessProvider(ABC):
    """Idempotent suspend/restore of an organization's access."""

    @abstractmethod
    def suspend(self, organization_id: UUID) -> None:
        pass  # pragma: no cover

    @abstractmethod
    def restore(self, organization_id: UUID) -> None:
        pass  # pragma: no cover

    @abstractmethod
    def is_suspended(self, organization_id: UUID) -> bool:
        pass  # pragma: no cover


class DatabaseAccountAccessProvider(AccountAccessProvider):
    """Default provider: flips ``organizations.access_status``."""

    def __init__(self, db: Session):
        self.repo = OrganizationRepository(db)

    def _set(self, organization_id: UUID, status: AccessStatus) -> None:
        if not self.repo.set_access_status(organization_id, status.value, datetime.now(UTC)):
            raise DependencyError(f"Organization {organization_id} not found")

    def suspend(self, organization_id: UUID) -> None:
        self._set(organization_id, AccessStatus.SUSPENDED)

    def restore(self, organization_id: UUID) -> None:
        self._set(organization_id, AccessStatus.ACTIVE)

    def is_suspended(self, organization_id: UUID) -> bool:
        org = self.repo.get_by_id(organization_id)
        return bool(org and org.access_status == AccessStatus.SUSPENDED.value)


class AccountActionService:
    """Runs suspend/restore side effects with persisted retry state."""

    def __init__(self, db: Session, provider: AccountAccessProvider | None = None):
        self.db = db
        self.provider = provider or DatabaseAccountAccessProvider(db)
        self.repo = AccountActionRepository(db)
        self.cases = DunningCaseRepository(db)
        self.notifications = NotificationService(db)

    def request(
        self,
        organization_id: UUID,
        dunning_case_id: UUID,
        action: AccountActionType,
        now: datetime | None = None,
    ) -> AccountAction:
        """Queue a side effect and attempt it immediately.

        If an unfinished action of the same type already exists for the case
        it is reused; the retry sweep owns its backoff. Unfinished actions of
        the opposite type for the case are superseded.
        """
        now = now or datetime.now(UTC)
        opposite = (
            AccountActionType.RESTORE
            if action == AccountActionType.SUSPEND
            else AccountActionType.SUSPEND
        )
        for stale in self.repo.supersede_open_for_case(dunning_case_id, opposite.value, now):
            logger.info(
                "Account %s for case %s superseded by %s",
                stale.action,
                dunning_case_id,
                action.value,
            )
        existing = self.repo.get_open_for_case(dunning_case_id, action.value)
        if existing is not None:
            return existing
        account_action = self.repo.create(
            organization_id=organization_id,
            dunning_case_id=dunning_case_id,
            action=action.value,
            max_retries=settings.ACCOUNT_ACTION_MAX_RETRIES,
        )
        self.execute(account_action, now)
        return account_action

    def execute(self, account_action: AccountAction, now: datetime | None = None) -> bool:
        """Run one attempt of an action. Returns whether it succeeded."""
        now = now or datetime.now(UTC)
        org_id: UUID = account_action.organization_id  # type: ignore[assignment]
        try:
            if account_action.action == AccountActionType.SUSPEND.value:
                self.provider.suspend(org_id)
            else:
                self.provider.restore(org_id)
        except Exception as exc:
            logger.warning(
                "Account %s failed for organization %s (case %s): %s",
                account_action.action,
                org_id,
                account_action.dunning_case_id,
                exc,
            )
            self.repo.mark_failed(account_action, str(exc))
            if int(account_action.retries) >= int(account_action.max_retries):
                self._alert_exhausted(account_action)
            return False

        self.repo.mark_succeeded(account_action, now)
        logger.info(
            "Account %s applied for organization %s (case %s)",
            account_action.action,
            org_id,
            account_action.dunning_case_id,
        )
        return True

    def still_intended(self, account_action: AccountAction) -> bool:
        """Whether the case still wants this action applied.

        A suspend needs its case suspended. A restore needs its case out of
        suspension (and not cancelled) with no other suspended case for the
        organization.
        """
        case_id: UUID = account_action.dunning_case_id  # type: ignore[assignment]
        dunning_case = self.cases.get_fresh(case_id)
        if dunning_case is None:
            return False
        if account_action.action == AccountActionType.SUSPEND.value:
            return dunning_case.status == DunningCaseStatus.SUSPENDED.value
        if dunning_case.status in (
            DunningCaseStatus.SUSPENDED.value,
            DunningCaseStatus.CANCELLED.value,
        ):
            return False
        return not self.cases.has_other_suspended(
            dunning_case.organization_id,  # type: ignore[arg-type]
            dunning_case.id,  # type: ignore[arg-type]
        )

    def retry_failed_actions(self, now: datetime | None = None) -> int:
        """Retry failed actions with exponential backoff.

        Backoff: 2^retries minutes since the last retry. Actions whose case
        has moved on are superseded instead of retried.

        Returns:
            Number of actions retried.
        """
        now = now or datetime.now(UTC)
        retried = 0
        for account_action in self.repo.get_failed_for_retry():
            last_retried_at = ensure_utc(account_action.last_retried_at)  # type: ignore[arg-type]
            if last_retried_at is not None:
                backoff = timedelta(minutes=2 ** int(account_action.retries))
                if now < last_retried_at + backoff:
                    continue
            if not self.still_intended(account_action):
                self.repo.mark_superseded(account_action, now)
                logger.info(
                    "Account %s for case %s no longer matches case state; superseded",
                    account_action.action,
                    account_action.dunning_case_id,
                )
                continue
            self.repo.increment_retry(account_action, now)
            self.execute(account_action, now)
            retried += 1
        return retried

    def is_suspended(self, organization_id: UUID) -> bool:
        return self.provider.is_suspended(organization_id)

    def ensure_applied(
        self,
        organization_id: UUID,
        dunning_case_id: UUID,
        action: AccountActionType,
        now: datetime | None = None,
    ) -> bool:
        """Re-request an action whose effect is missing from the account.

        Skips cases whose latest action of this type is still being retried
        or has exhausted its retries (operators were alerted). Returns
        whether a new action was requested.
        """
        latest = self.repo.get_latest_for_case(dunning_case_id, action.value)
        if latest is not None and latest.status in OPEN_ACTION_STATUSES:
            return False
        self.request(organization_id, dunning_case_id, action, now)
        return True

    def _alert_exhausted(self, account_action: AccountAction) -> None:
        logger.error(
            "Account %s for organization %s exhausted %s retries",
            account_action.action,
            account_action.organization_id,
            account_action.max_retries,
        )
        self.notifications.notify_account_action_exhausted(
            organization_id=account_action.organization_id,  # type: ignore[arg-type]
            action=str(account_action.action),
            dunning_case_id=account_action.dunning_case_id,  # type: ignore[arg-type]
            error=account_action.last_error,  # type: ignore[arg-type]
        )
