"""Scheduled sweeps that drive time-based dunning transitions.

Each item is processed on its own: an exception on one case is logged and
counted, and the sweep moves on to the next.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.account_action import AccountActionType
from app.models.dunning_case import TERMINAL_STATUSES, DunningCase, DunningCaseStatus
from app.models.dunning_communication import CommunicationType, DunningCommunication
from app.models.retry_attempt import RetryAttempt
from app.models.shared import ensure_utc, utc_now
from app.repositories.dunning_case_repository import DunningCaseRepository
from app.repositories.dunning_communication_repository import DunningCommunicationRepository
from app.repositories.processed_event_repository import ProcessedEventRepository
from app.repositories.retry_attempt_repository import RetryAttemptRepository
from app.services.dunning_lifecycle import DunningLifecycleService

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Still worth delivering after the case has closed.
CLOSING_COMMUNICATIONS = frozenset(
    {CommunicationType.RECOVERY_CONFIRMATION.value, CommunicationType.CANCELLATION_NOTICE.value}
)


@dataclass
class SweepResult:
    processed: int = 0
    skipped: int = 0
    failed: int = 0

    def __add__(self, other: "SweepResult") -> "SweepResult":
        return SweepResult(
            processed=self.processed + other.processed,
            skipped=self.skipped + other.skipped,
            failed=self.failed + other.failed,
        )


class DunningSweepService:
    def __init__(self, db: Session, lifecycle: DunningLifecycleService | None = None):
        self.db = db
        self.lifecycle = lifecycle or DunningLifecycleService(db)
        self.cases = DunningCaseRepository(db)
        self.attempts = RetryAttemptRepository(db)
        self.communications = DunningCommunicationRepository(db)
        self.processed_events = ProcessedEventRepository(db)

    def _run(
        self,
        name: str,
        items: Iterable[T],
        handle: Callable[[T], bool],
    ) -> SweepResult:
        result = SweepResult()
        for item in items:
            item_id = getattr(item, "id", item)
            try:
                if handle(item):
                    result.processed += 1
                else:
                    result.skipped += 1
            except Exception:
                logger.exception("%s failed for %s", name, item_id)
                self.db.rollback()
                result.failed += 1
        if result.processed or result.failed:
            logger.info(
                "%s: processed=%s skipped=%s failed=%s",
                name,
                result.processed,
                result.skipped,
                result.failed,
            )
        return result

    def process_due_retries(self, now: datetime | None = None) -> SweepResult:
        """Charge every active/retrying case whose next retry is due."""
        now = now or utc_now()
        case_ids = [c.id for c in self.cases.get_due_for_retry(now)]
        return self._run(
            "process_due_retries",
            case_ids,
            lambda case_id: self.lifecycle.process_retry(case_id, now=now).processed,
        )

    def process_due_suspensions(self, now: datetime | None = None) -> SweepResult:
        """Suspend cases past their grace period and cancel those past auto-cancel."""
        now = now or utc_now()
        suspend_ids = [c.id for c in self.cases.get_due_for_suspension(now)]
        cancel_ids = [c.id for c in self.cases.get_due_for_cancellation(now)]
        suspended = self._run(
            "process_due_suspensions",
            suspend_ids,
            lambda case_id: self.lifecycle.process_suspension(case_id, now=now),
        )
        cancelled = self._run(
            "process_due_cancellations",
            cancel_ids,
            lambda case_id: self.lifecycle.process_cancellation(case_id, now=now),
        )
        return suspended + cancelled

    def reconcile_account_access(self, now: datetime | None = None) -> SweepResult:
        """Make account access match case state, then retry failed actions."""
        now = now or utc_now()
        account_actions = self.lifecycle.account_actions

        def ensure_suspended(dunning_case: DunningCase) -> bool:
            if account_actions.is_suspended(dunning_case.organization_id):
                return False
            return account_actions.ensure_applied(
                dunning_case.organization_id, dunning_case.id, AccountActionType.SUSPEND, now
            )

        def ensure_restored(dunning_case: DunningCase) -> bool:
            if not account_actions.is_suspended(dunning_case.organization_id):
                return False
            return account_actions.ensure_applied(
                dunning_case.organization_id, dunning_case.id, AccountActionType.RESTORE, now
            )

        # An organization with another suspended case stays suspended.
        suspended_cases = self.cases.get_by_status(DunningCaseStatus.SUSPENDED.value)
        still_suspended_orgs = {c.organization_id for c in suspended_cases}
        recovered_cases = [
            c
            for c in self.cases.get_recovered_after_suspension()
            if c.organization_id not in still_suspended_orgs
        ]

        result = self._run("reconcile_suspended_accounts", suspended_cases, ensure_suspended)
        result += self._run("reconcile_restored_accounts", recovered_cases, ensure_restored)
        retried = account_actions.retry_failed_actions(now)
        return result + SweepResult(processed=retried)

    def reconcile_pending_attempts(self, now: datetime | None = None) -> SweepResult:
        """Poll or expire attempts that have been pending too long."""
        now = now or utc_now()
        cutoff = now - timedelta(minutes=settings.PENDING_ATTEMPT_TIMEOUT_MINUTES)
        stale = self.attempts.get_stale_pending(cutoff)

        def resolve(attempt: RetryAttempt) -> bool:
            self.lifecycle.expire_pending_attempt(attempt, now=now)
            return True

        return self._run("reconcile_pending_attempts", stale, resolve)

    def retry_failed_communications(self, now: datetime | None = None) -> SweepResult:
        """Re-dispatch failed communications. Backoff: 2^retries minutes.

        Reminders and notices for a case that has since been recovered or
        cancelled are abandoned instead of re-sent.
        """
        now = now or utc_now()

        def retry(communication: DunningCommunication) -> bool:
            if communication.communication_type not in CLOSING_COMMUNICATIONS:
                case_id: UUID = communication.dunning_case_id  # type: ignore[assignment]
                dunning_case = self.cases.get_by_id(case_id)
                if dunning_case is not None and dunning_case.status in TERMINAL_STATUSES:
                    self.communications.abandon(
                        communication.id,  # type: ignore[arg-type]
                        f"Dunning case {dunning_case.status} before delivery",
                    )
                    return False
            last_retried_at = ensure_utc(communication.last_retried_at)
            if last_retried_at is not None:
                backoff = timedelta(minutes=2 ** int(communication.retries))
                if now < last_retried_at + backoff:
                    return False
            self.communications.increment_retry(communication.id, now)
            return self.lifecycle.dispatch_communication(communication, now)

        return self._run(
            "retry_failed_communications",
            self.communications.get_failed_for_retry(),
            retry,
        )

    def purge_processed_events(self, now: datetime | None = None) -> SweepResult:
        now = now or utc_now()
        deleted = self.processed_events.delete_expired(
            now, settings.WEBHOOK_EVENT_RETENTION_HOURS
        )
        return SweepResult(processed=deleted)

    def run_all(self, now: datetime | None = None) -> dict[str, SweepResult]:
        now = now or utc_now()
        return {
            "pending_attempts": self.reconcile_pending_attempts(now),
            "retries": self.process_due_retries(now),
            "suspensions": self.process_due_suspensions(now),
            "account_access": self.reconcile_account_access(now),
            "communications": self.retry_failed_communications(now),
        }
