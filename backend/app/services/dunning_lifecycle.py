"""Dunning case lifecycle: the only writer of case state.

States::

    active -> retrying -> grace_period -> suspended -> cancelled
    any open state -> recovered

``recovered`` and ``cancelled`` are terminal. Every transition is a
compare-and-swap on (id, status, version); a writer that loses the race
re-reads the case and treats its own operation as a no-op.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ConflictError, DependencyError, NotFoundError, ValidationError
from app.models.account_action import AccountAction, AccountActionType
from app.models.dunning_case import (
    RETRYABLE_STATUSES,
    TERMINAL_STATUSES,
    DunningCase,
    DunningCaseStatus,
)
from app.models.dunning_communication import (
    CommunicationStatus,
    CommunicationType,
    DeliveryMethod,
    DunningCommunication,
)
from app.models.retry_attempt import RetryAttempt, RetryAttemptStatus
from app.models.shared import ensure_utc, utc_now
from app.repositories.dunning_case_repository import DunningCaseRepository
from app.repositories.dunning_communication_repository import DunningCommunicationRepository
from app.repositories.organization_repository import OrganizationRepository
from app.repositories.retry_attempt_repository import RetryAttemptRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.schemas.dunning_case import DunningCaseCreate
from app.schemas.dunning_communication import DeliveryStatusUpdate
from app.services.account_access import AccountAccessProvider, AccountActionService
from app.services.dunning_config_registry import DunningConfigRegistry
from app.services.dunning_messages import render_message
from app.services.notification_service import NotificationService
from app.services.notifier import NotifierBase, get_notifier
from app.services.payment_gateway import (
    ChargeResult,
    ChargeStatus,
    PaymentGatewayBase,
    get_payment_gateway,
)

logger = logging.getLogger(__name__)

DEFAULT_PLAN_NAME = "default"
TIMEOUT_FAILURE_CODE = "timeout"
SUPERSEDED_FAILURE_CODE = "superseded"


@dataclass
class RetryOutcome:
    processed: bool
    new_state: DunningCaseStatus


class DunningLifecycleService:
    """Drives dunning cases through their lifecycle.

    Collaborators are injectable; by default the gateway comes from
    ``PAYMENT_GATEWAY``, the notifier from ``NOTIFIER_URL`` and account
    access flips the organization's access status in the database.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGatewayBase | None = None,
        notifier: NotifierBase | None = None,
        account_access: AccountAccessProvider | None = None,
    ):
        self.db = db
        self.cases = DunningCaseRepository(db)
        self.attempts = RetryAttemptRepository(db)
        self.communications = DunningCommunicationRepository(db)
        self.organizations = OrganizationRepository(db)
        self.subscriptions = SubscriptionRepository(db)
        self.registry = DunningConfigRegistry(db)
        self.account_actions = AccountActionService(db, provider=account_access)
        self.notifications = NotificationService(db)
        self.notifier = notifier or get_notifier()
        self._gateway = gateway

    @property
    def gateway(self) -> PaymentGatewayBase:
        if self._gateway is None:
            self._gateway = get_payment_gateway()
        return self._gateway

    # --- Helpers ---

    def _get_case(self, case_id: UUID, organization_id: UUID | None = None) -> DunningCase:
        dunning_case = self.cases.get_fresh(case_id)
        if dunning_case is None or (
            organization_id is not None and dunning_case.organization_id != organization_id
        ):
            raise NotFoundError(f"Dunning case {case_id} not found")
        return dunning_case

    def _transition(
        self,
        dunning_case: DunningCase,
        values: dict[str, object],
        also_add: tuple[object, ...] = (),
    ) -> None:
        """CAS the case from its current (status, version). Raises ConflictError on a lost race."""
        expected_status = str(dunning_case.status)
        expected_version = int(dunning_case.version)
        if not self.cases.transition(
            dunning_case.id,  # type: ignore[arg-type]
            expected_status,
            expected_version,
            values,
            also_add=also_add,
        ):
            raise ConflictError(
                f"Dunning case {dunning_case.id} moved on from "
                f"{expected_status} (version {expected_version})"
            )

    def _current_state(self, case_id: UUID) -> DunningCaseStatus:
        return DunningCaseStatus(self._get_case(case_id).status)

    def _next_retry_at(self, dunning_case: DunningCase, attempts_made: int) -> datetime:
        intervals = list(dunning_case.retry_intervals)
        offset = intervals[min(attempts_made, len(intervals) - 1)]
        failed_at = ensure_utc(dunning_case.payment_failed_at)  # type: ignore[arg-type]
        assert failed_at is not None
        return failed_at + timedelta(days=int(offset))

    # --- create_case ---

    def create_case(
        self,
        data: DunningCaseCreate,
        organization_id: UUID | None = None,
        plan_name: str | None = None,
        now: datetime | None = None,
    ) -> tuple[DunningCase, bool]:
        """Open a case for a failed payment.

        Returns ``(case, created)``. If a case is already open for the
        (subscription, invoice) pair it is returned unchanged.
        """
        now = now or utc_now()
        existing = self.cases.get_open_for_invoice(data.subscription_id, data.invoice_id)
        if existing is not None:
            logger.info(
                "Dunning case %s already open for invoice %s", existing.id, data.invoice_id
            )
            return existing, False

        subscription = self.subscriptions.get_by_external_id(data.subscription_id)
        org_id = data.organization_id or organization_id
        if subscription is not None:
            if org_id is not None and subscription.organization_id != org_id:
                raise ValidationError(
                    f"Subscription {data.subscription_id} belongs to another organization"
                )
            org_id = subscription.organization_id  # type: ignore[assignment]
        if org_id is None:
            raise ValidationError("organization_id is required for an unknown subscription")
        if self.organizations.get_by_id(org_id) is None:
            raise ValidationError(f"Organization {org_id} not found")

        resolved_plan = plan_name or (
            str(subscription.plan_name) if subscription is not None else DEFAULT_PLAN_NAME
        )
        policy = self.registry.get_policy(resolved_plan)
        failed_at = ensure_utc(data.failed_at) or now

        dunning_case = self.cases.create(
            organization_id=org_id,
            subscription_id=data.subscription_id,
            invoice_id=data.invoice_id,
            payment_intent_id=data.payment_intent_id,
            payment_amount=data.payment_amount,
            currency=data.currency.upper(),
            status=DunningCaseStatus.ACTIVE.value,
            current_retry_attempt=0,
            version=0,
            failure_reason=data.failure_reason,
            failure_code=data.failure_code,
            payment_failed_at=failed_at,
            grace_period_ends_at=failed_at + timedelta(days=policy.grace_period_days),
            next_retry_at=failed_at + timedelta(days=policy.retry_intervals[0]),
            **policy.snapshot(),
        )
        if dunning_case is None:
            winner = self.cases.get_open_for_invoice(data.subscription_id, data.invoice_id)
            if winner is None:
                raise ConflictError(
                    f"Could not open a dunning case for invoice {data.invoice_id}"
                )
            logger.debug("Lost create race for invoice %s to case %s", data.invoice_id, winner.id)
            return winner, False

        logger.info(
            "Opened dunning case %s for invoice %s (%s %s, plan %s)",
            dunning_case.id,
            data.invoice_id,
            data.payment_amount,
            dunning_case.currency,
            resolved_plan,
        )
        return dunning_case, True

    # --- process_retry ---

    def process_retry(self, case_id: UUID, now: datetime | None = None) -> RetryOutcome:
        """Run the next scheduled charge attempt for a case, if one is due."""
        now = now or utc_now()
        dunning_case = self._get_case(case_id)
        state = DunningCaseStatus(dunning_case.status)

        if state.value not in RETRYABLE_STATUSES:
            return RetryOutcome(processed=False, new_state=state)
        next_retry_at = ensure_utc(dunning_case.next_retry_at)  # type: ignore[arg-type]
        if next_retry_at is None or now < next_retry_at:
            return RetryOutcome(processed=False, new_state=state)
        if int(dunning_case.current_retry_attempt) >= int(dunning_case.max_retry_attempts):
            return RetryOutcome(processed=False, new_state=state)
        if self.attempts.has_pending(dunning_case.id):  # type: ignore[arg-type]
            return RetryOutcome(processed=False, new_state=state)

        attempt_number = int(dunning_case.current_retry_attempt) + 1
        attempt = self.attempts.build_pending(
            dunning_case_id=dunning_case.id,  # type: ignore[arg-type]
            attempt_number=attempt_number,
            amount=dunning_case.payment_amount,  # type: ignore[arg-type]
            currency=str(dunning_case.currency),
            attempted_at=now,
        )
        attempt_id: UUID = attempt.id  # type: ignore[assignment]
        try:
            self._transition(
                dunning_case,
                {
                    "status": DunningCaseStatus.RETRYING.value,
                    "current_retry_attempt": attempt_number,
                    "next_retry_at": None,
                },
                also_add=(attempt,),
            )
        except ConflictError as exc:
            logger.debug("process_retry skipped: %s", exc.message)
            return RetryOutcome(processed=False, new_state=self._current_state(case_id))

        logger.info("Retry attempt %s for dunning case %s", attempt_number, case_id)
        try:
            result = self.gateway.charge(
                subscription_id=str(dunning_case.subscription_id),
                invoice_id=str(dunning_case.invoice_id),
                amount=dunning_case.payment_amount,  # type: ignore[arg-type]
                currency=str(dunning_case.currency),
                idempotency_key=f"dunning-{case_id}-{attempt_number}",
            )
        except DependencyError as exc:
            logger.warning(
                "Gateway unavailable for attempt %s on case %s, left pending: %s",
                attempt_number,
                case_id,
                exc.message,
            )
            return RetryOutcome(processed=True, new_state=DunningCaseStatus.RETRYING)

        new_state = self.apply_charge_result(case_id, attempt_id, result, now)
        return RetryOutcome(processed=True, new_state=new_state)

    def apply_charge_result(
        self,
        case_id: UUID,
        attempt_id: UUID,
        result: ChargeResult,
        now: datetime | None = None,
    ) -> DunningCaseStatus:
        """Seal an attempt with the gateway outcome and advance the case."""
        now = now or utc_now()
        if result.status == ChargeStatus.PENDING:
            if result.payment_intent_id:
                self.attempts.set_payment_intent(attempt_id, result.payment_intent_id)
            return self._current_state(case_id)

        dunning_case = self._get_case(case_id)
        if result.status == ChargeStatus.SUCCEEDED:
            return self._apply_success(dunning_case, attempt_id, result, now)
        return self._apply_failure(dunning_case, attempt_id, result, now)

    def _apply_success(
        self,
        dunning_case: DunningCase,
        attempt_id: UUID,
        result: ChargeResult,
        now: datetime,
    ) -> DunningCaseStatus:
        state = DunningCaseStatus(dunning_case.status)
        if state.value in TERMINAL_STATUSES:
            # Never re-open: just record what the gateway reported.
            self.attempts.seal(
                attempt_id,
                status=RetryAttemptStatus.SUCCEEDED,
                completed_at=now,
                payment_intent_id=result.payment_intent_id,
            )
            return state
        if not self.attempts.seal(
            attempt_id,
            status=RetryAttemptStatus.SUCCEEDED,
            completed_at=now,
            payment_intent_id=result.payment_intent_id,
            commit=False,
        ):
            self.db.rollback()
            return state
        if self._mark_recovered(dunning_case, result.payment_intent_id, now):
            return DunningCaseStatus.RECOVERED
        # Lost the race; the seal was rolled back with the case update.
        self.attempts.seal(
            attempt_id,
            status=RetryAttemptStatus.SUCCEEDED,
            completed_at=now,
            payment_intent_id=result.payment_intent_id,
        )
        return self._current_state(dunning_case.id)  # type: ignore[arg-type]

    def _apply_failure(
        self,
        dunning_case: DunningCase,
        attempt_id: UUID,
        result: ChargeResult,
        now: datetime,
    ) -> DunningCaseStatus:
        seal_kwargs = {
            "status": RetryAttemptStatus.FAILED,
            "completed_at": now,
            "failure_reason": result.failure_reason,
            "failure_code": result.failure_code,
            "payment_intent_id": result.payment_intent_id,
        }
        state = DunningCaseStatus(dunning_case.status)
        if state != DunningCaseStatus.RETRYING:
            self.attempts.seal(attempt_id, **seal_kwargs)  # type: ignore[arg-type]
            return state

        attempts_made = int(dunning_case.current_retry_attempt)
        grace_ends_at = ensure_utc(dunning_case.grace_period_ends_at)  # type: ignore[arg-type]
        assert grace_ends_at is not None
        failure_values = {
            "failure_reason": result.failure_reason,
            "failure_code": result.failure_code,
        }

        if attempts_made < int(dunning_case.max_retry_attempts):
            next_retry_at = self._next_retry_at(dunning_case, attempts_made)
            target = DunningCaseStatus.RETRYING
            values = {**failure_values, "next_retry_at": next_retry_at}
            seal_kwargs["next_retry_at"] = next_retry_at
            communication = CommunicationType.RETRY_REMINDER
        elif now < grace_ends_at:
            target = DunningCaseStatus.GRACE_PERIOD
            values = {**failure_values, "status": target.value, "next_retry_at": None}
            communication = CommunicationType.GRACE_PERIOD_WARNING
        else:
            target = DunningCaseStatus.SUSPENDED
            values = {
                **failure_values,
                "status": target.value,
                "next_retry_at": None,
                "suspended_at": now,
            }
            communication = CommunicationType.SUSPENSION_NOTICE

        if not self.attempts.seal(attempt_id, commit=False, **seal_kwargs):  # type: ignore[arg-type]
            self.db.rollback()
            return state
        try:
            self._transition(dunning_case, values)
        except ConflictError as exc:
            logger.debug("Failed attempt not applied to case: %s", exc.message)
            self.attempts.seal(attempt_id, **seal_kwargs)  # type: ignore[arg-type]
            return self._current_state(dunning_case.id)  # type: ignore[arg-type]

        logger.info(
            "Attempt %s failed for dunning case %s (%s), now %s",
            attempts_made,
            dunning_case.id,
            result.failure_code,
            target.value,
        )
        self.queue_notification(dunning_case.id, communication, now=now)  # type: ignore[arg-type]
        if target == DunningCaseStatus.SUSPENDED:
            self.account_actions.request(
                dunning_case.organization_id,  # type: ignore[arg-type]
                dunning_case.id,  # type: ignore[arg-type]
                AccountActionType.SUSPEND,
                now,
            )
        return target

    def expire_pending_attempt(
        self,
        attempt: RetryAttempt,
        now: datetime | None = None,
    ) -> DunningCaseStatus:
        """Resolve a pending attempt that never got a gateway outcome.

        Polls the gateway first; if the outcome is still unknown the attempt
        is sealed as a timeout failure and the case follows the failure path.
        """
        now = now or utc_now()
        case_id: UUID = attempt.dunning_case_id  # type: ignore[assignment]
        dunning_case = self._get_case(case_id)
        try:
            result = self.gateway.get_charge_status(
                invoice_id=str(dunning_case.invoice_id),
                idempotency_key=f"dunning-{case_id}-{attempt.attempt_number}",
            )
        except DependencyError as exc:
            logger.warning("Could not poll gateway for attempt %s: %s", attempt.id, exc.message)
            result = ChargeResult(ChargeStatus.PENDING)

        if result.status == ChargeStatus.PENDING:
            result = ChargeResult(
                ChargeStatus.FAILED,
                payment_intent_id=result.payment_intent_id,
                failure_reason="No outcome received from the payment gateway",
                failure_code=TIMEOUT_FAILURE_CODE,
            )
        return self.apply_charge_result(case_id, attempt.id, result, now)  # type: ignore[arg-type]

    # --- Suspension, cancellation, recovery ---

    def process_suspension(self, case_id: UUID, now: datetime | None = None) -> bool:
        """grace_period -> suspended once the grace period has ended."""
        now = now or utc_now()
        dunning_case = self._get_case(case_id)
        if dunning_case.status != DunningCaseStatus.GRACE_PERIOD.value:
            return False
        grace_ends_at = ensure_utc(dunning_case.grace_period_ends_at)  # type: ignore[arg-type]
        assert grace_ends_at is not None
        if now < grace_ends_at:
            return False

        try:
            self._transition(
                dunning_case,
                {"status": DunningCaseStatus.SUSPENDED.value, "suspended_at": now},
            )
        except ConflictError as exc:
            logger.debug("process_suspension skipped: %s", exc.message)
            return False

        logger.info("Dunning case %s suspended after grace period", case_id)
        self.queue_notification(case_id, CommunicationType.SUSPENSION_NOTICE, now=now)
        self.account_actions.request(
            dunning_case.organization_id,  # type: ignore[arg-type]
            case_id,
            AccountActionType.SUSPEND,
            now,
        )
        return True

    def process_cancellation(self, case_id: UUID, now: datetime | None = None) -> bool:
        """suspended -> cancelled once the auto-cancel window has passed."""
        now = now or utc_now()
        dunning_case = self._get_case(case_id)
        if dunning_case.status != DunningCaseStatus.SUSPENDED.value:
            return False
        suspended_at = ensure_utc(dunning_case.suspended_at)  # type: ignore[arg-type]
        if suspended_at is None:
            return False
        if now < suspended_at + timedelta(days=int(dunning_case.auto_cancel_days)):
            return False

        try:
            self._transition(
                dunning_case,
                {"status": DunningCaseStatus.CANCELLED.value, "cancelled_at": now},
            )
        except ConflictError as exc:
            logger.debug("process_cancellation skipped: %s", exc.message)
            return False

        logger.info("Dunning case %s cancelled", case_id)
        self.queue_notification(case_id, CommunicationType.CANCELLATION_NOTICE, now=now)
        return True

    def recover_case(
        self,
        case_id: UUID,
        payment_intent_id: str | None = None,
        organization_id: UUID | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Mark a case recovered from any open state.

        Returns False if the case is already terminal or another writer got
        there first.
        """
        now = now or utc_now()
        dunning_case = self._get_case(case_id, organization_id)
        if dunning_case.status in TERMINAL_STATUSES:
            return False

        for attempt in self.attempts.get_pending_for_case(case_id):
            matched = bool(payment_intent_id) and attempt.payment_intent_id == payment_intent_id
            self.attempts.seal(
                attempt.id,  # type: ignore[arg-type]
                status=RetryAttemptStatus.SUCCEEDED if matched else RetryAttemptStatus.FAILED,
                completed_at=now,
                failure_reason=None if matched else "Payment recovered outside this attempt",
                failure_code=None if matched else SUPERSEDED_FAILURE_CODE,
                commit=False,
            )
        return self._mark_recovered(dunning_case, payment_intent_id, now)

    def _mark_recovered(
        self,
        dunning_case: DunningCase,
        payment_intent_id: str | None,
        now: datetime,
    ) -> bool:
        was_suspended = dunning_case.suspended_at is not None
        values: dict[str, object] = {
            "status": DunningCaseStatus.RECOVERED.value,
            "recovered_at": now,
            "next_retry_at": None,
        }
        if payment_intent_id:
            values["payment_intent_id"] = payment_intent_id
        try:
            self._transition(dunning_case, values)
        except ConflictError as exc:
            logger.debug("Recovery not applied: %s", exc.message)
            return False

        logger.info("Dunning case %s recovered", dunning_case.id)
        self.queue_notification(
            dunning_case.id,  # type: ignore[arg-type]
            CommunicationType.RECOVERY_CONFIRMATION,
            now=now,
        )
        if was_suspended and not self.cases.has_other_suspended(
            dunning_case.organization_id,  # type: ignore[arg-type]
            dunning_case.id,  # type: ignore[arg-type]
        ):
            self.account_actions.request(
                dunning_case.organization_id,  # type: ignore[arg-type]
                dunning_case.id,  # type: ignore[arg-type]
                AccountActionType.RESTORE,
                now,
            )
        return True

    # --- Account access ---

    def suspend_account(
        self,
        organization_id: UUID,
        case_id: UUID,
        now: datetime | None = None,
    ) -> AccountAction:
        self._get_case(case_id, organization_id)
        return self.account_actions.request(
            organization_id, case_id, AccountActionType.SUSPEND, now
        )

    def restore_account(
        self,
        organization_id: UUID,
        case_id: UUID,
        now: datetime | None = None,
    ) -> AccountAction:
        self._get_case(case_id, organization_id)
        return self.account_actions.request(
            organization_id, case_id, AccountActionType.RESTORE, now
        )

    # --- Notifications ---

    def queue_notification(
        self,
        case_id: UUID,
        communication_type: CommunicationType,
        organization_id: UUID | None = None,
        now: datetime | None = None,
    ) -> UUID | None:
        """Create and dispatch one communication per enabled channel.

        Returns the first communication id, or None when no channel applies
        (both disabled, or the organization has no matching contact).
        """
        now = now or utc_now()
        dunning_case = self._get_case(case_id, organization_id)
        org = self.organizations.get_by_id(dunning_case.organization_id)  # type: ignore[arg-type]

        channels: list[tuple[DeliveryMethod, str | None, str | None]] = []
        if dunning_case.send_email_notifications and org is not None and org.owner_email:
            channels.append((DeliveryMethod.EMAIL, str(org.owner_email), None))
        if dunning_case.send_sms_notifications and org is not None and org.owner_phone:
            channels.append((DeliveryMethod.SMS, None, str(org.owner_phone)))

        first_id: UUID | None = None
        for method, email, phone in channels:
            subject, body = render_message(dunning_case, communication_type, method)
            communication = self.communications.create(
                organization_id=dunning_case.organization_id,  # type: ignore[arg-type]
                dunning_case_id=case_id,
                communication_type=communication_type.value,
                delivery_method=method.value,
                subject=subject,
                message_body=body,
                recipient_email=email,
                recipient_phone=phone,
                max_retries=settings.COMMUNICATION_MAX_RETRIES,
            )
            self.dispatch_communication(communication, now)
            if first_id is None:
                first_id = communication.id  # type: ignore[assignment]

        if first_id is None:
            logger.info(
                "No notification channel for %s on dunning case %s",
                communication_type.value,
                case_id,
            )
        return first_id

    def dispatch_communication(
        self,
        communication: DunningCommunication,
        now: datetime | None = None,
    ) -> bool:
        """Hand a communication to the notifier. Failures are kept for the retry sweep."""
        now = now or utc_now()
        communication_id: UUID = communication.id  # type: ignore[assignment]
        try:
            receipt = self.notifier.send(communication)
        except DependencyError as exc:
            logger.warning("Notifier failed for communication %s: %s", communication_id, exc)
            self.communications.mark_failed(communication_id, exc.message)
            if int(communication.retries) >= int(communication.max_retries):
                self.notifications.notify_communication_exhausted(
                    organization_id=communication.organization_id,  # type: ignore[arg-type]
                    communication_type=str(communication.communication_type),
                    delivery_method=str(communication.delivery_method),
                    dunning_case_id=communication.dunning_case_id,  # type: ignore[arg-type]
                    error=exc.message,
                )
            return False

        if not receipt.accepted:
            logger.debug("Communication %s left pending: notifier did not send it", communication_id)
            return False
        if self.communications.mark_sent(communication_id, now, receipt.provider_message_id):
            self._count_sent(communication)
        return True

    def _count_sent(self, communication: DunningCommunication) -> None:
        column = (
            "emails_sent"
            if communication.delivery_method == DeliveryMethod.EMAIL.value
            else "sms_sent"
        )
        self.cases.increment_counter(communication.dunning_case_id, column)  # type: ignore[arg-type]

    def apply_delivery_status(
        self,
        communication_id: UUID,
        update: DeliveryStatusUpdate,
        now: datetime | None = None,
    ) -> tuple[DunningCommunication, bool]:
        """Apply a notifier delivery callback. Duplicate or stale callbacks are no-ops."""
        occurred_at = ensure_utc(update.occurred_at) or now or utc_now()
        communication = self.communications.get_by_id(communication_id)
        if communication is None:
            raise NotFoundError(f"Communication {communication_id} not found")

        first_send = communication.sent_at is None
        applied = self.communications.advance_status(
            communication,
            update.status,
            occurred_at,
            provider_message_id=update.provider_message_id,
            failure_reason=update.failure_reason,
        )
        if applied and first_send and update.status not in (
            CommunicationStatus.PENDING,
            CommunicationStatus.FAILED,
        ):
            self._count_sent(communication)
        refreshed = self.communications.get_by_id(communication_id)
        assert refreshed is not None
        return refreshed, applied
