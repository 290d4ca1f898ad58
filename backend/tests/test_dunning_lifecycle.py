"""Tests for DunningLifecycleService: case creation, retries, grace, suspension, recovery."""

import uuid
from unittest.mock import patch

import pytest

from app.core.errors import DependencyError, NotFoundError, ValidationError
from app.models.account_action import AccountAction, AccountActionType
from app.models.dunning_case import DunningCase, DunningCaseStatus
from app.models.dunning_communication import CommunicationType
from app.models.organization import AccessStatus, Organization
from app.models.retry_attempt import RetryAttemptStatus
from app.models.shared import ensure_utc
from app.models.subscription import Subscription
from app.repositories.dunning_case_repository import DunningCaseRepository
from app.repositories.retry_attempt_repository import RetryAttemptRepository
from app.schemas.dunning_config import DunningConfigUpdate
from app.services.dunning_config_registry import DunningConfigRegistry
from app.services.dunning_lifecycle import (
    SUPERSEDED_FAILURE_CODE,
    TIMEOUT_FAILURE_CODE,
    DunningLifecycleService,
)
from app.services.payment_gateway import ChargeResult, ChargeStatus
from tests.conftest import (
    DEFAULT_ORG_ID,
    T0,
    RecordingNotifier,
    days,
    declined,
    failure_event,
    succeeded,
)


@pytest.fixture
def basic_plan(db_session):
    """Plan "basic": grace 3 days, 3 attempts at days 1, 3 and 7."""
    return DunningConfigRegistry(db_session).upsert(
        "basic",
        DunningConfigUpdate(grace_period_days=3, max_retry_attempts=3, retry_intervals=[1, 3, 7]),
    )


@pytest.fixture
def open_case(lifecycle, basic_plan):
    dunning_case, created = lifecycle.create_case(
        failure_event(), organization_id=DEFAULT_ORG_ID, plan_name="basic", now=T0
    )
    assert created is True
    return dunning_case


def _reload(db_session, case_id) -> DunningCase:
    dunning_case = DunningCaseRepository(db_session).get_fresh(case_id)
    assert dunning_case is not None
    return dunning_case


def _attempts(db_session, case_id):
    return RetryAttemptRepository(db_session).get_by_case(case_id)


class TestCreateCase:
    def test_scenario_a_opens_active_case(self, db_session, open_case):
        dunning_case = _reload(db_session, open_case.id)
        assert dunning_case.status == DunningCaseStatus.ACTIVE.value
        assert dunning_case.organization_id == DEFAULT_ORG_ID
        assert dunning_case.current_retry_attempt == 0
        assert dunning_case.max_retry_attempts == 3
        assert dunning_case.plan_name == "basic"
        assert str(dunning_case.payment_amount) == "49.00"
        assert dunning_case.currency == "USD"
        assert ensure_utc(dunning_case.payment_failed_at) == T0
        assert ensure_utc(dunning_case.next_retry_at) == days(1)
        assert ensure_utc(dunning_case.grace_period_ends_at) == days(3)
        assert dunning_case.retry_intervals == [1, 3, 7]

    def test_create_is_idempotent_per_invoice(self, db_session, lifecycle, open_case):
        again, created = lifecycle.create_case(
            failure_event(), organization_id=DEFAULT_ORG_ID, plan_name="basic", now=days(0.5)
        )

        assert created is False
        assert again.id == open_case.id
        assert db_session.query(DunningCase).count() == 1

    def test_new_case_allowed_after_previous_one_closed(self, db_session, lifecycle, open_case):
        assert lifecycle.recover_case(open_case.id, now=days(1)) is True

        second, created = lifecycle.create_case(
            failure_event(failed_at=days(30)), organization_id=DEFAULT_ORG_ID, now=days(30)
        )

        assert created is True
        assert second.id != open_case.id
        assert db_session.query(DunningCase).count() == 2

    def test_defaults_apply_when_plan_has_no_config(self, db_session, lifecycle):
        dunning_case, _ = lifecycle.create_case(
            failure_event(), organization_id=DEFAULT_ORG_ID, plan_name="unknown_plan", now=T0
        )

        assert dunning_case.plan_name == "unknown_plan"
        assert dunning_case.grace_period_days == 3
        assert dunning_case.max_retry_attempts == 3
        assert dunning_case.retry_intervals == [1, 3, 7]
        assert dunning_case.auto_cancel_days == 30

    def test_plan_resolved_from_known_subscription(self, db_session, lifecycle):
        DunningConfigRegistry(db_session).upsert(
            "pro",
            DunningConfigUpdate(grace_period_days=5, max_retry_attempts=2, retry_intervals=[2, 4]),
        )
        db_session.add(
            Subscription(external_id="sub_pro", organization_id=DEFAULT_ORG_ID, plan_name="pro")
        )
        db_session.commit()

        dunning_case, _ = lifecycle.create_case(failure_event(subscription_id="sub_pro"), now=T0)

        assert dunning_case.plan_name == "pro"
        assert dunning_case.organization_id == DEFAULT_ORG_ID
        assert ensure_utc(dunning_case.next_retry_at) == days(2)
        assert ensure_utc(dunning_case.grace_period_ends_at) == days(5)

    def test_subscription_of_another_organization_is_rejected(self, db_session, lifecycle):
        other = Organization(id=uuid.uuid4(), name="Other Org")
        db_session.add(other)
        db_session.commit()
        db_session.add(
            Subscription(external_id="sub_other", organization_id=other.id, plan_name="basic")
        )
        db_session.commit()

        with pytest.raises(ValidationError):
            lifecycle.create_case(
                failure_event(subscription_id="sub_other"),
                organization_id=DEFAULT_ORG_ID,
                now=T0,
            )
        assert db_session.query(DunningCase).count() == 0

    def test_unknown_subscription_without_organization_is_rejected(self, db_session, lifecycle):
        with pytest.raises(ValidationError):
            lifecycle.create_case(failure_event(subscription_id="sub_unknown"), now=T0)

    def test_unknown_organization_is_rejected(self, lifecycle):
        with pytest.raises(ValidationError):
            lifecycle.create_case(failure_event(), organization_id=uuid.uuid4(), now=T0)

    def test_lost_create_race_returns_winner(self, db_session, lifecycle, open_case):
        # Simulate the open-case lookup missing a case that a concurrent writer inserted.
        real_lookup = lifecycle.cases.get_open_for_invoice
        calls = {"n": 0}

        def racy_lookup(subscription_id, invoice_id):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return real_lookup(subscription_id, invoice_id)

        with patch.object(lifecycle.cases, "get_open_for_invoice", side_effect=racy_lookup):
            winner, created = lifecycle.create_case(
                failure_event(), organization_id=DEFAULT_ORG_ID, now=T0
            )

        assert created is False
        assert winner.id == open_case.id
        assert db_session.query(DunningCase).count() == 1

    def test_config_changes_do_not_affect_open_cases(self, db_session, lifecycle, open_case):
        DunningConfigRegistry(db_session).upsert(
            "basic",
            DunningConfigUpdate(grace_period_days=10, max_retry_attempts=1, retry_intervals=[5]),
        )

        dunning_case = _reload(db_session, open_case.id)
        assert dunning_case.grace_period_days == 3
        assert dunning_case.max_retry_attempts == 3
        assert dunning_case.retry_intervals == [1, 3, 7]

        newer, _ = lifecycle.create_case(
            failure_event(invoice_id="inv_2"),
            organization_id=DEFAULT_ORG_ID,
            plan_name="basic",
            now=T0,
        )
        assert newer.grace_period_days == 10
        assert newer.max_retry_attempts == 1


class TestProcessRetry:
    def test_scenario_b_failed_retry_schedules_next(
        self, db_session, lifecycle, gateway, notifier, open_case
    ):
        gateway.results = [declined("card_declined")]

        outcome = lifecycle.process_retry(open_case.id, now=days(1))

        assert outcome.processed is True
        assert outcome.new_state == DunningCaseStatus.RETRYING
        attempts = _attempts(db_session, open_case.id)
        assert len(attempts) == 1
        assert attempts[0].attempt_number == 1
        assert attempts[0].status == RetryAttemptStatus.FAILED.value
        assert attempts[0].failure_code == "card_declined"
        assert ensure_utc(attempts[0].completed_at) == days(1)
        assert ensure_utc(attempts[0].next_retry_at) == days(3)

        dunning_case = _reload(db_session, open_case.id)
        assert dunning_case.status == DunningCaseStatus.RETRYING.value
        assert dunning_case.current_retry_attempt == 1
        assert ensure_utc(dunning_case.next_retry_at) == days(3)
        assert notifier.types() == [CommunicationType.RETRY_REMINDER.value]
        assert dunning_case.emails_sent == 1

    def test_scenario_c_successful_retry_recovers(
        self, db_session, lifecycle, gateway, access_provider, open_case
    ):
        gateway.results = [declined(), succeeded("pi_2")]
        lifecycle.process_retry(open_case.id, now=days(1))

        outcome = lifecycle.process_retry(open_case.id, now=days(3))

        assert outcome.processed is True
        assert outcome.new_state == DunningCaseStatus.RECOVERED
        attempts = _attempts(db_session, open_case.id)
        assert [a.status for a in attempts] == [
            RetryAttemptStatus.FAILED.value,
            RetryAttemptStatus.SUCCEEDED.value,
        ]
        assert attempts[1].payment_intent_id == "pi_2"

        dunning_case = _reload(db_session, open_case.id)
        assert dunning_case.status == DunningCaseStatus.RECOVERED.value
        assert ensure_utc(dunning_case.recovered_at) == days(3)
        assert dunning_case.next_retry_at is None
        assert dunning_case.suspended_at is None
        assert access_provider.calls == []

    def test_scenario_d_exhaustion_after_grace_suspends_directly(
        self, db_session, lifecycle, gateway, notifier, access_provider, open_case
    ):
        gateway.results = [declined(), declined(), declined()]

        states = [
            lifecycle.process_retry(open_case.id, now=days(n)).new_state for n in (1, 3, 7)
        ]

        assert states == [
            DunningCaseStatus.RETRYING,
            DunningCaseStatus.RETRYING,
            DunningCaseStatus.SUSPENDED,
        ]
        dunning_case = _reload(db_session, open_case.id)
        assert dunning_case.status == DunningCaseStatus.SUSPENDED.value
        assert ensure_utc(dunning_case.suspended_at) == days(7)
        assert dunning_case.current_retry_attempt == 3
        assert CommunicationType.GRACE_PERIOD_WARNING.value not in notifier.types()
        assert notifier.types()[-1] == CommunicationType.SUSPENSION_NOTICE.value
        assert access_provider.calls == [("suspend", DEFAULT_ORG_ID)]

    def test_attempt_numbers_are_sequential(self, db_session, lifecycle, open_case):
        for n in (1, 3, 7):
            lifecycle.process_retry(open_case.id, now=days(n))

        numbers = [a.attempt_number for a in _attempts(db_session, open_case.id)]
        assert numbers == [1, 2, 3]

    def test_not_due_is_a_noop(self, db_session, lifecycle, gateway, open_case):
        outcome = lifecycle.process_retry(open_case.id, now=days(0.5))

        assert outcome.processed is False
        assert outcome.new_state == DunningCaseStatus.ACTIVE
        assert gateway.charges == []
        assert _attempts(db_session, open_case.id) == []

    def test_terminal_case_is_a_noop(self, lifecycle, gateway, open_case):
        lifecycle.recover_case(open_case.id, now=days(0.5))

        outcome = lifecycle.process_retry(open_case.id, now=days(1))

        assert outcome.processed is False
        assert outcome.new_state == DunningCaseStatus.RECOVERED
        assert gateway.charges == []

    def test_uses_idempotency_key_per_attempt(self, lifecycle, gateway, open_case):
        lifecycle.process_retry(open_case.id, now=days(1))

        assert gateway.charges[0]["idempotency_key"] == f"dunning-{open_case.id}-1"
        assert gateway.charges[0]["invoice_id"] == "inv_1"

    def test_lost_race_never_charges(self, db_session, lifecycle, gateway, open_case):
        with patch.object(lifecycle.cases, "transition", return_value=False):
            outcome = lifecycle.process_retry(open_case.id, now=days(1))

        assert outcome.processed is False
        assert gateway.charges == []
        assert _attempts(db_session, open_case.id) == []

    def test_unknown_case_raises(self, lifecycle):
        with pytest.raises(NotFoundError):
            lifecycle.process_retry(uuid.uuid4(), now=days(1))

    def test_gateway_outage_leaves_attempt_pending(self, db_session, lifecycle, gateway, open_case):
        gateway.results = [DependencyError("Stripe unavailable")]

        outcome = lifecycle.process_retry(open_case.id, now=days(1))

        assert outcome.processed is True
        assert outcome.new_state == DunningCaseStatus.RETRYING
        attempts = _attempts(db_session, open_case.id)
        assert attempts[0].status == RetryAttemptStatus.PENDING.value

        # No second attempt while the first one is unresolved.
        again = lifecycle.process_retry(open_case.id, now=days(3))
        assert again.processed is False
        assert len(_attempts(db_session, open_case.id)) == 1

    def test_pending_charge_records_payment_intent(self, db_session, lifecycle, gateway, open_case):
        gateway.results = [ChargeResult(ChargeStatus.PENDING, payment_intent_id="pi_pending")]

        outcome = lifecycle.process_retry(open_case.id, now=days(1))

        assert outcome.new_state == DunningCaseStatus.RETRYING
        attempt = _attempts(db_session, open_case.id)[0]
        assert attempt.status == RetryAttemptStatus.PENDING.value
        assert attempt.payment_intent_id == "pi_pending"
        assert attempt.completed_at is None


class TestPendingAttemptExpiry:
    def test_unknown_outcome_expires_as_timeout(self, db_session, lifecycle, gateway, open_case):
        gateway.results = [ChargeResult(ChargeStatus.PENDING)]
        lifecycle.process_retry(open_case.id, now=days(1))
        attempt = _attempts(db_session, open_case.id)[0]

        state = lifecycle.expire_pending_attempt(attempt, now=days(1.1))

        assert state == DunningCaseStatus.RETRYING
        attempt = _attempts(db_session, open_case.id)[0]
        assert attempt.status == RetryAttemptStatus.FAILED.value
        assert attempt.failure_code == TIMEOUT_FAILURE_CODE
        dunning_case = _reload(db_session, open_case.id)
        assert ensure_utc(dunning_case.next_retry_at) == days(3)

    def test_polled_success_recovers(self, db_session, lifecycle, gateway, open_case):
        gateway.results = [ChargeResult(ChargeStatus.PENDING)]
        gateway.status_result = succeeded("pi_late")
        lifecycle.process_retry(open_case.id, now=days(1))
        attempt = _attempts(db_session, open_case.id)[0]

        state = lifecycle.expire_pending_attempt(attempt, now=days(1.1))

        assert state == DunningCaseStatus.RECOVERED
        assert _attempts(db_session, open_case.id)[0].status == RetryAttemptStatus.SUCCEEDED.value


class TestGracePeriod:
    @pytest.fixture
    def single_attempt_case(self, db_session, lifecycle):
        DunningConfigRegistry(db_session).upsert(
            "starter",
            DunningConfigUpdate(grace_period_days=3, max_retry_attempts=1, retry_intervals=[1]),
        )
        dunning_case, _ = lifecycle.create_case(
            failure_event(), organization_id=DEFAULT_ORG_ID, plan_name="starter", now=T0
        )
        return dunning_case

    def test_early_exhaustion_waits_for_grace_end(
        self, db_session, lifecycle, notifier, access_provider, single_attempt_case
    ):
        outcome = lifecycle.process_retry(single_attempt_case.id, now=days(1))

        assert outcome.new_state == DunningCaseStatus.GRACE_PERIOD
        assert notifier.types()[-1] == CommunicationType.GRACE_PERIOD_WARNING.value
        assert lifecycle.process_suspension(single_attempt_case.id, now=days(2)) is False
        assert _reload(db_session, single_attempt_case.id).status == "grace_period"

        assert lifecycle.process_suspension(single_attempt_case.id, now=days(3)) is True

        dunning_case = _reload(db_session, single_attempt_case.id)
        assert dunning_case.status == DunningCaseStatus.SUSPENDED.value
        assert ensure_utc(dunning_case.suspended_at) == days(3)
        assert access_provider.calls == [("suspend", DEFAULT_ORG_ID)]

    def test_suspension_happens_exactly_once(
        self, db_session, lifecycle, access_provider, single_attempt_case
    ):
        lifecycle.process_retry(single_attempt_case.id, now=days(1))

        first = lifecycle.process_suspension(single_attempt_case.id, now=days(3))
        second = lifecycle.process_suspension(single_attempt_case.id, now=days(3.1))

        assert (first, second) == (True, False)
        actions = db_session.query(AccountAction).filter(
            AccountAction.action == AccountActionType.SUSPEND.value
        )
        assert actions.count() == 1
        assert access_provider.calls == [("suspend", DEFAULT_ORG_ID)]


class TestCancellation:
    def test_suspended_case_cancels_after_auto_cancel_window(
        self, db_session, lifecycle, notifier, open_case
    ):
        for n in (1, 3, 7):
            lifecycle.process_retry(open_case.id, now=days(n))

        assert lifecycle.process_cancellation(open_case.id, now=days(36)) is False
        assert lifecycle.process_cancellation(open_case.id, now=days(37)) is True

        dunning_case = _reload(db_session, open_case.id)
        assert dunning_case.status == DunningCaseStatus.CANCELLED.value
        assert ensure_utc(dunning_case.cancelled_at) == days(37)
        assert notifier.types()[-1] == CommunicationType.CANCELLATION_NOTICE.value

    def test_only_suspended_cases_cancel(self, lifecycle, open_case):
        assert lifecycle.process_cancellation(open_case.id, now=days(100)) is False


class TestRecoverCase:
    def test_recover_from_active(self, db_session, lifecycle, notifier, open_case):
        assert lifecycle.recover_case(open_case.id, payment_intent_id="pi_manual", now=days(0.5))

        dunning_case = _reload(db_session, open_case.id)
        assert dunning_case.status == DunningCaseStatus.RECOVERED.value
        assert dunning_case.payment_intent_id == "pi_manual"
        assert notifier.types() == [CommunicationType.RECOVERY_CONFIRMATION.value]

    def test_recover_terminal_case_returns_false(self, lifecycle, open_case):
        assert lifecycle.recover_case(open_case.id, now=days(1)) is True
        assert lifecycle.recover_case(open_case.id, now=days(2)) is False

    def test_recovery_clears_pending_work(self, db_session, lifecycle, gateway, open_case):
        gateway.results = [ChargeResult(ChargeStatus.PENDING, payment_intent_id="pi_a")]
        lifecycle.process_retry(open_case.id, now=days(1))

        assert lifecycle.recover_case(open_case.id, payment_intent_id="pi_a", now=days(1.5))

        attempt = _attempts(db_session, open_case.id)[0]
        assert attempt.status == RetryAttemptStatus.SUCCEEDED.value
        assert ensure_utc(attempt.completed_at) == days(1.5)
        dunning_case = _reload(db_session, open_case.id)
        assert dunning_case.next_retry_at is None
        assert lifecycle.process_retry(open_case.id, now=days(10)).processed is False

    def test_unmatched_pending_attempt_is_superseded(
        self, db_session, lifecycle, gateway, open_case
    ):
        gateway.results = [ChargeResult(ChargeStatus.PENDING, payment_intent_id="pi_a")]
        lifecycle.process_retry(open_case.id, now=days(1))

        lifecycle.recover_case(open_case.id, payment_intent_id="pi_other", now=days(1.5))

        attempt = _attempts(db_session, open_case.id)[0]
        assert attempt.status == RetryAttemptStatus.FAILED.value
        assert attempt.failure_code == SUPERSEDED_FAILURE_CODE

    def test_late_success_does_not_reopen_terminal_case(
        self, db_session, lifecycle, gateway, open_case
    ):
        gateway.results = [ChargeResult(ChargeStatus.PENDING)]
        lifecycle.process_retry(open_case.id, now=days(1))
        attempt = _attempts(db_session, open_case.id)[0]
        lifecycle.recover_case(open_case.id, now=days(1.5))

        state = lifecycle.apply_charge_result(
            open_case.id, attempt.id, succeeded("pi_late"), now=days(2)
        )

        assert state == DunningCaseStatus.RECOVERED
        assert _reload(db_session, open_case.id).status == DunningCaseStatus.RECOVERED.value

    def test_recovery_after_suspension_restores_access(
        self, db_session, lifecycle, access_provider, open_case
    ):
        for n in (1, 3, 7):
            lifecycle.process_retry(open_case.id, now=days(n))
        assert DEFAULT_ORG_ID in access_provider.suspended

        assert lifecycle.recover_case(open_case.id, now=days(8)) is True

        assert DEFAULT_ORG_ID not in access_provider.suspended
        assert access_provider.calls[-1] == ("restore", DEFAULT_ORG_ID)

    def test_no_restore_while_another_case_keeps_account_suspended(
        self, db_session, lifecycle, access_provider, open_case
    ):
        other, _ = lifecycle.create_case(
            failure_event(invoice_id="inv_2"), organization_id=DEFAULT_ORG_ID, now=T0
        )
        for n in (1, 3, 7):
            lifecycle.process_retry(open_case.id, now=days(n))
            lifecycle.process_retry(other.id, now=days(n))

        lifecycle.recover_case(open_case.id, now=days(8))

        assert DEFAULT_ORG_ID in access_provider.suspended
        assert ("restore", DEFAULT_ORG_ID) not in access_provider.calls

    def test_recover_scoped_to_organization(self, lifecycle, open_case):
        with pytest.raises(NotFoundError):
            lifecycle.recover_case(open_case.id, organization_id=uuid.uuid4(), now=days(1))


class TestDefaultAccountAccess:
    def test_suspension_flips_organization_access_status(self, db_session, basic_plan):
        lifecycle = DunningLifecycleService(db_session, notifier=RecordingNotifier())
        dunning_case, _ = lifecycle.create_case(
            failure_event(), organization_id=DEFAULT_ORG_ID, plan_name="basic", now=T0
        )

        lifecycle.suspend_account(DEFAULT_ORG_ID, dunning_case.id, now=days(1))

        org = db_session.query(Organization).filter(Organization.id == DEFAULT_ORG_ID).one()
        db_session.refresh(org)
        assert org.access_status == AccessStatus.SUSPENDED.value

        lifecycle.restore_account(DEFAULT_ORG_ID, dunning_case.id, now=days(2))
        db_session.refresh(org)
        assert org.access_status == AccessStatus.ACTIVE.value


class TestCaseTransitionRepository:
    def test_stale_version_is_rejected(self, db_session, open_case):
        repo = DunningCaseRepository(db_session)

        applied = repo.transition(
            open_case.id, DunningCaseStatus.ACTIVE.value, 99, {"status": "retrying"}
        )

        assert applied is False
        assert _reload(db_session, open_case.id).status == DunningCaseStatus.ACTIVE.value

    def test_transition_bumps_version(self, db_session, open_case):
        repo = DunningCaseRepository(db_session)

        assert repo.transition(
            open_case.id, DunningCaseStatus.ACTIVE.value, 0, {"status": "retrying"}
        )

        dunning_case = _reload(db_session, open_case.id)
        assert dunning_case.version == 1
        assert dunning_case.status == DunningCaseStatus.RETRYING.value
