"""Shared test fixtures for all test modules."""

import contextlib
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core import database as db_module
from app.core.database import Base, get_db
from app.core.errors import DependencyError
from app.models.organization import Organization
from app.services.account_access import AccountAccessProvider
from app.services.notifier import NotifierBase, NotifierReceipt
from app.services.payment_gateway import (
    ChargeResult,
    ChargeStatus,
    GatewayEvent,
    ManualGateway,
    PaymentGatewayBase,
)

# Create an in-memory SQLite engine with StaticPool so all connections
# share the same database state and there are no file-locking issues.
_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_test_engine)

# Well-known default organization ID used across all tests
DEFAULT_ORG_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
OWNER_EMAIL = "billing@example.com"

# Payment failure time used by lifecycle scenarios
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def days(n: float) -> datetime:
    """T0 plus ``n`` days."""
    return T0 + timedelta(days=n)


def _seed_default_organization(session: Session) -> None:
    """Insert a default organization used by all tests."""
    org = session.query(Organization).filter(Organization.id == DEFAULT_ORG_ID).first()
    if org is None:
        org = Organization(
            id=DEFAULT_ORG_ID,
            name="Default Test Organization",
            owner_email=OWNER_EMAIL,
        )
        session.add(org)
        session.commit()


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and truncate all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database. Clears data after each test.
    """
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    session = _TestSessionLocal()
    try:
        _seed_default_organization(session)
    finally:
        session.close()

    yield
    with _test_engine.connect() as conn:
        conn.execute(text("PRAGMA foreign_keys = OFF"))
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.execute(text("PRAGMA foreign_keys = ON"))
        conn.commit()

    db_module.engine = original_engine
    db_module.SessionLocal = original_session


@pytest.fixture
def default_org_id():
    """Return the default organization ID for tests."""
    return DEFAULT_ORG_ID


@pytest.fixture
def db_session():
    """Create a database session for direct service and repository testing."""
    gen = get_db()
    db = next(gen)
    try:
        yield db
    finally:
        for _ in gen:
            pass


# --- Collaborator fakes ---


def declined(code: str = "card_declined") -> ChargeResult:
    return ChargeResult(
        ChargeStatus.FAILED,
        failure_reason=f"Gateway said: {code} (raw detail)",
        failure_code=code,
    )


def succeeded(payment_intent_id: str = "pi_ok") -> ChargeResult:
    return ChargeResult(ChargeStatus.SUCCEEDED, payment_intent_id=payment_intent_id)


class FakeGateway(PaymentGatewayBase):
    """Returns queued charge results in order, declining once the queue is empty."""

    def __init__(
        self,
        results: list[ChargeResult | Exception] | None = None,
        status_result: ChargeResult | None = None,
    ):
        self.results = list(results or [])
        self.status_result = status_result or ChargeResult(ChargeStatus.PENDING)
        self.charges: list[dict[str, Any]] = []

    @property
    def name(self) -> str:
        return "fake"

    def charge(self, **kwargs: Any) -> ChargeResult:
        self.charges.append(kwargs)
        if not self.results:
            return declined()
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def get_charge_status(self, *, invoice_id: str, idempotency_key: str) -> ChargeResult:
        return self.status_result

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        return signature == "valid"

    def parse_webhook(self, payload: dict[str, Any]) -> GatewayEvent:
        return ManualGateway(webhook_secret="unused").parse_webhook(payload)


class RecordingNotifier(NotifierBase):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, str, str | None]] = []

    def send(self, communication):  # type: ignore[no-untyped-def]
        if self.fail:
            raise DependencyError("Notifier unreachable: connection refused")
        self.sent.append(
            (
                str(communication.communication_type),
                str(communication.delivery_method),
                communication.recipient_email or communication.recipient_phone,
            )
        )
        return NotifierReceipt(provider_message_id=f"msg-{len(self.sent)}")

    def types(self) -> list[str]:
        return [communication_type for communication_type, _, _ in self.sent]


class FakeAccessProvider(AccountAccessProvider):
    """In-memory account access; the first ``failures`` calls raise."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.suspended: set[uuid.UUID] = set()
        self.calls: list[tuple[str, uuid.UUID]] = []

    def _maybe_fail(self) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("account service unavailable")

    def suspend(self, organization_id: uuid.UUID) -> None:
        self.calls.append(("suspend", organization_id))
        self._maybe_fail()
        self.suspended.add(organization_id)

    def restore(self, organization_id: uuid.UUID) -> None:
        self.calls.append(("restore", organization_id))
        self._maybe_fail()
        self.suspended.discard(organization_id)

    def is_suspended(self, organization_id: uuid.UUID) -> bool:
        return organization_id in self.suspended


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def access_provider():
    return FakeAccessProvider()


@pytest.fixture
def lifecycle(db_session, gateway, notifier, access_provider):
    from app.services.dunning_lifecycle import DunningLifecycleService

    return DunningLifecycleService(
        db_session,
        gateway=gateway,
        notifier=notifier,
        account_access=access_provider,
    )


def failure_event(
    subscription_id: str = "sub_1",
    invoice_id: str = "inv_1",
    amount: str = "49.00",
    failed_at: datetime = T0,
    organization_id: uuid.UUID | None = None,
):
    from app.schemas.dunning_case import DunningCaseCreate

    return DunningCaseCreate(
        organization_id=organization_id,
        subscription_id=subscription_id,
        invoice_id=invoice_id,
        payment_amount=Decimal(amount),
        currency="USD",
        failure_reason="Your card was declined.",
        failure_code="card_declined",
        failed_at=failed_at,
    )
