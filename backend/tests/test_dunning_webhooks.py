"""Tests for inbound gateway webhooks."""

import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from app.core.config import settings
from app.core.errors import AuthenticationError, ValidationError
from app.main import app
from app.models.dunning_case import DunningCase, DunningCaseStatus
from app.models.processed_webhook_event import ProcessedWebhookEvent
from app.models.shared import ensure_utc
from app.services.dunning_webhook_service import DunningWebhookService
from app.services.signatures import generate_hmac_signature
from tests.conftest import DEFAULT_ORG_ID, T0, days

WEBHOOK_SECRET = "whsec_test_manual"


def _event(
    event_id: str = "evt_1",
    event_type: str = "invoice.payment_failed",
    **overrides,
) -> dict:
    data = {
        "subscription_id": "sub_1",
        "invoice_id": "inv_1",
        "payment_intent_id": "pi_1",
        "amount": "49.00",
        "currency": "usd",
        "failure_reason": "Your card was declined.",
        "failure_code": "card_declined",
        "metadata": {"organization_id": str(DEFAULT_ORG_ID)},
    }
    data.update(overrides)
    return {"id": event_id, "type": event_type, "object": data}


def _body(event: dict) -> bytes:
    return json.dumps(event).encode("utf-8")


@pytest.fixture
def webhooks(db_session, gateway, lifecycle):
    return DunningWebhookService(db_session, gateway, lifecycle=lifecycle)


class TestDunningWebhookService:
    def test_payment_failed_opens_case(self, db_session, webhooks):
        outcome = webhooks.handle(_body(_event()), "valid", now=T0)

        assert outcome.status == "created"
        assert outcome.event_type == "invoice.payment_failed"
        dunning_case = db_session.query(DunningCase).filter(DunningCase.id == outcome.case_id).one()
        assert dunning_case.status == DunningCaseStatus.ACTIVE.value
        assert dunning_case.organization_id == DEFAULT_ORG_ID
        assert dunning_case.currency == "USD"
        assert dunning_case.payment_intent_id == "pi_1"

    def test_redelivered_event_is_duplicate(self, db_session, webhooks):
        first = webhooks.handle(_body(_event()), "valid", now=T0)
        second = webhooks.handle(_body(_event()), "valid", now=T0 + timedelta(minutes=5))

        assert first.status == "created"
        assert second.status == "duplicate"
        assert second.case_id is None
        assert db_session.query(DunningCase).count() == 1

    def test_distinct_event_for_open_invoice_returns_existing(self, db_session, webhooks):
        first = webhooks.handle(_body(_event("evt_1")), "valid", now=T0)
        second = webhooks.handle(_body(_event("evt_2")), "valid", now=T0)

        assert second.status == "existing"
        assert second.case_id == first.case_id

    def test_failure_time_taken_from_event(self, db_session, webhooks):
        event = _event()
        event["created"] = int((T0 - timedelta(hours=2)).timestamp())

        outcome = webhooks.handle(_body(event), "valid", now=T0)

        dunning_case = db_session.query(DunningCase).filter(DunningCase.id == outcome.case_id).one()
        assert ensure_utc(dunning_case.payment_failed_at) == T0 - timedelta(hours=2)

    def test_future_event_time_clamped_to_now(self, db_session, webhooks):
        event = _event()
        event["created"] = (T0 + timedelta(days=1)).isoformat()

        outcome = webhooks.handle(_body(event), "valid", now=T0)

        dunning_case = db_session.query(DunningCase).filter(DunningCase.id == outcome.case_id).one()
        assert ensure_utc(dunning_case.payment_failed_at) == T0

    def test_plan_name_from_metadata(self, db_session, webhooks):
        event = _event(
            metadata={"organization_id": str(DEFAULT_ORG_ID), "plan_name": "enterprise"}
        )

        outcome = webhooks.handle(_body(event), "valid", now=T0)

        dunning_case = db_session.query(DunningCase).filter(DunningCase.id == outcome.case_id).one()
        assert dunning_case.plan_name == "enterprise"

    @pytest.mark.parametrize("signature", [None, "", "forged"])
    def test_bad_signature_rejected_before_parsing(self, db_session, webhooks, signature):
        with pytest.raises(AuthenticationError):
            webhooks.handle(b"not json at all", signature, now=T0)
        assert db_session.query(ProcessedWebhookEvent).count() == 0

    @pytest.mark.parametrize("payload", [b"{not json", b"[1, 2, 3]", b"\xff\xfe"])
    def test_malformed_body(self, webhooks, payload):
        with pytest.raises(ValidationError):
            webhooks.handle(payload, "valid", now=T0)

    def test_missing_event_id(self, webhooks):
        event = _event()
        del event["id"]

        with pytest.raises(ValidationError, match="event id"):
            webhooks.handle(_body(event), "valid", now=T0)

    @pytest.mark.parametrize(
        "overrides",
        [{"subscription_id": None}, {"invoice_id": None}, {"amount": None}, {"amount": "0"}],
    )
    def test_payment_failed_requires_fields(self, db_session, webhooks, overrides):
        with pytest.raises(ValidationError):
            webhooks.handle(_body(_event(**overrides)), "valid", now=T0)
        assert db_session.query(DunningCase).count() == 0
        assert db_session.query(ProcessedWebhookEvent).count() == 0

    def test_payment_succeeded_recovers_case(self, db_session, webhooks, notifier):
        opened = webhooks.handle(_body(_event()), "valid", now=T0)

        outcome = webhooks.handle(
            _body(_event("evt_2", "invoice.payment_succeeded", payment_intent_id="pi_paid")),
            "valid",
            now=days(2),
        )

        assert outcome.status == "recovered"
        assert outcome.case_id == opened.case_id
        dunning_case = db_session.query(DunningCase).filter(DunningCase.id == opened.case_id).one()
        db_session.refresh(dunning_case)
        assert dunning_case.status == DunningCaseStatus.RECOVERED.value
        assert dunning_case.payment_intent_id == "pi_paid"
        assert notifier.types() == ["recovery_confirmation"]

    def test_payment_succeeded_without_open_case_is_ignored(self, webhooks):
        outcome = webhooks.handle(
            _body(_event("evt_9", "invoice.payment_succeeded")), "valid", now=T0
        )

        assert outcome.status == "ignored"
        assert outcome.reason == "no open dunning case"

    def test_unrelated_event_type_is_recorded_and_ignored(self, db_session, webhooks):
        outcome = webhooks.handle(_body(_event("evt_3", "customer.updated")), "valid", now=T0)

        assert outcome.status == "ignored"
        recorded = db_session.query(ProcessedWebhookEvent).one()
        assert recorded.provider == "fake"
        assert recorded.outcome == "ignored"

    def test_purge_processed_events(self, db_session, webhooks):
        db_session.add_all(
            [
                ProcessedWebhookEvent(
                    provider="fake", event_id="old", event_type="x", created_at=T0
                ),
                ProcessedWebhookEvent(
                    provider="fake", event_id="new", event_type="x", created_at=days(3)
                ),
            ]
        )
        db_session.commit()

        deleted = webhooks.purge_processed_events(now=days(3) + timedelta(hours=1))

        assert deleted == 1
        remaining = [e.event_id for e in db_session.query(ProcessedWebhookEvent).all()]
        assert remaining == ["new"]


class TestDunningWebhookAPI:
    @pytest.fixture(autouse=True)
    def _manual_secret(self, monkeypatch):
        monkeypatch.setattr(settings, "manual_webhook_secret", WEBHOOK_SECRET)
        monkeypatch.setattr(settings, "NOTIFIER_URL", "")

    def _post(self, client, event, signature=None, provider="manual"):
        body = _body(event)
        if signature is None:
            signature = generate_hmac_signature(body, WEBHOOK_SECRET)
        return client.post(
            f"/v1/dunning/webhooks/{provider}",
            content=body,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": signature},
        )

    def test_payment_failed_creates_case(self, db_session):
        client = TestClient(app)

        response = self._post(client, _event())

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "created"
        assert data["event_type"] == "invoice.payment_failed"
        assert data["case_id"]
        assert db_session.query(DunningCase).count() == 1

    def test_duplicate_delivery(self, db_session):
        client = TestClient(app)

        self._post(client, _event())
        response = self._post(client, _event())

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"
        assert db_session.query(DunningCase).count() == 1

    def test_sha256_prefixed_signature_accepted(self):
        client = TestClient(app)
        body = _body(_event())

        response = self._post(
            client, _event(), signature="sha256=" + generate_hmac_signature(body, WEBHOOK_SECRET)
        )

        assert response.status_code == 200

    def test_invalid_signature(self, db_session):
        client = TestClient(app)

        response = self._post(client, _event(), signature="deadbeef")

        assert response.status_code == 401
        assert response.json()["code"] == "authentication_error"
        assert db_session.query(DunningCase).count() == 0

    def test_missing_signature(self):
        client = TestClient(app)

        response = client.post("/v1/dunning/webhooks/manual", content=_body(_event()))

        assert response.status_code == 401

    def test_malformed_event(self):
        client = TestClient(app)

        response = self._post(client, _event(amount=None))

        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"

    def test_invalid_provider(self):
        client = TestClient(app)

        response = self._post(client, _event(), provider="paypal")

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid provider"

    def test_payment_succeeded_recovers(self, db_session):
        client = TestClient(app)
        created = self._post(client, _event()).json()

        response = self._post(client, _event("evt_2", "invoice.payment_succeeded"))

        assert response.status_code == 200
        assert response.json()["status"] == "recovered"
        assert response.json()["case_id"] == created["case_id"]
