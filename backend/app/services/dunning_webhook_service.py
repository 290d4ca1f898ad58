"""Inbound payment-gateway webhooks for the dunning engine.

Signatures are verified before anything else. Redelivered events are
acknowledged as duplicates using the processed-event table; the open-case
uniqueness constraint backs this up if two deliveries race.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import AuthenticationError, ValidationError
from app.models.shared import utc_now
from app.repositories.dunning_case_repository import DunningCaseRepository
from app.repositories.processed_event_repository import ProcessedEventRepository
from app.schemas.dunning_case import DunningCaseCreate
from app.services.dunning_lifecycle import DunningLifecycleService
from app.services.payment_gateway import (
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_SUCCEEDED,
    GatewayEvent,
    PaymentGatewayBase,
)

logger = logging.getLogger(__name__)


@dataclass
class WebhookOutcome:
    status: str
    event_type: str | None = None
    case_id: UUID | None = None
    reason: str | None = None


class DunningWebhookService:
    def __init__(
        self,
        db: Session,
        gateway: PaymentGatewayBase,
        lifecycle: DunningLifecycleService | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.lifecycle = lifecycle or DunningLifecycleService(db, gateway=gateway)
        self.cases = DunningCaseRepository(db)
        self.processed = ProcessedEventRepository(db)

    def handle(
        self,
        payload: bytes,
        signature: str | None,
        now: datetime | None = None,
    ) -> WebhookOutcome:
        """Verify, parse and dispatch one webhook delivery."""
        if not signature or not self.gateway.verify_webhook_signature(payload, signature):
            raise AuthenticationError("Invalid webhook signature")

        try:
            body: Any = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc
        if not isinstance(body, dict):
            raise ValidationError("Webhook body must be a JSON object")

        event = self.gateway.parse_webhook(body)
        if not event.event_id:
            raise ValidationError("Webhook event id is required")

        if self.processed.get(self.gateway.name, event.event_id) is not None:
            logger.info("Duplicate %s webhook %s ignored", self.gateway.name, event.event_id)
            return WebhookOutcome(status="duplicate", event_type=event.event_type)

        now = now or utc_now()
        if event.event_type == EVENT_PAYMENT_FAILED:
            outcome = self._handle_payment_failed(event, now)
        elif event.event_type == EVENT_PAYMENT_SUCCEEDED:
            outcome = self._handle_payment_succeeded(event, now)
        else:
            logger.debug("Ignoring %s webhook of type %s", self.gateway.name, event.event_type)
            outcome = WebhookOutcome(status="ignored", event_type=event.event_type)

        self.processed.record(
            provider=self.gateway.name,
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=outcome.status,
        )
        return outcome

    def _handle_payment_failed(self, event: GatewayEvent, now: datetime) -> WebhookOutcome:
        if not event.subscription_id or not event.invoice_id:
            raise ValidationError("payment_failed event requires subscription and invoice ids")
        if event.amount is None or event.amount <= 0:
            raise ValidationError("payment_failed event requires a positive amount")

        organization_id = event.metadata.get("organization_id")
        try:
            data = DunningCaseCreate(
                organization_id=UUID(organization_id) if organization_id else None,
                subscription_id=event.subscription_id,
                invoice_id=event.invoice_id,
                payment_intent_id=event.payment_intent_id,
                payment_amount=event.amount,
                currency=event.currency or "USD",
                failure_reason=event.failure_reason,
                failure_code=event.failure_code,
                failed_at=min(event.occurred_at, now) if event.occurred_at else now,
            )
        except ValueError as exc:
            raise ValidationError(f"Malformed payment_failed event: {exc}") from exc

        dunning_case, created = self.lifecycle.create_case(
            data, plan_name=event.metadata.get("plan_name"), now=now
        )
        return WebhookOutcome(
            status="created" if created else "existing",
            event_type=event.event_type,
            case_id=dunning_case.id,  # type: ignore[arg-type]
        )

    def _handle_payment_succeeded(self, event: GatewayEvent, now: datetime) -> WebhookOutcome:
        if not event.subscription_id or not event.invoice_id:
            raise ValidationError("payment_succeeded event requires subscription and invoice ids")

        dunning_case = self.cases.get_open_for_invoice(event.subscription_id, event.invoice_id)
        if dunning_case is None:
            return WebhookOutcome(
                status="ignored",
                event_type=event.event_type,
                reason="no open dunning case",
            )
        recovered = self.lifecycle.recover_case(
            dunning_case.id,  # type: ignore[arg-type]
            payment_intent_id=event.payment_intent_id,
            now=now,
        )
        return WebhookOutcome(
            status="recovered" if recovered else "unchanged",
            event_type=event.event_type,
            case_id=dunning_case.id,  # type: ignore[arg-type]
        )

    def purge_processed_events(self, now: datetime | None = None) -> int:
        now = now or utc_now()
        return self.processed.delete_expired(now, settings.WEBHOOK_EVENT_RETENTION_HOURS)
