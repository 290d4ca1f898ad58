"""Payment gateway abstraction for dunning retries and webhooks.

Supports Stripe and a manual (HMAC-signed) gateway.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from app.core.config import settings
from app.core.errors import DependencyError, GatewayError, ValidationError
from app.services.signatures import verify_hmac_signature

logger = logging.getLogger(__name__)

EVENT_PAYMENT_FAILED = "invoice.payment_failed"
EVENT_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"

STRIPE_API_VERSION = "2025-09-30.clover"


class ChargeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


@dataclass
class ChargeResult:
    """Outcome of a charge attempt. A decline is data, not an exception."""

    status: ChargeStatus
    payment_intent_id: str | None = None
    failure_reason: str | None = None
    failure_code: str | None = None


@dataclass
class GatewayEvent:
    """Normalized inbound gateway event."""

    event_id: str
    event_type: str
    subscription_id: str | None = None
    invoice_id: str | None = None
    payment_intent_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    failure_reason: str | None = None
    failure_code: str | None = None
    occurred_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class PaymentGatewayBase(ABC):
    """Abstract base class for payment gateways."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the gateway name used in webhook routes."""
        pass  # pragma: no cover

    @abstractmethod
    def charge(
        self,
        *,
        subscription_id: str,
        invoice_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult:
        """Attempt to collect an unpaid invoice.

        Raises DependencyError when the gateway cannot be reached; the
        outcome is then unknown and left for reconciliation.
        """
        pass  # pragma: no cover

    @abstractmethod
    def get_charge_status(self, *, invoice_id: str, idempotency_key: str) -> ChargeResult:
        """Look up the outcome of an earlier charge."""
        pass  # pragma: no cover

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify the webhook signature."""
        pass  # pragma: no cover

    @abstractmethod
    def parse_webhook(self, payload: dict[str, Any]) -> GatewayEvent:
        """Parse a webhook payload into a GatewayEvent."""
        pass  # pragma: no cover


def _to_decimal(amount_minor: Any) -> Decimal | None:
    if amount_minor is None:
        return None
    return (Decimal(str(amount_minor)) / 100).quantize(Decimal("0.01"))


def _to_datetime(value: Any) -> datetime | None:
    """Event timestamp from unix seconds or an ISO-8601 string."""
    if value is None or value == "":
        return None
    try:
        if isinstance(value, int | float):
            return datetime.fromtimestamp(value, UTC)
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        raise ValidationError(f"Invalid event timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _get(obj: Any, key: str) -> Any:
    """Field access for both webhook dicts and Stripe API objects."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _id_of(value: Any) -> str | None:
    """Id of an expandable Stripe field (plain id or expanded object)."""
    if value is None or isinstance(value, str):
        return value
    return _get(value, "id")


class StripeGateway(PaymentGatewayBase):
    """Stripe gateway: retries by paying the open invoice."""

    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None):
        self.api_key = api_key or settings.stripe_api_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self._stripe: Any = None

    @property
    def stripe(self) -> Any:
        """Lazy-load stripe module."""
        if self._stripe is None:
            try:
                import stripe

                stripe.api_key = self.api_key
                stripe.api_version = STRIPE_API_VERSION
                self._stripe = stripe
            except ImportError as e:
                raise ImportError("stripe package not installed. Run: pip install stripe") from e
        return self._stripe

    @property
    def name(self) -> str:
        return "stripe"

    @staticmethod
    def _invoice_payment_intent(invoice: Any) -> Any:
        """The invoice's payment intent, as an id or an expanded object.

        Since API 2025-03-31.basil invoices list their payments under
        ``payments``; older payloads carry a top-level ``payment_intent``.
        """
        for invoice_payment in _get(_get(invoice, "payments"), "data") or []:
            payment = _get(invoice_payment, "payment")
            if _get(payment, "type") == "payment_intent" and _get(payment, "payment_intent"):
                return _get(payment, "payment_intent")
        return _get(invoice, "payment_intent")

    @staticmethod
    def _invoice_subscription(invoice: Any) -> str | None:
        details = _get(_get(invoice, "parent"), "subscription_details")
        return _id_of(_get(details, "subscription")) or _id_of(_get(invoice, "subscription"))

    def _result_from_invoice(self, invoice: Any) -> ChargeResult:
        status = _get(invoice, "status")
        payment_intent = _id_of(self._invoice_payment_intent(invoice))
        if status == "paid":
            return ChargeResult(ChargeStatus.SUCCEEDED, payment_intent_id=payment_intent)
        if status == "open":
            return ChargeResult(ChargeStatus.PENDING, payment_intent_id=payment_intent)
        return ChargeResult(
            ChargeStatus.FAILED,
            payment_intent_id=payment_intent,
            failure_reason=f"Invoice is {status}",
            failure_code=str(status) if status else None,
        )

    def charge(
        self,
        *,
        subscription_id: str,
        invoice_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult:
        try:
            invoice = self.stripe.Invoice.pay(invoice_id, idempotency_key=idempotency_key)
        except self.stripe.error.CardError as exc:
            decline = GatewayError(
                getattr(exc, "user_message", None) or str(exc),
                decline_code=getattr(exc, "code", None),
            )
            logger.info("Stripe declined invoice %s: %s", invoice_id, decline.message)
            return ChargeResult(
                ChargeStatus.FAILED,
                failure_reason=decline.message,
                failure_code=decline.decline_code or "card_declined",
            )
        except self.stripe.error.InvalidRequestError as exc:
            return ChargeResult(
                ChargeStatus.FAILED,
                failure_reason=str(exc),
                failure_code=getattr(exc, "code", None) or "invalid_request",
            )
        except self.stripe.error.StripeError as exc:
            raise DependencyError(f"Stripe unavailable: {exc}") from exc
        return self._result_from_invoice(invoice)

    def get_charge_status(self, *, invoice_id: str, idempotency_key: str) -> ChargeResult:
        try:
            invoice = self.stripe.Invoice.retrieve(invoice_id)
        except self.stripe.error.StripeError as exc:
            raise DependencyError(f"Stripe unavailable: {exc}") from exc
        return self._result_from_invoice(invoice)

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify Stripe webhook signature."""
        if not self.webhook_secret or not signature:
            return False
        try:
            self.stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
            return True
        except (ValueError, self.stripe.error.SignatureVerificationError):
            return False

    def parse_webhook(self, payload: dict[str, Any]) -> GatewayEvent:
        """Parse a Stripe invoice event rendered at ``STRIPE_API_VERSION``.

        The subscription lives under ``parent.subscription_details`` and the
        payment intent under ``payments``. Invoices carry no decline detail
        of their own; it is only present when the payment intent was
        expanded into the event.
        """
        data_object = payload.get("data", {}).get("object", {})
        payment_intent = self._invoice_payment_intent(data_object)
        last_error = _get(payment_intent, "last_payment_error") or {}
        failure_reason = _get(last_error, "message")
        failure_code = _get(last_error, "decline_code") or _get(last_error, "code")
        if payload.get("type") == EVENT_PAYMENT_FAILED and not failure_reason:
            failure_reason = "Payment failed"

        subscription_details = _get(data_object.get("parent"), "subscription_details") or {}
        metadata = {
            **(_get(subscription_details, "metadata") or {}),
            **(data_object.get("metadata") or {}),
        }

        return GatewayEvent(
            event_id=str(payload.get("id", "")),
            event_type=str(payload.get("type", "")),
            subscription_id=self._invoice_subscription(data_object),
            invoice_id=data_object.get("id"),
            payment_intent_id=_id_of(payment_intent),
            amount=_to_decimal(data_object.get("amount_due")),
            currency=(data_object.get("currency") or "usd").upper(),
            failure_reason=failure_reason,
            failure_code=failure_code,
            occurred_at=_to_datetime(payload.get("created")),
            metadata=metadata,
        )



class ManualGateway(PaymentGatewayBase):
    """Manual gateway for offline collection.

    Charges are never attempted automatically: every retry reports a
    decline so the case progresses on schedule until an operator or a
    signed webhook records the payment.
    """

    def __init__(self, webhook_secret: str | None = None):
        self.webhook_secret = webhook_secret or settings.manual_webhook_secret

    @property
    def name(self) -> str:
        return "manual"

    def charge(
        self,
        *,
        subscription_id: str,
        invoice_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult:
        return ChargeResult(
            ChargeStatus.FAILED,
            failure_reason="Automatic collection is not available for manual payments",
            failure_code="manual_collection",
        )

    def get_charge_status(self, *, invoice_id: str, idempotency_key: str) -> ChargeResult:
        return ChargeResult(
            ChargeStatus.FAILED,
            failure_reason="Automatic collection is not available for manual payments",
            failure_code="manual_collection",
        )

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Manual gateway uses HMAC-SHA256 for signature verification."""
        return verify_hmac_signature(payload, signature, self.webhook_secret)

    def parse_webhook(self, payload: dict[str, Any]) -> GatewayEvent:
        """Parse manual webhook payload (``{"id", "type", "object": {...}}``)."""
        data_object = payload.get("object") or {}
        amount = data_object.get("amount")
        return GatewayEvent(
            event_id=str(payload.get("id", "")),
            event_type=str(payload.get("type", "")),
            subscription_id=data_object.get("subscription_id"),
            invoice_id=data_object.get("invoice_id"),
            payment_intent_id=data_object.get("payment_intent_id"),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=(data_object.get("currency") or "USD").upper(),
            failure_reason=data_object.get("failure_reason"),
            failure_code=data_object.get("failure_code"),
            occurred_at=_to_datetime(payload.get("created")),
            metadata=data_object.get("metadata") or {},
        )


_GATEWAYS: dict[str, type[PaymentGatewayBase]] = {
    "stripe": StripeGateway,
    "manual": ManualGateway,
}


def get_payment_gateway(name: str | None = None) -> PaymentGatewayBase:
    """Factory function to get a payment gateway instance."""
    gateway_name = (name or settings.PAYMENT_GATEWAY).lower()
    gateway_class = _GATEWAYS.get(gateway_name)
    if gateway_class is None:
        raise ValidationError(f"Unsupported payment gateway: {gateway_name}")
    return gateway_class()
