"""Plain-text bodies for dunning communications.

The notifier owns template rendering; these are the fallback subject and
body handed to it. Raw gateway detail never reaches the customer.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from app.models.dunning_communication import CommunicationType, DeliveryMethod
from app.models.shared import ensure_utc

if TYPE_CHECKING:
    from app.models.dunning_case import DunningCase

_CUSTOMER_FAILURE_MESSAGES = {
    "card_declined": "Your card was declined.",
    "generic_decline": "Your card was declined.",
    "insufficient_funds": "Your card has insufficient funds.",
    "expired_card": "Your card has expired.",
    "incorrect_cvc": "Your card's security code is incorrect.",
    "processing_error": "An error occurred while processing your card.",
    "authentication_required": "Your bank requires you to authenticate this payment.",
}
_DEFAULT_FAILURE_MESSAGE = "We were unable to process your payment."

SUBJECTS = {
    CommunicationType.RETRY_REMINDER: "Action needed: your payment did not go through",
    CommunicationType.GRACE_PERIOD_WARNING: "Your account will be suspended soon",
    CommunicationType.SUSPENSION_NOTICE: "Your account has been suspended",
    CommunicationType.RECOVERY_CONFIRMATION: "Payment received, thank you",
    CommunicationType.CANCELLATION_NOTICE: "Your subscription has been cancelled",
}


def sanitize_failure_reason(failure_code: str | None) -> str:
    """Customer-safe explanation of a failed charge, keyed on the decline code."""
    if not failure_code:
        return _DEFAULT_FAILURE_MESSAGE
    return _CUSTOMER_FAILURE_MESSAGES.get(failure_code, _DEFAULT_FAILURE_MESSAGE)


def _format_amount(value: object) -> str:
    if value is None:
        return "0.00"
    return f"{Decimal(str(value)):.2f}"


def _format_date(value: datetime | None) -> str:
    value = ensure_utc(value)
    if value is None:
        return ""
    return value.strftime("%Y-%m-%d")


def render_message(
    dunning_case: DunningCase,
    communication_type: CommunicationType,
    delivery_method: DeliveryMethod,
) -> tuple[str | None, str]:
    """Return ``(subject, body)``. SMS messages have no subject."""
    amount = f"{_format_amount(dunning_case.payment_amount)} {dunning_case.currency}"

    if communication_type == CommunicationType.RETRY_REMINDER:
        body = (
            f"{sanitize_failure_reason(dunning_case.failure_code)} "  # type: ignore[arg-type]
            f"We will retry your payment of {amount} on "
            f"{_format_date(dunning_case.next_retry_at)}. "  # type: ignore[arg-type]
            "Please update your payment method to avoid interruption."
        )
    elif communication_type == CommunicationType.GRACE_PERIOD_WARNING:
        body = (
            f"We could not collect your payment of {amount}. Your account will be "
            f"suspended on {_format_date(dunning_case.grace_period_ends_at)} "  # type: ignore[arg-type]
            "unless the payment is completed."
        )
    elif communication_type == CommunicationType.SUSPENSION_NOTICE:
        body = (
            f"Your account has been suspended because your payment of {amount} "
            "could not be collected. Complete the payment to restore access."
        )
    elif communication_type == CommunicationType.RECOVERY_CONFIRMATION:
        body = f"We received your payment of {amount}. Thank you, your account is in good standing."
    else:
        body = (
            f"Your subscription has been cancelled because your payment of {amount} "
            "remained unpaid."
        )

    if delivery_method == DeliveryMethod.SMS:
        return None, body
    return SUBJECTS[communication_type], body
