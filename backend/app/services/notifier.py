"""Notifier boundary: hands dunning communications to the delivery service.

The delivery service renders and sends the email/SMS and later reports
delivery status back through the signed delivery callback endpoint.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from app.core.config import settings
from app.core.errors import DependencyError
from app.services.signatures import generate_hmac_signature

if TYPE_CHECKING:
    from app.models.dunning_communication import DunningCommunication

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Notifier-Signature"


@dataclass
class NotifierReceipt:
    """Acknowledgement from the notifier.

    ``accepted`` is False when nothing was handed off for delivery; the
    communication then stays pending.
    """

    provider_message_id: str | None = None
    accepted: bool = True


class NotifierBase(ABC):
    @abstractmethod
    def send(self, communication: DunningCommunication) -> NotifierReceipt:
        """Dispatch a communication. Raises DependencyError if it cannot be handed off."""
        pass  # pragma: no cover


def build_payload(communication: DunningCommunication) -> dict[str, object]:
    return {
        "communication_id": str(communication.id),
        "dunning_case_id": str(communication.dunning_case_id),
        "organization_id": str(communication.organization_id),
        "communication_type": communication.communication_type,
        "delivery_method": communication.delivery_method,
        "recipient_email": communication.recipient_email,
        "recipient_phone": communication.recipient_phone,
        "subject": communication.subject,
        "message_body": communication.message_body,
    }


class HttpNotifier(NotifierBase):
    """POSTs communications as signed JSON to the configured notifier URL."""

    def __init__(
        self,
        url: str | None = None,
        secret: str | None = None,
        timeout: float | None = None,
    ):
        self.url = url or settings.NOTIFIER_URL
        self.secret = secret if secret is not None else settings.NOTIFIER_SECRET
        self.timeout = timeout or settings.NOTIFIER_TIMEOUT_SECONDS

    def send(self, communication: DunningCommunication) -> NotifierReceipt:
        payload_bytes = json.dumps(build_payload(communication), default=str).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: generate_hmac_signature(payload_bytes, self.secret),
            "X-Communication-Id": str(communication.id),
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(self.url, content=payload_bytes, headers=headers)
        except httpx.HTTPError as exc:
            raise DependencyError(f"Notifier unreachable: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            raise DependencyError(
                f"Notifier rejected communication {communication.id}: HTTP {resp.status_code}"
            )

        message_id: str | None = None
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("message_id"):
            message_id = str(body["message_id"])
        return NotifierReceipt(provider_message_id=message_id)


class LoggingNotifier(NotifierBase):
    """Used when no notifier URL is configured: logs every message and sends nothing."""

    def send(self, communication: DunningCommunication) -> NotifierReceipt:
        logger.info(
            "Notifier not configured, skipping %s %s to %s",
            communication.delivery_method,
            communication.communication_type,
            communication.recipient_email or communication.recipient_phone,
        )
        return NotifierReceipt(accepted=False)


def get_notifier() -> NotifierBase:
    if settings.NOTIFIER_URL:
        return HttpNotifier()
    return LoggingNotifier()
