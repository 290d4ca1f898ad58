"""Inbound payment-gateway webhooks that open and recover dunning cases."""

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.errors import ValidationError
from app.schemas.dunning_webhook import WebhookAck
from app.services.dunning_webhook_service import DunningWebhookService
from app.services.payment_gateway import get_payment_gateway

router = APIRouter()


@router.post(
    "/{provider}",
    response_model=WebhookAck,
    summary="Receive gateway webhook",
    responses={
        400: {"description": "Invalid provider"},
        401: {"description": "Invalid signature"},
        422: {"description": "Malformed event"},
    },
)
async def handle_gateway_webhook(
    provider: str,
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    webhook_signature: str | None = Header(None, alias="X-Webhook-Signature"),
    db: Session = Depends(get_db),
) -> WebhookAck:
    """Handle payment_failed and payment_succeeded events.

    Redelivered events are acknowledged with ``status="duplicate"``.
    """
    payload = await request.body()

    try:
        gateway = get_payment_gateway(provider)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid provider") from None

    signature = stripe_signature or webhook_signature or request.headers.get("X-Signature")
    outcome = DunningWebhookService(db, gateway).handle(payload, signature)
    return WebhookAck(
        status=outcome.status,
        event_type=outcome.event_type,
        case_id=str(outcome.case_id) if outcome.case_id else None,
        reason=outcome.reason,
    )
