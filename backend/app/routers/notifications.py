"""Operator alerts raised when a dunning side effect could not be completed."""

from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.auth import get_current_organization
from app.core.database import get_db
from app.core.errors import NotFoundError
from app.repositories.notification_repository import NotificationRepository
from app.schemas.notification import NotificationResponse

router = APIRouter()


@router.get(
    "/",
    response_model=list[NotificationResponse],
    summary="List operator alerts",
    responses={401: {"description": "Unauthorized – invalid or missing API key"}},
)
async def list_notifications(
    category: str | None = None,
    severity: Literal["warning", "critical"] | None = None,
    case_id: UUID | None = Query(default=None, description="Only alerts about this dunning case"),
    unread_only: bool = False,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
) -> list[NotificationResponse]:
    alerts = NotificationRepository(db).get_all(
        organization_id,
        category=category,
        severity=severity,
        resource_id=case_id,
        unread_only=unread_only,
        skip=skip,
        limit=limit,
    )
    return [NotificationResponse.model_validate(a) for a in alerts]


@router.post(
    "/{notification_id}/read",
    response_model=NotificationResponse,
    summary="Acknowledge an operator alert",
    responses={
        401: {"description": "Unauthorized – invalid or missing API key"},
        404: {"description": "Notification not found"},
    },
)
async def mark_as_read(
    notification_id: UUID,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
) -> NotificationResponse:
    alert = NotificationRepository(db).mark_as_read(notification_id, organization_id)
    if alert is None:
        raise NotFoundError(f"Notification {notification_id} not found")
    return NotificationResponse.model_validate(alert)
