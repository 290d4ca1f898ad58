"""Per-plan dunning policy endpoints (admin only)."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.auth import require_admin
from app.core.database import get_db
from app.schemas.dunning_config import DunningConfigResponse, DunningConfigUpdate
from app.services.dunning_config_registry import DunningConfigRegistry

router = APIRouter()


@router.get(
    "/",
    response_model=list[DunningConfigResponse],
    summary="List dunning configs",
    responses={401: {"description": "Admin access required"}},
)
async def list_dunning_configs(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
    _admin: str = Depends(require_admin),
) -> list[DunningConfigResponse]:
    configs = DunningConfigRegistry(db).list_configs(skip=skip, limit=limit)
    return [DunningConfigResponse.model_validate(c) for c in configs]


@router.get(
    "/{plan_name}",
    response_model=DunningConfigResponse,
    summary="Get dunning config",
    responses={401: {"description": "Admin access required"}},
)
async def get_dunning_config(
    plan_name: str,
    db: Session = Depends(get_db),
    _admin: str = Depends(require_admin),
) -> DunningConfigResponse:
    """The plan's policy, or the defaults (``is_default``) when none is stored."""
    registry = DunningConfigRegistry(db)
    config = registry.repo.get_by_plan(plan_name)
    if config is not None:
        return DunningConfigResponse.model_validate(config)
    policy = registry.get_policy(plan_name)
    return DunningConfigResponse(
        plan_name=policy.plan_name,
        grace_period_days=policy.grace_period_days,
        max_retry_attempts=policy.max_retry_attempts,
        retry_intervals=list(policy.retry_intervals),
        suspension_delay_days=policy.suspension_delay_days,
        auto_cancel_days=policy.auto_cancel_days,
        send_email_notifications=policy.send_email_notifications,
        send_sms_notifications=policy.send_sms_notifications,
        is_default=True,
    )


@router.put(
    "/{plan_name}",
    response_model=DunningConfigResponse,
    summary="Create or replace dunning config",
    responses={
        401: {"description": "Admin access required"},
        422: {"description": "Validation error"},
    },
)
async def upsert_dunning_config(
    plan_name: str,
    data: DunningConfigUpdate,
    db: Session = Depends(get_db),
    _admin: str = Depends(require_admin),
) -> DunningConfigResponse:
    """Store a plan's policy. Open cases keep the policy they were created with."""
    config = DunningConfigRegistry(db).upsert(plan_name, data)
    return DunningConfigResponse.model_validate(config)
