"""Dunning case API endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app.core.auth import get_current_organization, is_admin_request, require_admin
from app.core.config import settings
from app.core.database import get_db
from app.core.errors import AuthenticationError, NotFoundError, ValidationError
from app.models.dunning_case import DunningCase, DunningCaseStatus
from app.models.dunning_communication import CommunicationType
from app.repositories.dunning_case_repository import DunningCaseRepository
from app.repositories.dunning_communication_repository import DunningCommunicationRepository
from app.repositories.organization_repository import OrganizationRepository
from app.repositories.retry_attempt_repository import RetryAttemptRepository
from app.schemas.dunning_case import (
    AccountActionResponse,
    DunningCaseCreate,
    DunningCaseCreateResponse,
    DunningCaseDetailResponse,
    DunningCaseResponse,
    ProcessRetryResponse,
    QueueNotificationRequest,
    QueueNotificationResponse,
    RecoverCaseRequest,
    RecoverCaseResponse,
)
from app.schemas.dunning_communication import (
    CommunicationResponse,
    DeliveryStatusResponse,
    DeliveryStatusUpdate,
)
from app.schemas.dunning_dashboard import DunningDashboardResponse
from app.schemas.dunning_webhook import SweepEnqueuedResponse
from app.schemas.retry_attempt import RetryAttemptResponse
from app.services.dunning_dashboard_service import DunningDashboardService
from app.services.dunning_lifecycle import DunningLifecycleService
from app.services.notifier import SIGNATURE_HEADER
from app.services.signatures import verify_hmac_signature
from app.tasks import SWEEP_TASKS, enqueue_task

router = APIRouter()


def get_lifecycle_service(db: Session = Depends(get_db)) -> DunningLifecycleService:
    return DunningLifecycleService(db)


def _get_case_or_404(db: Session, case_id: UUID, organization_id: UUID | None) -> DunningCase:
    dunning_case = DunningCaseRepository(db).get_by_id(case_id, organization_id)
    if not dunning_case:
        raise NotFoundError(f"Dunning case {case_id} not found")
    return dunning_case


def _case_scope(request: Request, organization_id: UUID) -> UUID | None:
    """Admins see every organization's cases; everyone else only their own."""
    return None if is_admin_request(request) else organization_id


@router.get(
    "/dashboard",
    response_model=DunningDashboardResponse,
    summary="Dunning summary",
    responses={401: {"description": "Unauthorized"}},
)
async def get_dashboard(
    request: Request,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
) -> DunningDashboardResponse:
    """Case counts by state, outstanding amount, recovery rate and average recovery time."""
    return DunningDashboardService(db).get_summary(_case_scope(request, organization_id))


@router.get(
    "/cases",
    response_model=list[DunningCaseResponse],
    summary="List dunning cases",
    responses={401: {"description": "Unauthorized"}},
)
async def list_cases(
    request: Request,
    status: DunningCaseStatus | None = None,
    organization: UUID | None = Query(default=None, alias="organization_id"),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
) -> list[DunningCase]:
    """List cases newest first. Admins may filter by any organization."""
    scope = _case_scope(request, organization_id)
    if scope is None and organization is not None:
        scope = organization
    return DunningCaseRepository(db).get_all(
        organization_id=scope,
        status=status.value if status else None,
        skip=skip,
        limit=limit,
    )


@router.post(
    "/cases",
    response_model=DunningCaseCreateResponse,
    status_code=201,
    summary="Open dunning case",
    responses={
        401: {"description": "Unauthorized"},
        422: {"description": "Validation error"},
    },
)
async def create_case(
    data: DunningCaseCreate,
    organization_id: UUID = Depends(get_current_organization),
    lifecycle: DunningLifecycleService = Depends(get_lifecycle_service),
) -> DunningCaseCreateResponse:
    """Open a case for a failed payment, or return the one already open for the invoice."""
    if data.organization_id is not None and data.organization_id != organization_id:
        raise ValidationError("organization_id does not match the authenticated organization")
    dunning_case, created = lifecycle.create_case(data, organization_id=organization_id)
    return DunningCaseCreateResponse(
        case_id=dunning_case.id,  # type: ignore[arg-type]
        created=created,
        status=DunningCaseStatus(dunning_case.status),
    )


@router.get(
    "/cases/{case_id}",
    response_model=DunningCaseDetailResponse,
    summary="Get dunning case",
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "Dunning case not found"},
    },
)
async def get_case(
    case_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
) -> DunningCaseDetailResponse:
    """Case detail with its policy snapshot and the organization's contact."""
    dunning_case = _get_case_or_404(db, case_id, _case_scope(request, organization_id))
    response = DunningCaseDetailResponse.model_validate(dunning_case)
    org = OrganizationRepository(db).get_by_id(
        dunning_case.organization_id  # type: ignore[arg-type]
    )
    if org:
        response.organization_name = str(org.name)
        response.owner_email = org.owner_email  # type: ignore[assignment]
        response.owner_phone = org.owner_phone  # type: ignore[assignment]
    return response


@router.get(
    "/cases/{case_id}/retry_attempts",
    response_model=list[RetryAttemptResponse],
    summary="List retry attempts",
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "Dunning case not found"},
    },
)
async def list_retry_attempts(
    case_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
) -> list[RetryAttemptResponse]:
    _get_case_or_404(db, case_id, _case_scope(request, organization_id))
    attempts = RetryAttemptRepository(db).get_by_case(case_id)
    return [RetryAttemptResponse.model_validate(a) for a in attempts]


@router.get(
    "/cases/{case_id}/communications",
    response_model=list[CommunicationResponse],
    summary="List case communications",
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "Dunning case not found"},
    },
)
async def list_case_communications(
    case_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
) -> list[CommunicationResponse]:
    _get_case_or_404(db, case_id, _case_scope(request, organization_id))
    communications = DunningCommunicationRepository(db).get_by_case(case_id)
    return [CommunicationResponse.model_validate(c) for c in communications]


@router.get(
    "/communications",
    response_model=list[CommunicationResponse],
    summary="List communications",
    responses={401: {"description": "Unauthorized"}},
)
async def list_communications(
    request: Request,
    communication_type: CommunicationType | None = None,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_current_organization),
) -> list[CommunicationResponse]:
    """Communication history, newest first."""
    communications = DunningCommunicationRepository(db).get_all(
        organization_id=_case_scope(request, organization_id),
        communication_type=communication_type.value if communication_type else None,
        skip=skip,
        limit=limit,
    )
    return [CommunicationResponse.model_validate(c) for c in communications]


@router.post(
    "/cases/{case_id}/retry",
    response_model=ProcessRetryResponse,
    summary="Process retry",
    responses={
        401: {"description": "Admin access required"},
        404: {"description": "Dunning case not found"},
    },
)
async def process_retry(
    case_id: UUID,
    _admin: str = Depends(require_admin),
    lifecycle: DunningLifecycleService = Depends(get_lifecycle_service),
) -> ProcessRetryResponse:
    """Run the case's next charge attempt if it is due."""
    outcome = lifecycle.process_retry(case_id)
    return ProcessRetryResponse(processed=outcome.processed, new_state=outcome.new_state)


@router.post(
    "/cases/{case_id}/recover",
    response_model=RecoverCaseResponse,
    summary="Recover case",
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "Dunning case not found"},
    },
)
async def recover_case(
    case_id: UUID,
    request: Request,
    data: RecoverCaseRequest | None = None,
    organization_id: UUID = Depends(get_current_organization),
    lifecycle: DunningLifecycleService = Depends(get_lifecycle_service),
) -> RecoverCaseResponse:
    """Record that the outstanding payment has been collected."""
    recovered = lifecycle.recover_case(
        case_id,
        payment_intent_id=data.payment_intent_id if data else None,
        organization_id=_case_scope(request, organization_id),
    )
    return RecoverCaseResponse(recovered=recovered)


@router.post(
    "/cases/{case_id}/suspend_account",
    response_model=AccountActionResponse,
    summary="Suspend account",
    responses={
        401: {"description": "Admin access required"},
        404: {"description": "Dunning case not found"},
    },
)
async def suspend_account(
    case_id: UUID,
    db: Session = Depends(get_db),
    _admin: str = Depends(require_admin),
    lifecycle: DunningLifecycleService = Depends(get_lifecycle_service),
) -> AccountActionResponse:
    dunning_case = _get_case_or_404(db, case_id, None)
    account_action = lifecycle.suspend_account(
        dunning_case.organization_id,  # type: ignore[arg-type]
        case_id,
    )
    return AccountActionResponse.model_validate(account_action)


@router.post(
    "/cases/{case_id}/restore_account",
    response_model=AccountActionResponse,
    summary="Restore account",
    responses={
        401: {"description": "Admin access required"},
        404: {"description": "Dunning case not found"},
    },
)
async def restore_account(
    case_id: UUID,
    db: Session = Depends(get_db),
    _admin: str = Depends(require_admin),
    lifecycle: DunningLifecycleService = Depends(get_lifecycle_service),
) -> AccountActionResponse:
    dunning_case = _get_case_or_404(db, case_id, None)
    account_action = lifecycle.restore_account(
        dunning_case.organization_id,  # type: ignore[arg-type]
        case_id,
    )
    return AccountActionResponse.model_validate(account_action)


@router.post(
    "/cases/{case_id}/notifications",
    response_model=QueueNotificationResponse,
    status_code=201,
    summary="Queue notification",
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "Dunning case not found"},
    },
)
async def queue_notification(
    case_id: UUID,
    data: QueueNotificationRequest,
    request: Request,
    organization_id: UUID = Depends(get_current_organization),
    lifecycle: DunningLifecycleService = Depends(get_lifecycle_service),
) -> QueueNotificationResponse:
    notification_id = lifecycle.queue_notification(
        case_id,
        data.communication_type,
        organization_id=_case_scope(request, organization_id),
    )
    return QueueNotificationResponse(notification_id=notification_id)


@router.post(
    "/communications/{communication_id}/delivery",
    response_model=DeliveryStatusResponse,
    summary="Notifier delivery callback",
    responses={
        401: {"description": "Invalid signature"},
        404: {"description": "Communication not found"},
    },
)
async def delivery_callback(
    communication_id: UUID,
    request: Request,
    lifecycle: DunningLifecycleService = Depends(get_lifecycle_service),
) -> DeliveryStatusResponse:
    """Delivery status reported by the notifier, signed with the shared notifier secret."""
    payload = await request.body()
    if not verify_hmac_signature(
        payload, request.headers.get(SIGNATURE_HEADER), settings.NOTIFIER_SECRET
    ):
        raise AuthenticationError("Invalid notifier signature")
    try:
        update = DeliveryStatusUpdate.model_validate_json(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid delivery status payload: {exc}") from exc

    communication, applied = lifecycle.apply_delivery_status(communication_id, update)
    return DeliveryStatusResponse(
        communication_id=communication_id,
        status=communication.status,  # type: ignore[arg-type]
        applied=applied,
    )


@router.post(
    "/sweeps/{sweep}",
    response_model=SweepEnqueuedResponse,
    status_code=202,
    summary="Trigger sweep",
    responses={
        401: {"description": "Admin access required"},
        404: {"description": "Unknown sweep"},
    },
)
async def trigger_sweep(
    sweep: str,
    _admin: str = Depends(require_admin),
) -> SweepEnqueuedResponse:
    """Enqueue a sweep on the background worker and return immediately."""
    task_name = SWEEP_TASKS.get(sweep)
    if task_name is None:
        raise NotFoundError(f"Unknown sweep: {sweep}")
    job = await enqueue_task(task_name)
    return SweepEnqueuedResponse(sweep=sweep, job_id=job.job_id if job else None)
