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
from app.schemas.dunning_config import DunningConfigResponse, DunningConfigUpdate
from app.schemas.dunning_dashboard import DunningDashboardResponse
from app.schemas.dunning_webhook import SweepEnqueuedResponse, WebhookAck
from app.schemas.notification import NotificationResponse
from app.schemas.retry_attempt import RetryAttemptResponse

__all__ = [
    "AccountActionResponse",
    "CommunicationResponse",
    "DeliveryStatusResponse",
    "DeliveryStatusUpdate",
    "DunningCaseCreate",
    "DunningCaseCreateResponse",
    "DunningCaseDetailResponse",
    "DunningCaseResponse",
    "DunningConfigResponse",
    "DunningConfigUpdate",
    "DunningDashboardResponse",
    "NotificationResponse",
    "ProcessRetryResponse",
    "QueueNotificationRequest",
    "QueueNotificationResponse",
    "RecoverCaseRequest",
    "RecoverCaseResponse",
    "RetryAttemptResponse",
    "SweepEnqueuedResponse",
    "WebhookAck",
]
