from app.models.account_action import AccountAction, AccountActionStatus, AccountActionType
from app.models.api_key import ApiKey
from app.models.dunning_case import DunningCase, DunningCaseStatus
from app.models.dunning_communication import (
    CommunicationStatus,
    CommunicationType,
    DeliveryMethod,
    DunningCommunication,
)
from app.models.dunning_config import DunningConfig
from app.models.notification import Notification
from app.models.organization import AccessStatus, Organization
from app.models.processed_webhook_event import ProcessedWebhookEvent
from app.models.retry_attempt import RetryAttempt, RetryAttemptStatus
from app.models.subscription import Subscription

__all__ = [
    "AccessStatus",
    "AccountAction",
    "AccountActionStatus",
    "AccountActionType",
    "ApiKey",
    "CommunicationStatus",
    "CommunicationType",
    "DeliveryMethod",
    "DunningCase",
    "DunningCaseStatus",
    "DunningCommunication",
    "DunningConfig",
    "Notification",
    "Organization",
    "ProcessedWebhookEvent",
    "RetryAttempt",
    "RetryAttemptStatus",
    "Subscription",
]
