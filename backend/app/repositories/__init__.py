from app.repositories.account_action_repository import AccountActionRepository
from app.repositories.api_key_repository import ApiKeyRepository
from app.repositories.dunning_case_repository import DunningCaseRepository
from app.repositories.dunning_communication_repository import DunningCommunicationRepository
from app.repositories.dunning_config_repository import DunningConfigRepository
from app.repositories.notification_repository import NotificationRepository
from app.repositories.organization_repository import OrganizationRepository
from app.repositories.processed_event_repository import ProcessedEventRepository
from app.repositories.retry_attempt_repository import RetryAttemptRepository
from app.repositories.subscription_repository import SubscriptionRepository

__all__ = [
    "AccountActionRepository",
    "ApiKeyRepository",
    "DunningCaseRepository",
    "DunningCommunicationRepository",
    "DunningConfigRepository",
    "NotificationRepository",
    "OrganizationRepository",
    "ProcessedEventRepository",
    "RetryAttemptRepository",
    "SubscriptionRepository",
]
