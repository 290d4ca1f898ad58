"""Per-plan dunning policy lookup with defaulting."""

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.models.dunning_config import (
    DEFAULT_AUTO_CANCEL_DAYS,
    DEFAULT_GRACE_PERIOD_DAYS,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    DEFAULT_RETRY_INTERVALS,
    DEFAULT_SUSPENSION_DELAY_DAYS,
    DunningConfig,
)
from app.repositories.dunning_config_repository import DunningConfigRepository
from app.schemas.dunning_config import DunningConfigUpdate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DunningPolicy:
    """Immutable dunning policy, copied into each case at creation."""

    plan_name: str
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS
    max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS
    retry_intervals: tuple[int, ...] = DEFAULT_RETRY_INTERVALS
    suspension_delay_days: int = DEFAULT_SUSPENSION_DELAY_DAYS
    auto_cancel_days: int = DEFAULT_AUTO_CANCEL_DAYS
    send_email_notifications: bool = True
    send_sms_notifications: bool = False
    is_default: bool = False

    @classmethod
    def from_config(cls, config: DunningConfig) -> "DunningPolicy":
        return cls(
            plan_name=str(config.plan_name),
            grace_period_days=int(config.grace_period_days),
            max_retry_attempts=int(config.max_retry_attempts),
            retry_intervals=tuple(int(day) for day in config.retry_intervals),
            suspension_delay_days=int(config.suspension_delay_days),
            auto_cancel_days=int(config.auto_cancel_days),
            send_email_notifications=bool(config.send_email_notifications),
            send_sms_notifications=bool(config.send_sms_notifications),
        )

    def snapshot(self) -> dict[str, object]:
        """Column values to copy onto a new DunningCase."""
        return {
            "plan_name": self.plan_name,
            "grace_period_days": self.grace_period_days,
            "max_retry_attempts": self.max_retry_attempts,
            "retry_intervals": list(self.retry_intervals),
            "suspension_delay_days": self.suspension_delay_days,
            "auto_cancel_days": self.auto_cancel_days,
            "send_email_notifications": self.send_email_notifications,
            "send_sms_notifications": self.send_sms_notifications,
        }


class DunningConfigRegistry:
    """Read-mostly registry of dunning policies keyed by plan name."""

    def __init__(self, db: Session):
        self.db = db
        self.repo = DunningConfigRepository(db)

    def get_policy(self, plan_name: str) -> DunningPolicy:
        """Return the plan's policy, or the defaults when none is configured."""
        config = self.repo.get_by_plan(plan_name)
        if config is None:
            logger.debug("No dunning config for plan %s, using defaults", plan_name)
            return DunningPolicy(plan_name=plan_name, is_default=True)
        return DunningPolicy.from_config(config)

    def list_configs(self, skip: int = 0, limit: int = 100) -> list[DunningConfig]:
        return self.repo.get_all(skip=skip, limit=limit)

    def upsert(self, plan_name: str, data: DunningConfigUpdate) -> DunningConfig:
        """Create or replace a plan's policy.

        Only cases created afterwards see the change; open cases keep the
        snapshot taken when they were opened.
        """
        config = self.repo.upsert(plan_name, data.model_dump())
        logger.info(
            "Dunning config for plan %s updated: grace=%sd attempts=%s intervals=%s",
            plan_name,
            config.grace_period_days,
            config.max_retry_attempts,
            config.retry_intervals,
        )
        return config
