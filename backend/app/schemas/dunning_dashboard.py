"""Dunning dashboard schemas."""

from decimal import Decimal

from pydantic import BaseModel, Field


class DunningDashboardResponse(BaseModel):
    """Recovery overview for one organization (or all, for admins)."""

    active_cases: int
    suspended_accounts: int
    total_outstanding: Decimal
    recovery_rate: float
    avg_recovery_days: float
    counts_by_state: dict[str, int] = Field(default_factory=dict)
