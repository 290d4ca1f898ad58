"""Read-only dunning summary for the dashboard endpoint."""

from uuid import UUID

from sqlalchemy.orm import Session

from app.models.dunning_case import OPEN_STATUSES, DunningCaseStatus
from app.repositories.dunning_case_repository import DunningCaseRepository
from app.schemas.dunning_dashboard import DunningDashboardResponse


class DunningDashboardService:
    def __init__(self, db: Session):
        self.db = db
        self.cases = DunningCaseRepository(db)

    def get_summary(self, organization_id: UUID | None = None) -> DunningDashboardResponse:
        """Summarize cases for one organization, or all when ``organization_id`` is None.

        Recovery rate is recovered / (recovered + cancelled) as a percentage,
        i.e. over cases whose outcome is settled.
        """
        counts = self.cases.count_by_status(organization_id)
        counts_by_state = {status.value: counts.get(status.value, 0) for status in DunningCaseStatus}

        recovered = counts_by_state[DunningCaseStatus.RECOVERED.value]
        cancelled = counts_by_state[DunningCaseStatus.CANCELLED.value]
        settled = recovered + cancelled
        recovery_rate = round(recovered / settled * 100, 2) if settled else 0.0

        durations = self.cases.recovery_durations_days(organization_id)
        avg_recovery_days = round(sum(durations) / len(durations), 2) if durations else 0.0

        return DunningDashboardResponse(
            active_cases=sum(counts_by_state[s] for s in OPEN_STATUSES),
            suspended_accounts=counts_by_state[DunningCaseStatus.SUSPENDED.value],
            total_outstanding=self.cases.sum_outstanding(organization_id),
            recovery_rate=recovery_rate,
            avg_recovery_days=avg_recovery_days,
            counts_by_state=counts_by_state,
        )
