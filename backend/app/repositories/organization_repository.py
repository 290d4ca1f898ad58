from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.organization import Organization


class OrganizationRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, org_id: UUID) -> Organization | None:
        return self.db.query(Organization).filter(Organization.id == org_id).first()

    def set_access_status(self, org_id: UUID, access_status: str, now: datetime) -> bool:
        """Set the organization's access status. Idempotent; False if unknown org."""
        org = self.get_by_id(org_id)
        if not org:
            return False
        if org.access_status != access_status:
            org.access_status = access_status  # type: ignore[assignment]
            org.access_changed_at = now  # type: ignore[assignment]
            self.db.commit()
            self.db.refresh(org)
        return True
