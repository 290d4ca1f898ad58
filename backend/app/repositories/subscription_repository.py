from sqlalchemy.orm import Session

from app.models.subscription import Subscription


class SubscriptionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_external_id(self, external_id: str) -> Subscription | None:
        return self.db.query(Subscription).filter(Subscription.external_id == external_id).first()
