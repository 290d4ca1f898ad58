from typing import Any

from sqlalchemy.orm import Session

from app.models.dunning_config import DunningConfig


class DunningConfigRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_plan(self, plan_name: str) -> DunningConfig | None:
        return self.db.query(DunningConfig).filter(DunningConfig.plan_name == plan_name).first()

    def get_all(self, skip: int = 0, limit: int = 100) -> list[DunningConfig]:
        return (
            self.db.query(DunningConfig)
            .order_by(DunningConfig.plan_name.asc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def upsert(self, plan_name: str, values: dict[str, Any]) -> DunningConfig:
        config = self.get_by_plan(plan_name)
        if config is None:
            config = DunningConfig(plan_name=plan_name, **values)
            self.db.add(config)
        else:
            for key, value in values.items():
                setattr(config, key, value)
        self.db.commit()
        self.db.refresh(config)
        return config
