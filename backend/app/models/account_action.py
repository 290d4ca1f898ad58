"""AccountAction model: durable queue of suspend/restore side effects."""

from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, func

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class AccountActionType(str, Enum):
    SUSPEND = "suspend"
    RESTORE = "restore"


class AccountActionStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SUPERSEDED = "superseded"


class AccountAction(Base):
    __tablename__ = "account_actions"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    organization_id = Column(
        UUIDType,
        ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    dunning_case_id = Column(
        UUIDType,
        ForeignKey("dunning_cases.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    action = Column(String(20), nullable=False)
    status = Column(
        String(20), nullable=False, default=AccountActionStatus.PENDING.value, index=True
    )
    retries = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=5)
    last_retried_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
