"""Schemas for gateway webhooks and sweep triggers."""

from pydantic import BaseModel


class WebhookAck(BaseModel):
    status: str
    event_type: str | None = None
    case_id: str | None = None
    reason: str | None = None


class SweepEnqueuedResponse(BaseModel):
    sweep: str
    job_id: str | None = None
