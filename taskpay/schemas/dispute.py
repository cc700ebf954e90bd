"""Pydantic v2 schemas for disputes."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator

from taskpay.schemas.payment import PaymentResponse
from taskpay.services.disputes import DisputeOutcome


class ResolveDisputeRequest(BaseModel):
    outcome: DisputeOutcome


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dispute_id: uuid.UUID
    booking_id: uuid.UUID
    raised_by: uuid.UUID | None
    reason: str | None
    status: str
    resolution: str | None
    created_at: datetime
    resolved_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class ResolveDisputeResponse(BaseModel):
    dispute: DisputeResponse
    payment: PaymentResponse | None
