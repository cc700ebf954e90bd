"""Pydantic v2 schemas for payments."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _enum_value(v: object) -> object:
    if hasattr(v, "value"):
        return v.value
    return v


class FeeBreakdownResponse(BaseModel):
    task_amount: Decimal
    platform_fee: Decimal
    tax: Decimal
    payout_amount: Decimal
    total_charge: Decimal
    platform_revenue: Decimal


class CreatePaymentIntentRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    booking_id: uuid.UUID
    task_id: uuid.UUID
    payee_id: uuid.UUID


class PaymentIntentResponse(BaseModel):
    client_secret: str | None
    external_charge_ref: str
    payment_id: uuid.UUID
    fees: FeeBreakdownResponse


class ConfirmPaymentRequest(BaseModel):
    external_charge_ref: str = Field(..., min_length=1, max_length=255)
    booking_id: uuid.UUID


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: uuid.UUID
    booking_id: uuid.UUID
    task_id: uuid.UUID
    payer_id: uuid.UUID
    payee_id: uuid.UUID
    task_amount: Decimal
    amount: Decimal
    platform_fee: Decimal
    tax_amount: Decimal
    payout_amount: Decimal
    currency: str
    status: str
    escrow_status: str
    external_charge_ref: str
    auto_release_at: datetime | None
    auto_release_triggered: bool
    release_type: str | None
    disbursement_status: str | None
    transfer_ref: str | None
    refund_ref: str | None
    paid_at: datetime | None
    released_at: datetime | None
    refunded_at: datetime | None
    payout_at: datetime | None
    created_at: datetime

    @field_validator("status", "escrow_status", "release_type", "disbursement_status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return _enum_value(v)


class ConfirmPaymentResponse(BaseModel):
    success: bool
    already_confirmed: bool
    payment: PaymentResponse


class ReleaseResponse(BaseModel):
    success: bool
    already_released: bool
    transferred: bool
    transfer_ref: str | None
    disbursement_status: str | None
    payment: PaymentResponse


class RefundResponse(BaseModel):
    success: bool
    refund_ref: str | None
    disbursement_status: str | None
    payment: PaymentResponse


class PaymentStatusResponse(BaseModel):
    payment_id: uuid.UUID
    escrow_status: str
    status: str
    amount: Decimal
    payout_amount: Decimal
    platform_fee: Decimal
    tax_amount: Decimal
    auto_release_at: datetime | None
    released_at: datetime | None
    hours_until_auto_release: float | None
    disbursement_status: str | None


class SweepResultResponse(BaseModel):
    payment_id: uuid.UUID
    outcome: str
    transferred: bool


class SweepResponse(BaseModel):
    processed: int
    released: int
    skipped: int
    errors: int
    results: list[SweepResultResponse]


class ReconciliationResponse(BaseModel):
    processed: int
    completed: int
    failed: int
    skipped: int
    results: list[dict]
