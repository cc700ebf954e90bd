"""Payment and escrow endpoints."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.auth.middleware import AuthenticatedUser, get_current_user
from taskpay.auth.rate_limit import check_rate_limit
from taskpay.database import get_db
from taskpay.schemas.payment import (
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    CreatePaymentIntentRequest,
    PaymentIntentResponse,
    PaymentResponse,
    PaymentStatusResponse,
    ReleaseResponse,
    RefundResponse,
)
from taskpay.services import confirmation, payment_intent, payment_status, refund, release

router = APIRouter(tags=["payments"])


@router.post(
    "/payments/intents",
    response_model=PaymentIntentResponse,
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def create_payment_intent(
    data: CreatePaymentIntentRequest,
    auth: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> PaymentIntentResponse:
    """Requester opens a charge for a booking. Funds are held in escrow once confirmed."""
    created = await payment_intent.create_payment_intent(
        db, auth.user_id, data.amount, data.booking_id, data.task_id, data.payee_id,
    )
    return PaymentIntentResponse(
        client_secret=created.client_secret,
        external_charge_ref=created.payment.external_charge_ref,
        payment_id=created.payment.payment_id,
        fees=created.fees.to_dict(),
    )


@router.post(
    "/payments/confirm",
    response_model=ConfirmPaymentResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def confirm_payment(
    data: ConfirmPaymentRequest,
    auth: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> ConfirmPaymentResponse:
    """Payer confirms the charge succeeded; starts the auto-release clock."""
    result = await confirmation.confirm_payment(
        db, auth.user_id, data.external_charge_ref, data.booking_id,
    )
    return ConfirmPaymentResponse(
        success=True,
        already_confirmed=result.already_confirmed,
        payment=PaymentResponse.model_validate(result.payment),
    )


@router.post(
    "/payments/{payment_id}/release",
    response_model=ReleaseResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def release_payment(
    payment_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> ReleaseResponse:
    """Payer (or an admin) releases escrowed funds to the tasker."""
    result = await release.release_by_caller(db, payment_id, auth.user_id)
    payment = result.payment
    return ReleaseResponse(
        success=True,
        already_released=result.already_released,
        transferred=result.transferred,
        transfer_ref=result.transfer_ref,
        disbursement_status=payment.disbursement_status.value if payment.disbursement_status else None,
        payment=PaymentResponse.model_validate(payment),
    )


@router.get(
    "/payments/by-booking/{booking_id}",
    response_model=PaymentStatusResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def get_payment_status(
    booking_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> PaymentStatusResponse:
    """Escrow status for a booking, including time left before auto-release."""
    status = await payment_status.get_payment_status(db, booking_id, auth.user_id)
    return PaymentStatusResponse(**status)


@router.post(
    "/tasks/{task_id}/refund",
    response_model=RefundResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def refund_deposit(
    task_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> RefundResponse:
    """Requester cancels the task and gets the held deposit back (24h+ before the task)."""
    result = await refund.refund_deposit(db, auth.user_id, task_id)
    payment = result.payment
    return RefundResponse(
        success=True,
        refund_ref=result.refund_ref,
        disbursement_status=payment.disbursement_status.value if payment.disbursement_status else None,
        payment=PaymentResponse.model_validate(payment),
    )
