"""Open a processor charge for a booking and record the held payment."""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.config import settings
from taskpay.errors import ConflictError, Forbidden, ValidationFailed
from taskpay.models.payment import EscrowStatus, LedgerAction, Payment, PaymentStatus
from taskpay.services import ledger, marketplace, payment_gateway
from taskpay.services.fees import FeeBreakdown, calculate_fees

logger = logging.getLogger(__name__)


@dataclass
class PaymentIntentCreated:
    payment: Payment
    client_secret: str | None
    fees: FeeBreakdown


async def create_payment_intent(
    db: AsyncSession,
    payer_id: uuid.UUID,
    amount: Decimal,
    booking_id: uuid.UUID,
    task_id: uuid.UUID,
    payee_id: uuid.UUID,
) -> PaymentIntentCreated:
    """Create a PaymentIntent for ``amount`` plus fee and tax and hold it in escrow.

    Nothing is written if the processor call fails.
    """
    fees = calculate_fees(amount)

    task = await marketplace.get_task(db, task_id)
    booking = await marketplace.get_booking(db, booking_id)
    if booking.task_id != task.task_id:
        raise ValidationFailed("Booking does not belong to this task")
    if task.task_giver_id != payer_id:
        raise Forbidden("Only the task requester can pay for this booking")
    if booking.task_doer_id != payee_id:
        raise ValidationFailed("Payee does not match the booked tasker")
    if payer_id == payee_id:
        raise ValidationFailed("Cannot pay yourself")

    if await ledger.find_by_booking(db, booking_id) is not None:
        raise ConflictError("A payment already exists for this booking")

    payer = await marketplace.get_profile(db, payer_id)
    customer_id = await payment_gateway.get_or_create_customer(
        payer.email, str(payer_id), payer.stripe_customer_id,
    )
    if payer.stripe_customer_id != customer_id:
        payer.stripe_customer_id = customer_id

    intent = await payment_gateway.create_payment_intent(
        amount_cents=fees.total_charge_cents,
        currency=settings.currency,
        customer_id=customer_id,
        metadata={
            "booking_id": str(booking_id),
            "task_id": str(task_id),
            "payer_id": str(payer_id),
            "payee_id": str(payee_id),
            "task_amount": str(fees.task_amount),
            "platform_fee": str(fees.platform_fee),
            "tax_amount": str(fees.tax),
            "payout_amount": str(fees.payout_amount),
        },
        idempotency_key=f"intent:{booking_id}",
    )

    payment = Payment(
        payment_id=uuid.uuid4(),
        booking_id=booking_id,
        task_id=task_id,
        payer_id=payer_id,
        payee_id=payee_id,
        task_amount=fees.task_amount,
        amount=fees.total_charge,
        platform_fee=fees.platform_fee,
        tax_amount=fees.tax,
        payout_amount=fees.payout_amount,
        currency=settings.currency,
        status=PaymentStatus.PENDING,
        escrow_status=EscrowStatus.HELD,
        external_charge_ref=intent.id,
    )
    db.add(payment)
    await ledger.log_audit(
        db, payment.payment_id, LedgerAction.CREATED, fees.total_charge, payer_id,
        {"external_charge_ref": intent.id, **fees.to_dict()},
    )
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("A payment already exists for this booking")

    logger.info(
        "Payment %s created for booking %s: charge %s, total %s",
        payment.payment_id, booking_id, intent.id, fees.total_charge,
    )
    return PaymentIntentCreated(payment=payment, client_secret=intent.client_secret, fees=fees)
