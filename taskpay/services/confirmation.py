"""Payment confirmation: verify the charge with the processor and start the escrow clock."""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.config import settings
from taskpay.errors import (
    ConflictError,
    Forbidden,
    NotFound,
    PaymentFailed,
    PaymentNotReady,
    ValidationFailed,
)
from taskpay.models.payment import LedgerAction, Payment, PaymentStatus
from taskpay.services import ledger, marketplace, notifications, payment_gateway
from taskpay.services.fees import to_cents

logger = logging.getLogger(__name__)


@dataclass
class ConfirmationResult:
    payment: Payment
    already_confirmed: bool = False


async def mark_charge_succeeded(
    db: AsyncSession,
    payment: Payment,
    actor_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> ConfirmationResult:
    """Move the charge pending → completed and schedule auto-release.

    Safe to call more than once and from several sources (API, webhook). A charge
    that completes after its payment already left escrow (a refund whose cancel
    did not land) is only recorded; the booking is not reopened.
    """
    now = now or datetime.now(UTC)
    won = await ledger.claim_charge_status(
        db, payment.payment_id, PaymentStatus.PENDING, PaymentStatus.COMPLETED, paid_at=now,
    )
    if not won:
        current = await ledger.get_payment(db, payment.payment_id)
        if current.status == PaymentStatus.COMPLETED:
            return ConfirmationResult(payment=current, already_confirmed=True)
        raise PaymentFailed(f"Payment is {current.status.value}")

    await ledger.log_audit(
        db, payment.payment_id, LedgerAction.CONFIRMED, payment.amount, actor_id,
        {"external_charge_ref": payment.external_charge_ref},
    )
    held = await ledger.schedule_auto_release(
        db, payment.payment_id, now + timedelta(hours=settings.auto_release_hours),
    )
    if not held:
        await db.commit()
        current = await ledger.get_payment(db, payment.payment_id)
        logger.warning(
            "Payment %s: charge completed while escrow is %s; not scheduling release",
            payment.payment_id, current.escrow_status.value,
        )
        return ConfirmationResult(payment=current)

    await marketplace.mark_in_progress(db, payment.task_id, payment.booking_id)
    payment = await ledger.get_payment(db, payment.payment_id)
    await notifications.notify_payment_confirmed(db, payment)
    await notifications.notify_payment_held(db, payment)
    await db.commit()

    logger.info(
        "Payment %s confirmed; auto-release at %s", payment.payment_id, payment.auto_release_at,
    )
    return ConfirmationResult(payment=payment)


async def mark_charge_failed(db: AsyncSession, payment: Payment, reason: str) -> None:
    won = await ledger.claim_charge_status(
        db, payment.payment_id, PaymentStatus.PENDING, PaymentStatus.FAILED,
    )
    if won:
        await db.commit()
        logger.warning("Payment %s charge failed: %s", payment.payment_id, reason)


async def confirm_payment(
    db: AsyncSession,
    caller_id: uuid.UUID,
    external_charge_ref: str,
    booking_id: uuid.UUID,
    now: datetime | None = None,
) -> ConfirmationResult:
    """Confirm a payment after the client completed the charge.

    Repeated calls on a completed payment return the stored result and do not
    contact the processor.
    """
    payment = await ledger.find_by_charge_ref(db, external_charge_ref)
    if payment is None:
        raise NotFound("Payment not found")
    if payment.payer_id != caller_id:
        raise Forbidden("Only the payer can confirm this payment")
    if payment.booking_id != booking_id:
        raise ValidationFailed("Booking does not match this payment")

    if payment.status == PaymentStatus.COMPLETED:
        return ConfirmationResult(payment=payment, already_confirmed=True)
    if payment.status == PaymentStatus.FAILED:
        raise PaymentFailed("Payment has failed")

    intent = await payment_gateway.retrieve_payment_intent(external_charge_ref)
    if intent.status == "succeeded":
        if intent.amount_cents != to_cents(payment.amount):
            logger.error(
                "Payment %s: charged %d cents, expected %d",
                payment.payment_id, intent.amount_cents, to_cents(payment.amount),
            )
            raise ConflictError("Charged amount does not match the payment")
        return await mark_charge_succeeded(db, payment, caller_id, now)
    if intent.status == "canceled":
        await mark_charge_failed(db, payment, "payment intent canceled")
        raise PaymentFailed("Payment was canceled")
    raise PaymentNotReady(f"Payment not completed (status: {intent.status})")
