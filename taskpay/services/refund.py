"""Refund a held deposit to the requester.

The ledger moves ``held → refunded`` first (conditional UPDATE, committed),
then the processor refund is issued. A failed or unknown refund is recorded in
``disbursement_status`` for reconciliation; the ledger is never reversed.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.config import settings
from taskpay.errors import (
    ConflictError,
    ExternalServiceError,
    Forbidden,
    NotFound,
    RefundWindowClosed,
    TransferStatusUnknown,
)
from taskpay.models.payment import (
    DisbursementStatus,
    EscrowStatus,
    LedgerAction,
    Payment,
    PaymentStatus,
)
from taskpay.services import ledger, marketplace, notifications, payment_gateway

logger = logging.getLogger(__name__)


@dataclass
class RefundResult:
    payment: Payment

    @property
    def refund_ref(self) -> str | None:
        return self.payment.refund_ref

    @property
    def refunded(self) -> bool:
        return self.payment.disbursement_status == DisbursementStatus.COMPLETED


def hours_until(when: datetime, now: datetime) -> float:
    return (when - now).total_seconds() / 3600


async def disburse_refund(db: AsyncSession, payment: Payment) -> bool:
    """Return the charge to the payer for a refunded payment this caller owns.

    A captured charge is refunded; an uncaptured one is canceled and the charge
    marked failed. Returns True on success. Always commits the outcome.
    """
    payment_id = payment.payment_id
    try:
        captured = payment.status == PaymentStatus.COMPLETED
        if not captured:
            intent = await payment_gateway.retrieve_payment_intent(payment.external_charge_ref)
            captured = intent.status == "succeeded"
            if not captured and intent.status != "canceled":
                await payment_gateway.cancel_payment_intent(
                    payment.external_charge_ref, idempotency_key=f"cancel:{payment_id}",
                )

        refund_ref = None
        if captured:
            refund = await payment_gateway.create_refund(
                payment.external_charge_ref,
                idempotency_key=f"refund:{payment_id}",
                metadata={"payment_id": str(payment_id), "task_id": str(payment.task_id)},
            )
            refund_ref = refund.id
    except TransferStatusUnknown as exc:
        await _record_failure(db, payment, DisbursementStatus.UNKNOWN, exc.detail)
        return False
    except ExternalServiceError as exc:
        await _record_failure(db, payment, DisbursementStatus.FAILED, exc.detail)
        return False

    if not captured:
        await ledger.claim_charge_status(db, payment_id, PaymentStatus.PENDING, PaymentStatus.FAILED)
    await ledger.record_disbursement(
        db, payment_id, DisbursementStatus.COMPLETED,
        refund_ref=refund_ref,
        last_disbursement_error=None,
    )
    await ledger.log_audit(
        db, payment_id, LedgerAction.DISBURSED, payment.amount, None,
        {"refund_ref": refund_ref, "captured": captured},
    )
    await db.commit()
    logger.info("Payment %s: refund issued (%s)", payment_id, refund_ref or "intent canceled")
    return True


async def _record_failure(
    db: AsyncSession, payment: Payment, status: DisbursementStatus, error: str,
) -> None:
    await ledger.record_disbursement(db, payment.payment_id, status, last_disbursement_error=error)
    await ledger.log_audit(
        db, payment.payment_id, LedgerAction.DISBURSEMENT_FAILED, payment.amount, None,
        {"disbursement_status": status.value, "error": error},
    )
    await db.commit()
    logger.error("Payment %s: refund %s: %s", payment.payment_id, status.value, error)


async def execute_refund(
    db: AsyncSession,
    payment: Payment,
    actor_id: uuid.UUID | None,
    from_statuses: tuple[EscrowStatus, ...] = (EscrowStatus.HELD,),
    now: datetime | None = None,
) -> RefundResult:
    """Claim the refund on the ledger, then return the money."""
    now = now or datetime.now(UTC)
    payment_id = payment.payment_id

    won = await ledger.claim_transition(
        db, payment_id, from_statuses, EscrowStatus.REFUNDED,
        refunded_at=now,
        disbursement_status=DisbursementStatus.PENDING,
        disbursement_attempts=1,
    )
    if not won:
        current = await ledger.get_payment(db, payment_id)
        raise ConflictError(f"Payment is {current.escrow_status.value}")

    await marketplace.mark_cancelled(db, payment.task_id, payment.booking_id)
    await ledger.log_audit(db, payment_id, LedgerAction.REFUNDED, payment.amount, actor_id)
    await db.commit()
    logger.info("Payment %s refunded to payer %s", payment_id, payment.payer_id)

    payment = await ledger.get_payment(db, payment_id)
    try:
        await disburse_refund(db, payment)
    except Exception:
        logger.exception("Payment %s: refund crashed after the ledger claim", payment_id)
        await ledger.record_disbursement_crash(db, payment_id, "refund crashed")

    payment = await ledger.get_payment(db, payment_id)
    await notifications.notify_payment_refunded(db, payment)
    await db.commit()
    return RefundResult(payment=payment)


async def refund_deposit(
    db: AsyncSession,
    caller_id: uuid.UUID,
    task_id: uuid.UUID,
    now: datetime | None = None,
) -> RefundResult:
    """Requester cancels before the task and gets the held deposit back.

    Refunds close ``refund_cutoff_hours`` before the scheduled date; exactly
    at the cutoff is still allowed.
    """
    now = now or datetime.now(UTC)
    task = await marketplace.get_task(db, task_id)
    if task.task_giver_id != caller_id:
        raise Forbidden("You can only refund your own tasks")

    payment = await ledger.find_held_for_task(db, task_id)
    if payment is None:
        raise NotFound("No deposit to refund")

    if task.scheduled_date is not None:
        remaining = hours_until(task.scheduled_date, now)
        if remaining < settings.refund_cutoff_hours:
            raise RefundWindowClosed(
                f"Cancellations within {settings.refund_cutoff_hours} hours are not eligible for deposit refund"
            )

    return await execute_refund(db, payment, caller_id, now=now)
