"""Release escrowed funds to the performer.

Release is two steps with a commit in between:

1. Claim ``held → released`` with a single conditional UPDATE and commit. Only
   the caller that wins the claim continues; everyone else sees the row as
   already released (idempotent success) or as refunded (conflict).
2. Transfer ``payout_amount`` to the performer's connected account. The
   outcome is recorded in ``disbursement_status`` and never rolls back the
   release; failed or unknown transfers are retried by reconciliation with the
   same idempotency key.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.errors import (
    ConflictError,
    DisputeOpen,
    ExternalServiceError,
    Forbidden,
    PaymentNotReady,
    TransferStatusUnknown,
)
from taskpay.models.payment import (
    DisbursementStatus,
    EscrowStatus,
    LedgerAction,
    Payment,
    PaymentStatus,
    ReleaseType,
)
from taskpay.models.payout_account import PayoutAccount, PayoutAccountStatus
from taskpay.services import dispute_gate, ledger, marketplace, notifications, payment_gateway
from taskpay.services.fees import to_cents

logger = logging.getLogger(__name__)


@dataclass
class ReleaseResult:
    payment: Payment
    already_released: bool = False

    @property
    def transferred(self) -> bool:
        state = self.payment.release_state
        return state is not None and state.transferred

    @property
    def transfer_ref(self) -> str | None:
        return self.payment.transfer_ref


async def get_active_payout_account(db: AsyncSession, user_id: uuid.UUID) -> PayoutAccount | None:
    result = await db.execute(
        select(PayoutAccount).where(
            PayoutAccount.user_id == user_id,
            PayoutAccount.account_status == PayoutAccountStatus.ACTIVE,
        )
    )
    return result.scalar_one_or_none()


async def disburse_release(db: AsyncSession, payment: Payment, now: datetime | None = None) -> bool:
    """Transfer the payout for a released payment this caller owns.

    Returns True if the transfer succeeded. Always commits the outcome.
    """
    now = now or datetime.now(UTC)
    payment_id = payment.payment_id

    account = await get_active_payout_account(db, payment.payee_id)
    if account is None:
        await ledger.record_disbursement(
            db, payment_id, DisbursementStatus.AWAITING_ACCOUNT,
            last_disbursement_error="Payee has no active payout account",
        )
        await db.commit()
        logger.warning("Payment %s released; payee %s has no active payout account", payment_id, payment.payee_id)
        return False

    try:
        transfer = await payment_gateway.create_transfer(
            amount_cents=to_cents(payment.payout_amount),
            currency=payment.currency,
            destination=account.stripe_account_id,
            metadata={
                "payment_id": str(payment_id),
                "booking_id": str(payment.booking_id),
                "task_id": str(payment.task_id),
            },
            idempotency_key=f"transfer:{payment_id}",
        )
    except TransferStatusUnknown as exc:
        await _record_failure(db, payment, DisbursementStatus.UNKNOWN, exc.detail)
        return False
    except ExternalServiceError as exc:
        await _record_failure(db, payment, DisbursementStatus.FAILED, exc.detail)
        return False

    await ledger.record_disbursement(
        db, payment_id, DisbursementStatus.COMPLETED,
        transfer_ref=transfer.id,
        payout_at=now,
        last_disbursement_error=None,
    )
    await ledger.log_audit(
        db, payment_id, LedgerAction.DISBURSED, payment.payout_amount, None,
        {"transfer_ref": transfer.id, "destination": account.stripe_account_id},
    )
    await db.commit()
    logger.info("Payment %s: transferred %s to %s (%s)", payment_id, payment.payout_amount, account.stripe_account_id, transfer.id)
    return True


async def _record_failure(
    db: AsyncSession, payment: Payment, status: DisbursementStatus, error: str,
) -> None:
    await ledger.record_disbursement(db, payment.payment_id, status, last_disbursement_error=error)
    await ledger.log_audit(
        db, payment.payment_id, LedgerAction.DISBURSEMENT_FAILED, payment.payout_amount, None,
        {"disbursement_status": status.value, "error": error},
    )
    await db.commit()
    logger.error("Payment %s: disbursement %s: %s", payment.payment_id, status.value, error)


async def release_payment(
    db: AsyncSession,
    payment_id: uuid.UUID,
    release_type: ReleaseType,
    actor_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> ReleaseResult:
    """Release a confirmed payment to the performer exactly once."""
    now = now or datetime.now(UTC)
    payment = await ledger.get_payment(db, payment_id)

    if payment.escrow_status == EscrowStatus.RELEASED:
        return ReleaseResult(payment=payment, already_released=True)
    if payment.escrow_status == EscrowStatus.REFUNDED:
        raise ConflictError("Payment has already been refunded")
    if payment.escrow_status == EscrowStatus.DISPUTED and release_type != ReleaseType.DISPUTE_RESOLUTION:
        raise DisputeOpen("Payment is on dispute hold")
    if payment.status != PaymentStatus.COMPLETED:
        raise PaymentNotReady("Payment has not been confirmed")

    await dispute_gate.assert_releasable(db, payment.booking_id)

    if release_type == ReleaseType.DISPUTE_RESOLUTION:
        from_statuses = (EscrowStatus.HELD, EscrowStatus.DISPUTED)
    else:
        from_statuses = (EscrowStatus.HELD,)
    values = {
        "released_at": now,
        "release_type": release_type,
        "disbursement_status": DisbursementStatus.PENDING,
        "disbursement_attempts": 1,
    }
    if release_type == ReleaseType.AUTO_72HR:
        values["auto_release_triggered"] = True

    won = await ledger.claim_transition(db, payment_id, from_statuses, EscrowStatus.RELEASED, **values)
    if not won:
        current = await ledger.get_payment(db, payment_id)
        if current.escrow_status == EscrowStatus.RELEASED:
            return ReleaseResult(payment=current, already_released=True)
        raise ConflictError(f"Payment is {current.escrow_status.value}")

    await marketplace.mark_completed(db, payment.task_id, payment.booking_id)
    await ledger.log_audit(
        db, payment_id, LedgerAction.RELEASED, payment.payout_amount, actor_id,
        {
            "release_type": release_type.value,
            "platform_fee": str(payment.platform_fee),
            "tax_amount": str(payment.tax_amount),
            "platform_revenue": str(payment.platform_revenue),
        },
    )
    await db.commit()
    logger.info("Payment %s released (%s)", payment_id, release_type.value)

    payment = await ledger.get_payment(db, payment_id)
    try:
        transferred = await disburse_release(db, payment, now)
    except Exception:
        logger.exception("Payment %s: transfer crashed after release", payment_id)
        await ledger.record_disbursement_crash(db, payment_id, "transfer crashed")
        transferred = False

    payment = await ledger.get_payment(db, payment_id)
    await notifications.notify_payment_released(db, payment, transferred)
    await db.commit()
    return ReleaseResult(payment=payment)


async def release_by_caller(
    db: AsyncSession,
    payment_id: uuid.UUID,
    caller_id: uuid.UUID,
    now: datetime | None = None,
) -> ReleaseResult:
    """Manual release, allowed for the payer or an admin."""
    payment = await ledger.get_payment(db, payment_id)
    if payment.payer_id != caller_id and not await marketplace.is_admin(db, caller_id):
        raise Forbidden("Only the payer or an admin can release this payment")
    return await release_payment(db, payment_id, ReleaseType.MANUAL, actor_id=caller_id, now=now)
