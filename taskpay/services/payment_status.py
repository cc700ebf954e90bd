"""Read-side view of a booking's payment for its parties."""

import uuid
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.errors import Forbidden, NotFound
from taskpay.models.payment import EscrowStatus, Payment
from taskpay.services import ledger, marketplace


def hours_until_auto_release(payment: Payment, now: datetime) -> float | None:
    """Hours left before auto-release, floored at zero. None once out of escrow."""
    if payment.escrow_status != EscrowStatus.HELD or payment.auto_release_at is None:
        return None
    remaining = (payment.auto_release_at - now).total_seconds() / 3600
    return round(max(remaining, 0.0), 2)


async def get_payment_status(
    db: AsyncSession,
    booking_id: uuid.UUID,
    caller_id: uuid.UUID,
    now: datetime | None = None,
) -> dict:
    now = now or datetime.now(UTC)
    payment = await ledger.find_by_booking(db, booking_id)
    if payment is None:
        raise NotFound("No payment for this booking")
    if caller_id not in (payment.payer_id, payment.payee_id) and not await marketplace.is_admin(db, caller_id):
        raise Forbidden("Not a party to this payment")

    return {
        "payment_id": payment.payment_id,
        "escrow_status": payment.escrow_status.value,
        "status": payment.status.value,
        "amount": payment.amount,
        "payout_amount": payment.payout_amount,
        "platform_fee": payment.platform_fee,
        "tax_amount": payment.tax_amount,
        "auto_release_at": payment.auto_release_at,
        "released_at": payment.released_at,
        "hours_until_auto_release": hours_until_auto_release(payment, now),
        "disbursement_status": payment.disbursement_status.value if payment.disbursement_status else None,
    }
