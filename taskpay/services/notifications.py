"""In-app notifications for escrow events.

Rows are written to the ``notifications`` table inside the caller's
transaction; rendering and delivery are handled by the client apps.
"""

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.models.notification import Notification
from taskpay.models.payment import Payment

logger = logging.getLogger(__name__)

PAYMENT_HELD = "payment.held"
PAYMENT_CONFIRMED = "payment.confirmed"
PAYMENT_RELEASED = "payment.released"
PAYMENT_SENT = "payment.sent"
PAYMENT_REFUNDED = "payment.refunded"
PAYMENT_DISPUTED = "payment.disputed"

EVENT_TYPES = frozenset({
    PAYMENT_HELD,
    PAYMENT_CONFIRMED,
    PAYMENT_RELEASED,
    PAYMENT_SENT,
    PAYMENT_REFUNDED,
    PAYMENT_DISPUTED,
})


async def emit_notification(
    db: AsyncSession,
    user_id: uuid.UUID,
    event_type: str,
    title: str,
    message: str,
    link: str | None = None,
    payload: dict | None = None,
) -> Notification:
    """Add a notification row. The caller commits."""
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown notification event type: {event_type}")
    notification = Notification(
        notification_id=uuid.uuid4(),
        user_id=user_id,
        event_type=event_type,
        title=title,
        message=message,
        link=link,
        payload=payload or {},
    )
    db.add(notification)
    logger.info("Queued %s notification for user %s", event_type, user_id)
    return notification


def _payment_payload(payment: Payment, **extra) -> dict:
    return {
        "payment_id": str(payment.payment_id),
        "booking_id": str(payment.booking_id),
        "task_id": str(payment.task_id),
        **extra,
    }


async def notify_payment_held(db: AsyncSession, payment: Payment) -> None:
    await emit_notification(
        db, payment.payee_id, PAYMENT_HELD,
        "Payment secured",
        f"${payment.payout_amount} is held in escrow for your booking.",
        link=f"/bookings/{payment.booking_id}",
        payload=_payment_payload(payment, payout_amount=str(payment.payout_amount)),
    )


async def notify_payment_confirmed(db: AsyncSession, payment: Payment) -> None:
    await emit_notification(
        db, payment.payer_id, PAYMENT_CONFIRMED,
        "Payment confirmed",
        f"Your payment of ${payment.amount} is held in escrow until the task is done.",
        link=f"/bookings/{payment.booking_id}",
        payload=_payment_payload(payment, amount=str(payment.amount)),
    )


async def notify_payment_released(db: AsyncSession, payment: Payment, transferred: bool) -> None:
    """Tell the performer funds were released and the requester they were sent."""
    await emit_notification(
        db, payment.payee_id, PAYMENT_RELEASED,
        "Payment released",
        f"${payment.payout_amount} has been released to you."
        if transferred
        else f"${payment.payout_amount} has been released. Connect a payout account to receive it.",
        link=f"/bookings/{payment.booking_id}",
        payload=_payment_payload(
            payment,
            payout_amount=str(payment.payout_amount),
            transferred=transferred,
            release_type=payment.release_type.value if payment.release_type else None,
        ),
    )
    await emit_notification(
        db, payment.payer_id, PAYMENT_SENT,
        "Payment sent to tasker",
        "Your payment for this task has been sent to the tasker.",
        link=f"/bookings/{payment.booking_id}",
        payload=_payment_payload(payment, amount=str(payment.amount)),
    )


async def notify_payment_refunded(db: AsyncSession, payment: Payment) -> None:
    await emit_notification(
        db, payment.payer_id, PAYMENT_REFUNDED,
        "Deposit refunded",
        f"Your deposit of ${payment.amount} is being refunded.",
        link=f"/tasks/{payment.task_id}",
        payload=_payment_payload(payment, amount=str(payment.amount)),
    )


async def notify_payment_disputed(db: AsyncSession, payment: Payment, reason: str | None) -> None:
    for user_id in (payment.payer_id, payment.payee_id):
        await emit_notification(
            db, user_id, PAYMENT_DISPUTED,
            "Payment on hold",
            "This payment is on hold while a dispute is reviewed.",
            link=f"/bookings/{payment.booking_id}",
            payload=_payment_payload(payment, reason=reason),
        )
