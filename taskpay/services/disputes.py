"""Dispute intervention on escrowed payments.

Disputes themselves are raised and investigated elsewhere; this module puts a
payment on hold when the processor reports a chargeback and applies an admin's
resolution (release, refund or dismiss) to the ledger.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.errors import ConflictError, DisputeOpen, EscrowError, Forbidden, NotFound, PaymentNotReady
from taskpay.models.dispute import BLOCKING_DISPUTE_STATUSES, Dispute, DisputeStatus
from taskpay.models.payment import EscrowStatus, LedgerAction, Payment, PaymentStatus, ReleaseType
from taskpay.services import dispute_gate, ledger, marketplace, notifications, refund, release

logger = logging.getLogger(__name__)


class DisputeOutcome(enum.Enum):
    RELEASE = "release"
    REFUND = "refund"
    DISMISS = "dismiss"


@dataclass
class DisputeResolution:
    dispute: Dispute
    payment: Payment | None


async def get_dispute(db: AsyncSession, dispute_id: uuid.UUID) -> Dispute:
    result = await db.execute(
        select(Dispute)
        .where(Dispute.dispute_id == dispute_id)
        .execution_options(populate_existing=True)
    )
    dispute = result.scalar_one_or_none()
    if dispute is None:
        raise NotFound("Dispute not found")
    return dispute


async def record_dispute_hold(
    db: AsyncSession,
    payment_id: uuid.UUID,
    reason: str | None = None,
    actor_id: uuid.UUID | None = None,
) -> Payment:
    """Move a held payment to ``disputed``. Holding twice is a no-op."""
    payment = await ledger.get_payment(db, payment_id)
    if payment.escrow_status == EscrowStatus.DISPUTED:
        return payment

    won = await ledger.claim_transition(
        db, payment_id, (EscrowStatus.HELD,), EscrowStatus.DISPUTED,
    )
    if not won:
        current = await ledger.get_payment(db, payment_id)
        if current.escrow_status == EscrowStatus.DISPUTED:
            return current
        raise ConflictError(f"Cannot hold a payment that is {current.escrow_status.value}")

    await ledger.log_audit(
        db, payment_id, LedgerAction.DISPUTED, payment.amount, actor_id, {"reason": reason},
    )
    await notifications.notify_payment_disputed(db, payment, reason)
    await db.commit()
    logger.warning("Payment %s placed on dispute hold: %s", payment_id, reason)
    return await ledger.get_payment(db, payment_id)


async def open_processor_dispute(
    db: AsyncSession, payment: Payment, reason: str | None,
) -> Dispute:
    """Record a chargeback reported by the processor as a dispute and hold the payment."""
    dispute = Dispute(
        dispute_id=uuid.uuid4(),
        booking_id=payment.booking_id,
        raised_by=None,
        reason=f"chargeback: {reason}" if reason else "chargeback",
        status=DisputeStatus.OPEN,
    )
    db.add(dispute)
    await db.commit()
    await record_dispute_hold(db, payment.payment_id, reason)
    return dispute


def _settles_payment(outcome: DisputeOutcome, payment: Payment, others_open: bool) -> bool:
    """Whether the outcome releases the payment to the performer.

    Dismissing the last dispute on a payment under dispute hold rules for the
    performer; the hold only ends through a release or a refund.
    """
    if outcome == DisputeOutcome.RELEASE:
        return True
    return (
        outcome == DisputeOutcome.DISMISS
        and payment.escrow_status == EscrowStatus.DISPUTED
        and not others_open
    )


def _check_outcome(outcome: DisputeOutcome, payment: Payment, others_open: bool) -> None:
    """Refuse an outcome the payment cannot take, before the dispute is closed."""
    if outcome == DisputeOutcome.REFUND:
        if payment.escrow_status not in (EscrowStatus.HELD, EscrowStatus.DISPUTED):
            raise ConflictError(f"Cannot refund a payment that is {payment.escrow_status.value}")
        return
    if not _settles_payment(outcome, payment, others_open):
        return
    if payment.escrow_status == EscrowStatus.REFUNDED:
        raise ConflictError("Payment has already been refunded")
    if payment.escrow_status == EscrowStatus.RELEASED:
        return
    if payment.status != PaymentStatus.COMPLETED:
        raise PaymentNotReady("Payment has not been confirmed")
    if others_open:
        raise DisputeOpen("Another dispute on this booking is still open")


async def _reopen(db: AsyncSession, dispute_id: uuid.UUID, previous: DisputeStatus) -> None:
    await db.rollback()
    await db.execute(
        update(Dispute)
        .where(Dispute.dispute_id == dispute_id, Dispute.status == DisputeStatus.RESOLVED)
        .values(status=previous, resolution=None, resolved_at=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.warning("Dispute %s reopened: its outcome could not be applied", dispute_id)


async def resolve_dispute(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    outcome: DisputeOutcome,
    admin_id: uuid.UUID,
    now: datetime | None = None,
) -> DisputeResolution:
    """Close a dispute and apply the outcome to the booking's payment.

    ``dismiss`` on a held payment only closes the dispute; the next auto-release
    sweep picks the payment up. On a payment under dispute hold it releases the
    payment once no other dispute blocks it. If the outcome still fails after the
    dispute was closed, the dispute is reopened so the resolution can be retried.
    """
    now = now or datetime.now(UTC)
    if not await marketplace.is_admin(db, admin_id):
        raise Forbidden("Only admins can resolve disputes")

    dispute = await get_dispute(db, dispute_id)
    previous = dispute.status
    if previous not in BLOCKING_DISPUTE_STATUSES:
        raise ConflictError("Dispute is already resolved")

    payment = await ledger.find_by_booking(db, dispute.booking_id)
    others_open = not await dispute_gate.is_releasable(db, dispute.booking_id, ignoring=dispute_id)
    if payment is not None:
        _check_outcome(outcome, payment, others_open)

    result = await db.execute(
        update(Dispute)
        .where(Dispute.dispute_id == dispute_id, Dispute.status == previous)
        .values(status=DisputeStatus.RESOLVED, resolution=outcome.value, resolved_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError("Dispute is already resolved")
    await db.commit()
    logger.info("Dispute %s resolved by %s: %s", dispute_id, admin_id, outcome.value)

    if payment is not None:
        payment_id = payment.payment_id
        try:
            if outcome == DisputeOutcome.REFUND:
                refunded = await refund.execute_refund(
                    db, payment, admin_id, (EscrowStatus.HELD, EscrowStatus.DISPUTED), now=now,
                )
                payment = refunded.payment
            elif _settles_payment(outcome, payment, others_open):
                released = await release.release_payment(
                    db, payment_id, ReleaseType.DISPUTE_RESOLUTION, actor_id=admin_id, now=now,
                )
                payment = released.payment
        except EscrowError:
            await _reopen(db, dispute_id, previous)
            raise

    dispute = await get_dispute(db, dispute_id)
    return DisputeResolution(dispute=dispute, payment=payment)
