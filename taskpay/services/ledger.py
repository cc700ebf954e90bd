"""Escrow ledger access: lookups, the append-only audit log, and the
compare-and-swap transitions that are the only way escrow state changes.

A transition is a single ``UPDATE ... WHERE escrow_status IN (...)``. The
caller that sees ``rowcount == 1`` owns the transition (and any external
money movement that follows); every other caller lost the race.
"""

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.errors import NotFound
from taskpay.models.payment import (
    VALID_TRANSITIONS,
    DisbursementStatus,
    EscrowStatus,
    LedgerAction,
    Payment,
    PaymentAuditLog,
    PaymentStatus,
)

logger = logging.getLogger(__name__)


async def log_audit(
    db: AsyncSession,
    payment_id: uuid.UUID,
    action: LedgerAction,
    amount: Decimal,
    actor_id: uuid.UUID | None = None,
    metadata: dict | None = None,
) -> None:
    """Append to the immutable audit log."""
    entry = PaymentAuditLog(
        audit_id=uuid.uuid4(),
        payment_id=payment_id,
        action=action,
        actor_id=actor_id,
        amount=amount,
        metadata_=metadata,
    )
    db.add(entry)


async def get_payment(db: AsyncSession, payment_id: uuid.UUID) -> Payment:
    """Load a payment, always re-reading the row from the database."""
    result = await db.execute(
        select(Payment)
        .where(Payment.payment_id == payment_id)
        .execution_options(populate_existing=True)
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFound("Payment not found")
    return payment


async def find_by_booking(db: AsyncSession, booking_id: uuid.UUID) -> Payment | None:
    result = await db.execute(
        select(Payment)
        .where(Payment.booking_id == booking_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_by_charge_ref(db: AsyncSession, external_charge_ref: str) -> Payment | None:
    result = await db.execute(
        select(Payment)
        .where(Payment.external_charge_ref == external_charge_ref)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_held_for_task(db: AsyncSession, task_id: uuid.UUID) -> Payment | None:
    result = await db.execute(
        select(Payment)
        .where(Payment.task_id == task_id, Payment.escrow_status == EscrowStatus.HELD)
        .order_by(Payment.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def claim_transition(
    db: AsyncSession,
    payment_id: uuid.UUID,
    from_statuses: tuple[EscrowStatus, ...],
    to_status: EscrowStatus,
    **values: Any,
) -> bool:
    """Conditionally move escrow_status from one of ``from_statuses`` to ``to_status``.

    Returns True if this caller won the transition. The caller commits.
    """
    for status in from_statuses:
        if to_status not in VALID_TRANSITIONS[status]:
            raise ValueError(f"Invalid escrow transition {status.value} -> {to_status.value}")

    result = await db.execute(
        update(Payment)
        .where(
            Payment.payment_id == payment_id,
            Payment.escrow_status.in_(from_statuses),
        )
        .values(escrow_status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    won = result.rowcount == 1
    if won:
        logger.info(
            "Payment %s: escrow %s -> %s",
            payment_id, "/".join(s.value for s in from_statuses), to_status.value,
        )
    else:
        logger.info("Payment %s: lost claim for %s", payment_id, to_status.value)
    return won


async def claim_charge_status(
    db: AsyncSession,
    payment_id: uuid.UUID,
    from_status: PaymentStatus,
    to_status: PaymentStatus,
    **values: Any,
) -> bool:
    """Conditionally move the external charge status (pending → completed/failed)."""
    result = await db.execute(
        update(Payment)
        .where(Payment.payment_id == payment_id, Payment.status == from_status)
        .values(status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def claim_disbursement(
    db: AsyncSession,
    payment_id: uuid.UUID,
    expected: DisbursementStatus,
    stale_before: datetime | None = None,
) -> bool:
    """Take ownership of a disbursement retry by moving it to ``pending``.

    Only one reconciler can move a given row out of ``expected``. A row already
    ``pending`` is only taken over when it was last touched before ``stale_before``;
    the claim refreshes ``updated_at`` so a second reconciler loses.
    """
    conditions = [Payment.payment_id == payment_id, Payment.disbursement_status == expected]
    if expected == DisbursementStatus.PENDING:
        if stale_before is None:
            return False
        conditions.append(Payment.updated_at < stale_before)
    result = await db.execute(
        update(Payment)
        .where(*conditions)
        .values(
            disbursement_status=DisbursementStatus.PENDING,
            disbursement_attempts=Payment.disbursement_attempts + 1,
            updated_at=datetime.now(UTC),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def record_disbursement(
    db: AsyncSession,
    payment_id: uuid.UUID,
    status: DisbursementStatus,
    **values: Any,
) -> None:
    """Record the outcome of a transfer or refund on a row this caller owns."""
    await db.execute(
        update(Payment)
        .where(Payment.payment_id == payment_id)
        .values(disbursement_status=status, **values)
        .execution_options(synchronize_session=False)
    )


async def record_disbursement_crash(db: AsyncSession, payment_id: uuid.UUID, error: str) -> None:
    """Discard a disbursement that raised unexpectedly and mark its outcome unknown.

    Commits. Reconciliation retries ``unknown`` rows with the original idempotency key.
    """
    await db.rollback()
    await record_disbursement(db, payment_id, DisbursementStatus.UNKNOWN, last_disbursement_error=error)
    await db.commit()


async def schedule_auto_release(db: AsyncSession, payment_id: uuid.UUID, at: datetime) -> bool:
    """Set ``auto_release_at`` if the payment is still held. The caller commits."""
    result = await db.execute(
        update(Payment)
        .where(Payment.payment_id == payment_id, Payment.escrow_status == EscrowStatus.HELD)
        .values(auto_release_at=at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
