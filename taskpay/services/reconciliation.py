"""Retry transfers and refunds whose outcome failed or is unknown.

A row still ``pending`` after ``disbursement_stale_seconds`` lost its worker
between the ledger commit and the processor call; it is retried like ``unknown``.

Rows are claimed by a conditional UPDATE on ``disbursement_status`` so two
reconcilers never retry the same payment at once, and each retry reuses the
original idempotency key so a transfer that actually went through the first
time is not paid twice.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.config import settings
from taskpay.models.payment import (
    RETRYABLE_DISBURSEMENTS,
    DisbursementStatus,
    EscrowStatus,
    Payment,
)
from taskpay.services import ledger, refund, release

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationSummary:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": self.results,
        }


def stale_cutoff(now: datetime) -> datetime:
    return now - timedelta(seconds=settings.disbursement_stale_seconds)


async def find_pending_disbursements(db: AsyncSession, limit: int, now: datetime) -> list[Payment]:
    """Retryable rows, plus ``pending`` rows whose worker died before recording an outcome."""
    result = await db.execute(
        select(Payment)
        .where(
            Payment.escrow_status.in_((EscrowStatus.RELEASED, EscrowStatus.REFUNDED)),
            or_(
                Payment.disbursement_status.in_(RETRYABLE_DISBURSEMENTS),
                and_(
                    Payment.disbursement_status == DisbursementStatus.PENDING,
                    Payment.updated_at < stale_cutoff(now),
                ),
            ),
            Payment.disbursement_attempts < settings.disbursement_max_attempts,
        )
        .order_by(Payment.updated_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def reconcile_disbursements(
    db: AsyncSession, limit: int | None = None, now: datetime | None = None,
) -> ReconciliationSummary:
    now = now or datetime.now(UTC)
    summary = ReconciliationSummary()
    candidates = [
        (p.payment_id, p.payee_id, p.escrow_status, p.disbursement_status)
        for p in await find_pending_disbursements(db, limit or settings.sweep_batch_size, now)
    ]

    for payment_id, payee_id, escrow_status, disbursement_status in candidates:
        summary.processed += 1
        outcome = await _reconcile_one(db, payment_id, payee_id, escrow_status, disbursement_status, now)
        summary.results.append({"payment_id": str(payment_id), "outcome": outcome})
        if outcome == "completed":
            summary.completed += 1
        elif outcome.startswith("skipped"):
            summary.skipped += 1
        else:
            summary.failed += 1

    if summary.processed:
        logger.info(
            "Reconciliation done: processed=%d completed=%d failed=%d skipped=%d",
            summary.processed, summary.completed, summary.failed, summary.skipped,
        )
    return summary


async def _reconcile_one(
    db: AsyncSession,
    payment_id: uuid.UUID,
    payee_id: uuid.UUID,
    escrow_status: EscrowStatus,
    disbursement_status: DisbursementStatus,
    now: datetime,
) -> str:
    if (
        escrow_status == EscrowStatus.RELEASED
        and disbursement_status == DisbursementStatus.AWAITING_ACCOUNT
        and await release.get_active_payout_account(db, payee_id) is None
    ):
        return "skipped:awaiting_account"

    if not await ledger.claim_disbursement(db, payment_id, disbursement_status, stale_cutoff(now)):
        return "skipped:claimed"
    await db.commit()

    payment = await ledger.get_payment(db, payment_id)
    logger.info(
        "Retrying %s disbursement for payment %s (attempt %d)",
        escrow_status.value, payment_id, payment.disbursement_attempts,
    )
    try:
        if escrow_status == EscrowStatus.RELEASED:
            ok = await release.disburse_release(db, payment)
        else:
            ok = await refund.disburse_refund(db, payment)
    except Exception:
        logger.exception("Reconciliation failed for payment %s", payment_id)
        await ledger.record_disbursement_crash(db, payment_id, "reconciliation crashed")
        return "error"

    if ok:
        return "completed"
    payment = await ledger.get_payment(db, payment_id)
    return payment.disbursement_status.value
