"""Auto-release sweep.

Finds confirmed payments whose ``auto_release_at`` has passed and releases
them unless a dispute is active. The sweep keeps no state of its own: running
it twice, or on several replicas at once, releases each payment at most once
because every release goes through the ledger's conditional UPDATE.

Triggers:
- ``POST /internal/auto-release/run`` (service key)
- ``taskpay-sweep`` command for cron
- an optional in-process loop started from the app lifespan
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.config import settings
from taskpay.errors import DisputeOpen, EscrowError
from taskpay.models.payment import EscrowStatus, Payment, PaymentStatus, ReleaseType
from taskpay.services import dispute_gate, release

logger = logging.getLogger(__name__)

SKIPPED_DISPUTE = "skipped:dispute"
RELEASED = "released"
ALREADY_RELEASED = "already_released"


@dataclass
class SweepResult:
    payment_id: uuid.UUID
    outcome: str
    transferred: bool = False

    def to_dict(self) -> dict:
        return {
            "payment_id": str(self.payment_id),
            "outcome": self.outcome,
            "transferred": self.transferred,
        }


@dataclass
class SweepSummary:
    processed: int = 0
    released: int = 0
    skipped: int = 0
    errors: int = 0
    results: list[SweepResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "released": self.released,
            "skipped": self.skipped,
            "errors": self.errors,
            "results": [r.to_dict() for r in self.results],
        }


async def find_due_payments(
    db: AsyncSession, now: datetime, limit: int,
) -> list[tuple[uuid.UUID, uuid.UUID]]:
    """Return (payment_id, booking_id) for held payments past their auto-release time."""
    result = await db.execute(
        select(Payment.payment_id, Payment.booking_id)
        .where(
            Payment.escrow_status == EscrowStatus.HELD,
            Payment.status == PaymentStatus.COMPLETED,
            Payment.auto_release_triggered.is_(False),
            Payment.auto_release_at.is_not(None),
            Payment.auto_release_at <= now,
        )
        .order_by(Payment.auto_release_at)
        .limit(limit)
    )
    return [(row.payment_id, row.booking_id) for row in result.all()]


async def run_auto_release_sweep(
    db: AsyncSession,
    now: datetime | None = None,
    limit: int | None = None,
) -> SweepSummary:
    """Release every due payment that has no active dispute.

    A failure on one payment is logged and reported; the sweep carries on.
    """
    now = now or datetime.now(UTC)
    due = await find_due_payments(db, now, limit or settings.sweep_batch_size)
    summary = SweepSummary()
    logger.info("Auto-release sweep: %d payment(s) due", len(due))

    for payment_id, booking_id in due:
        summary.processed += 1
        try:
            if not await dispute_gate.is_releasable(db, booking_id):
                logger.info("Auto-release skipped for payment %s: active dispute", payment_id)
                summary.skipped += 1
                summary.results.append(SweepResult(payment_id, SKIPPED_DISPUTE))
                continue

            outcome = await release.release_payment(
                db, payment_id, ReleaseType.AUTO_72HR, actor_id=None, now=now,
            )
        except DisputeOpen:
            await db.rollback()
            logger.info("Auto-release skipped for payment %s: dispute opened during release", payment_id)
            summary.skipped += 1
            summary.results.append(SweepResult(payment_id, SKIPPED_DISPUTE))
            continue
        except EscrowError as exc:
            await db.rollback()
            logger.error("Auto-release failed for payment %s: %s", payment_id, exc.detail)
            summary.errors += 1
            summary.results.append(SweepResult(payment_id, f"error:{exc.code}"))
            continue
        except Exception as exc:
            await db.rollback()
            logger.exception("Auto-release failed for payment %s", payment_id)
            summary.errors += 1
            summary.results.append(SweepResult(payment_id, f"error:{type(exc).__name__}"))
            continue

        if outcome.already_released:
            summary.results.append(SweepResult(payment_id, ALREADY_RELEASED))
        else:
            summary.released += 1
            summary.results.append(SweepResult(payment_id, RELEASED, outcome.transferred))

    logger.info(
        "Auto-release sweep done: processed=%d released=%d skipped=%d errors=%d",
        summary.processed, summary.released, summary.skipped, summary.errors,
    )
    return summary


async def run_auto_release_loop() -> None:
    """Sweep and reconcile on a fixed interval until cancelled."""
    from taskpay.database import async_session_factory
    from taskpay.services.reconciliation import reconcile_disbursements

    interval = settings.auto_release_sweep_interval_seconds
    logger.info("Auto-release loop started (every %ss)", interval)
    while True:
        try:
            async with async_session_factory() as db:
                await run_auto_release_sweep(db)
                await reconcile_disbursements(db)
        except Exception:
            logger.exception("Auto-release loop iteration failed")
        await asyncio.sleep(interval)
