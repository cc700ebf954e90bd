"""Release guard: a payment may not leave escrow while its booking has an active dispute."""

import uuid

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.errors import DisputeOpen
from taskpay.models.dispute import BLOCKING_DISPUTE_STATUSES, Dispute


async def is_releasable(
    db: AsyncSession, booking_id: uuid.UUID, ignoring: uuid.UUID | None = None,
) -> bool:
    """False iff a dispute for the booking is open or investigating. Always read live.

    ``ignoring`` leaves one dispute out, for checks made while that dispute is being resolved.
    """
    conditions = [Dispute.booking_id == booking_id, Dispute.status.in_(BLOCKING_DISPUTE_STATUSES)]
    if ignoring is not None:
        conditions.append(Dispute.dispute_id != ignoring)
    result = await db.execute(select(exists().where(*conditions)))
    return not result.scalar()


async def assert_releasable(db: AsyncSession, booking_id: uuid.UUID) -> None:
    if not await is_releasable(db, booking_id):
        raise DisputeOpen("Cannot release payment with an open dispute")
