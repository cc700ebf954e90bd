"""Task, booking and profile lookups, and the marketplace state changes driven by escrow."""

import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.errors import NotFound
from taskpay.models.profile import Profile
from taskpay.models.task import Booking, BookingStatus, Task, TaskStatus

logger = logging.getLogger(__name__)


async def get_task(db: AsyncSession, task_id: uuid.UUID) -> Task:
    result = await db.execute(select(Task).where(Task.task_id == task_id))
    task = result.scalar_one_or_none()
    if task is None:
        raise NotFound("Task not found")
    return task


async def get_booking(db: AsyncSession, booking_id: uuid.UUID) -> Booking:
    result = await db.execute(select(Booking).where(Booking.booking_id == booking_id))
    booking = result.scalar_one_or_none()
    if booking is None:
        raise NotFound("Booking not found")
    return booking


async def get_profile(db: AsyncSession, user_id: uuid.UUID) -> Profile:
    result = await db.execute(select(Profile).where(Profile.user_id == user_id))
    profile = result.scalar_one_or_none()
    if profile is None:
        raise NotFound("Profile not found")
    return profile


async def is_admin(db: AsyncSession, user_id: uuid.UUID) -> bool:
    result = await db.execute(select(Profile.is_admin).where(Profile.user_id == user_id))
    return bool(result.scalar_one_or_none())


async def mark_in_progress(db: AsyncSession, task_id: uuid.UUID, booking_id: uuid.UUID) -> None:
    """Payment confirmed: the booking is agreed and work can start."""
    await db.execute(
        update(Booking)
        .where(Booking.booking_id == booking_id)
        .values(status=BookingStatus.IN_PROGRESS, payment_agreed=True)
    )
    await db.execute(
        update(Task)
        .where(Task.task_id == task_id)
        .values(status=TaskStatus.IN_PROGRESS, deposit_paid=True)
    )


async def mark_completed(db: AsyncSession, task_id: uuid.UUID, booking_id: uuid.UUID) -> None:
    await db.execute(
        update(Booking)
        .where(Booking.booking_id == booking_id)
        .values(status=BookingStatus.COMPLETED)
    )
    await db.execute(
        update(Task).where(Task.task_id == task_id).values(status=TaskStatus.COMPLETED)
    )


async def mark_cancelled(db: AsyncSession, task_id: uuid.UUID, booking_id: uuid.UUID) -> None:
    await db.execute(
        update(Booking)
        .where(Booking.booking_id == booking_id)
        .values(status=BookingStatus.CANCELLED)
    )
    await db.execute(
        update(Task)
        .where(Task.task_id == task_id)
        .values(status=TaskStatus.CANCELLED, deposit_paid=False)
    )
    logger.info("Task %s cancelled after refund", task_id)
