"""Tests for deposit refunds: the 24-hour window, ownership and processor outcomes."""

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.errors import ConflictError, Forbidden, NotFound, RefundWindowClosed, TransferStatusUnknown
from taskpay.models.notification import Notification
from taskpay.models.payment import DisbursementStatus, EscrowStatus, PaymentStatus
from taskpay.models.task import BookingStatus, TaskStatus
from taskpay.services import ledger
from taskpay.services.refund import execute_refund, hours_until, refund_deposit
from tests.conftest import T0, FakeGateway, make_marketplace, make_payment

SCHEDULED = T0 + timedelta(days=3)


@pytest.mark.asyncio
async def test_refund_captured_charge(db_session: AsyncSession, gateway: FakeGateway) -> None:
    """Well before the task: refund issued, task and booking cancelled, payer notified."""
    mk = await make_marketplace(db_session, scheduled_date=SCHEDULED)
    payment = await make_payment(db_session, mk)
    now = SCHEDULED - timedelta(hours=48)

    result = await refund_deposit(db_session, mk.requester.user_id, mk.task.task_id, now=now)

    assert result.refunded is True
    assert result.refund_ref is not None
    refunded = result.payment
    assert refunded.escrow_status == EscrowStatus.REFUNDED
    assert refunded.refunded_at == now
    assert refunded.disbursement_status == DisbursementStatus.COMPLETED

    gateway.create_refund.assert_awaited_once()
    assert gateway.create_refund.await_args.kwargs["idempotency_key"] == f"refund:{payment.payment_id}"

    await db_session.refresh(mk.task)
    await db_session.refresh(mk.booking)
    assert mk.task.status == TaskStatus.CANCELLED
    assert mk.task.deposit_paid is False
    assert mk.booking.status == BookingStatus.CANCELLED

    events = (await db_session.execute(select(Notification.user_id, Notification.event_type))).all()
    assert events == [(mk.requester.user_id, "payment.refunded")]


@pytest.mark.asyncio
async def test_exactly_at_cutoff_allowed(db_session: AsyncSession) -> None:
    """24.0 hours before the task is still refundable."""
    mk = await make_marketplace(db_session, scheduled_date=SCHEDULED)
    await make_payment(db_session, mk)

    result = await refund_deposit(
        db_session, mk.requester.user_id, mk.task.task_id, now=SCHEDULED - timedelta(hours=24),
    )
    assert result.payment.escrow_status == EscrowStatus.REFUNDED


@pytest.mark.asyncio
async def test_inside_cutoff_refused(db_session: AsyncSession, gateway: FakeGateway) -> None:
    """One second inside the window is refused and nothing moves."""
    mk = await make_marketplace(db_session, scheduled_date=SCHEDULED)
    payment = await make_payment(db_session, mk)

    with pytest.raises(RefundWindowClosed) as exc_info:
        await refund_deposit(
            db_session, mk.requester.user_id, mk.task.task_id,
            now=SCHEDULED - timedelta(hours=24) + timedelta(seconds=1),
        )
    assert exc_info.value.code == "refund_window_closed"
    assert exc_info.value.status_code == 409

    current = await ledger.get_payment(db_session, payment.payment_id)
    assert current.escrow_status == EscrowStatus.HELD
    gateway.create_refund.assert_not_awaited()


@pytest.mark.asyncio
async def test_past_task_refused(db_session: AsyncSession) -> None:
    mk = await make_marketplace(db_session, scheduled_date=SCHEDULED)
    await make_payment(db_session, mk)

    with pytest.raises(RefundWindowClosed):
        await refund_deposit(
            db_session, mk.requester.user_id, mk.task.task_id, now=SCHEDULED + timedelta(hours=1),
        )


@pytest.mark.asyncio
async def test_only_requester_refunds(db_session: AsyncSession) -> None:
    mk = await make_marketplace(db_session, scheduled_date=SCHEDULED)
    await make_payment(db_session, mk)

    with pytest.raises(Forbidden):
        await refund_deposit(db_session, mk.tasker.user_id, mk.task.task_id, now=T0)


@pytest.mark.asyncio
async def test_no_held_deposit(db_session: AsyncSession) -> None:
    mk = await make_marketplace(db_session, scheduled_date=SCHEDULED)
    with pytest.raises(NotFound):
        await refund_deposit(db_session, mk.requester.user_id, mk.task.task_id, now=T0)


@pytest.mark.asyncio
async def test_released_payment_not_refunded(db_session: AsyncSession) -> None:
    """A released payment is no longer a held deposit."""
    mk = await make_marketplace(db_session, scheduled_date=SCHEDULED)
    await make_payment(db_session, mk, escrow_status=EscrowStatus.RELEASED)

    with pytest.raises(NotFound):
        await refund_deposit(db_session, mk.requester.user_id, mk.task.task_id, now=T0)


@pytest.mark.asyncio
async def test_uncaptured_charge_is_canceled(db_session: AsyncSession, gateway: FakeGateway) -> None:
    """A charge that never completed is canceled instead of refunded."""
    mk = await make_marketplace(db_session, scheduled_date=SCHEDULED)
    payment = await make_payment(db_session, mk, confirmed=False)
    gateway.register(payment, status="requires_payment_method")

    result = await refund_deposit(db_session, mk.requester.user_id, mk.task.task_id, now=T0)

    gateway.create_refund.assert_not_awaited()
    gateway.cancel_payment_intent.assert_awaited_once()
    assert gateway.cancel_payment_intent.await_args.kwargs["idempotency_key"] == f"cancel:{payment.payment_id}"
    assert result.refund_ref is None
    assert result.payment.status == PaymentStatus.FAILED
    assert result.payment.escrow_status == EscrowStatus.REFUNDED
    assert result.payment.disbursement_status == DisbursementStatus.COMPLETED


@pytest.mark.asyncio
async def test_refund_failure_keeps_ledger(db_session: AsyncSession, gateway: FakeGateway) -> None:
    """A processor failure after the claim is recorded for reconciliation; the ledger stays refunded."""
    mk = await make_marketplace(db_session, scheduled_date=SCHEDULED)
    payment = await make_payment(db_session, mk)
    gateway.create_refund.side_effect = TransferStatusUnknown("timed out", retryable=True)

    result = await refund_deposit(db_session, mk.requester.user_id, mk.task.task_id, now=T0)

    assert result.refunded is False
    assert result.payment.escrow_status == EscrowStatus.REFUNDED
    assert result.payment.disbursement_status == DisbursementStatus.UNKNOWN
    current = await ledger.get_payment(db_session, payment.payment_id)
    assert current.last_disbursement_error == "timed out"


@pytest.mark.asyncio
async def test_execute_refund_twice_conflicts(db_session: AsyncSession, gateway: FakeGateway) -> None:
    mk = await make_marketplace(db_session, scheduled_date=SCHEDULED)
    payment = await make_payment(db_session, mk)

    await execute_refund(db_session, payment, mk.requester.user_id, now=T0)
    with pytest.raises(ConflictError):
        await execute_refund(db_session, payment, mk.requester.user_id, now=T0)
    assert gateway.create_refund.await_count == 1


def test_hours_until() -> None:
    assert hours_until(SCHEDULED, SCHEDULED - timedelta(hours=24)) == 24.0
    assert hours_until(SCHEDULED, SCHEDULED + timedelta(minutes=30)) == -0.5
