"""Tests for the release executor: exactly-once release, disbursement outcomes and guards."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.errors import (
    ConflictError,
    DisputeOpen,
    ExternalServiceError,
    Forbidden,
    PaymentNotReady,
    TransferStatusUnknown,
)
from taskpay.models.notification import Notification
from taskpay.models.payment import (
    DisbursementStatus,
    EscrowStatus,
    LedgerAction,
    Payment,
    PaymentAuditLog,
    ReleaseType,
    Released,
)
from taskpay.models.payout_account import PayoutAccountStatus
from taskpay.models.task import BookingStatus, TaskStatus
from taskpay.services import ledger
from taskpay.services.release import release_by_caller, release_payment
from tests.conftest import T0, FakeGateway, make_marketplace, make_payment, open_dispute


async def _actions(db: AsyncSession, payment_id) -> list[LedgerAction]:  # type: ignore[no-untyped-def]
    rows = (await db.execute(
        select(PaymentAuditLog.action).where(PaymentAuditLog.payment_id == payment_id)
    )).scalars().all()
    return list(rows)


@pytest.mark.asyncio
async def test_release_transfers_payout(db_session: AsyncSession, gateway: FakeGateway) -> None:
    """Release moves the payout to the tasker's account and completes the task."""
    mk = await make_marketplace(db_session)
    payment = await make_payment(db_session, mk)
    now = T0 + timedelta(hours=10)

    result = await release_payment(db_session, payment.payment_id, ReleaseType.MANUAL, mk.requester.user_id, now=now)

    assert result.already_released is False
    assert result.transferred is True
    released = result.payment
    assert released.escrow_status == EscrowStatus.RELEASED
    assert released.release_type == ReleaseType.MANUAL
    assert released.released_at == now
    assert released.payout_at == now
    assert released.disbursement_status == DisbursementStatus.COMPLETED
    assert released.transfer_ref == result.transfer_ref
    assert released.release_state == Released(transferred=True)
    assert released.auto_release_triggered is False

    kwargs = gateway.create_transfer.await_args.kwargs
    assert kwargs["amount_cents"] == 8500
    assert kwargs["idempotency_key"] == f"transfer:{payment.payment_id}"

    await db_session.refresh(mk.task)
    await db_session.refresh(mk.booking)
    assert mk.task.status == TaskStatus.COMPLETED
    assert mk.booking.status == BookingStatus.COMPLETED

    assert await _actions(db_session, payment.payment_id) == [LedgerAction.RELEASED, LedgerAction.DISBURSED]
    events = (await db_session.execute(select(Notification.user_id, Notification.event_type))).all()
    assert (mk.tasker.user_id, "payment.released") in events
    assert (mk.requester.user_id, "payment.sent") in events


@pytest.mark.asyncio
async def test_release_twice_transfers_once(db_session: AsyncSession, gateway: FakeGateway) -> None:
    mk = await make_marketplace(db_session)
    payment = await make_payment(db_session, mk)

    await release_payment(db_session, payment.payment_id, ReleaseType.MANUAL)
    again = await release_payment(db_session, payment.payment_id, ReleaseType.AUTO_72HR)

    assert again.already_released is True
    assert again.payment.release_type == ReleaseType.MANUAL
    assert gateway.create_transfer.await_count == 1


@pytest.mark.asyncio
async def test_lost_claim_is_idempotent(
    db_session: AsyncSession, gateway: FakeGateway, monkeypatch: pytest.MonkeyPatch,
) -> None:
    """When another worker releases between the check and the claim, no second transfer happens."""
    mk = await make_marketplace(db_session)
    payment = await make_payment(db_session, mk)
    real_claim = ledger.claim_transition

    async def racing_claim(db, payment_id, from_statuses, to_status, **values):  # type: ignore[no-untyped-def]
        await db.execute(
            update(Payment)
            .where(Payment.payment_id == payment_id)
            .values(escrow_status=EscrowStatus.RELEASED)
            .execution_options(synchronize_session=False)
        )
        return await real_claim(db, payment_id, from_statuses, to_status, **values)

    monkeypatch.setattr(ledger, "claim_transition", racing_claim)

    result = await release_payment(db_session, payment.payment_id, ReleaseType.AUTO_72HR)
    assert result.already_released is True
    gateway.create_transfer.assert_not_awaited()


@pytest.mark.asyncio
async def test_refunded_payment_conflicts(db_session: AsyncSession, gateway: FakeGateway) -> None:
    mk = await make_marketplace(db_session)
    payment = await make_payment(db_session, mk, escrow_status=EscrowStatus.REFUNDED)

    with pytest.raises(ConflictError):
        await release_payment(db_session, payment.payment_id, ReleaseType.MANUAL)
    gateway.create_transfer.assert_not_awaited()


@pytest.mark.asyncio
async def test_open_dispute_blocks_release(db_session: AsyncSession, gateway: FakeGateway) -> None:
    """An open or investigating dispute blocks every release path."""
    mk = await make_marketplace(db_session)
    payment = await make_payment(db_session, mk)
    await open_dispute(db_session, mk)

    with pytest.raises(DisputeOpen) as exc_info:
        await release_payment(db_session, payment.payment_id, ReleaseType.MANUAL)
    assert exc_info.value.code == "dispute_open"

    current = await ledger.get_payment(db_session, payment.payment_id)
    assert current.escrow_status == EscrowStatus.HELD
    gateway.create_transfer.assert_not_awaited()


@pytest.mark.asyncio
async def test_disputed_hold_blocks_manual_release(db_session: AsyncSession) -> None:
    mk = await make_marketplace(db_session)
    payment = await make_payment(db_session, mk, escrow_status=EscrowStatus.DISPUTED)

    with pytest.raises(DisputeOpen):
        await release_payment(db_session, payment.payment_id, ReleaseType.MANUAL)


@pytest.mark.asyncio
async def test_unconfirmed_payment_not_released(db_session: AsyncSession) -> None:
    mk = await make_marketplace(db_session)
    payment = await make_payment(db_session, mk, confirmed=False)

    with pytest.raises(PaymentNotReady):
        await release_payment(db_session, payment.payment_id, ReleaseType.MANUAL)


@pytest.mark.asyncio
async def test_missing_payout_account(db_session: AsyncSession, gateway: FakeGateway) -> None:
    """Without an active payout account the release stands and the transfer waits."""
    mk = await make_marketplace(db_session, payout_status=None)
    payment = await make_payment(db_session, mk)

    result = await release_payment(db_session, payment.payment_id, ReleaseType.MANUAL)

    assert result.transferred is False
    assert result.payment.escrow_status == EscrowStatus.RELEASED
    assert result.payment.disbursement_status == DisbursementStatus.AWAITING_ACCOUNT
    assert result.payment.release_state == Released(transferred=False)
    gateway.create_transfer.assert_not_awaited()

    notice = (await db_session.execute(
        select(Notification).where(Notification.event_type == "payment.released")
    )).scalar_one()
    assert notice.payload["transferred"] is False


@pytest.mark.asyncio
async def test_restricted_account_is_not_paid(db_session: AsyncSession, gateway: FakeGateway) -> None:
    mk = await make_marketplace(db_session, payout_status=PayoutAccountStatus.RESTRICTED)
    payment = await make_payment(db_session, mk)

    result = await release_payment(db_session, payment.payment_id, ReleaseType.MANUAL)
    assert result.payment.disbursement_status == DisbursementStatus.AWAITING_ACCOUNT
    gateway.create_transfer.assert_not_awaited()


@pytest.mark.asyncio
async def test_transfer_timeout_recorded_unknown(db_session: AsyncSession, gateway: FakeGateway) -> None:
    """A timed-out transfer keeps the release and is marked unknown for reconciliation."""
    mk = await make_marketplace(db_session)
    payment = await make_payment(db_session, mk)
    gateway.create_transfer.side_effect = TransferStatusUnknown("timed out", retryable=True)

    result = await release_payment(db_session, payment.payment_id, ReleaseType.MANUAL)

    assert result.transferred is False
    assert result.payment.escrow_status == EscrowStatus.RELEASED
    assert result.payment.disbursement_status == DisbursementStatus.UNKNOWN
    assert result.payment.last_disbursement_error == "timed out"
    assert LedgerAction.DISBURSEMENT_FAILED in await _actions(db_session, payment.payment_id)


@pytest.mark.asyncio
async def test_transfer_failure_recorded_failed(db_session: AsyncSession, gateway: FakeGateway) -> None:
    mk = await make_marketplace(db_session)
    payment = await make_payment(db_session, mk)
    gateway.create_transfer.side_effect = ExternalServiceError("Insufficient platform balance")

    result = await release_payment(db_session, payment.payment_id, ReleaseType.MANUAL)

    assert result.payment.escrow_status == EscrowStatus.RELEASED
    assert result.payment.disbursement_status == DisbursementStatus.FAILED


@pytest.mark.asyncio
async def test_dispute_resolution_releases_disputed(db_session: AsyncSession, gateway: FakeGateway) -> None:
    mk = await make_marketplace(db_session)
    payment = await make_payment(db_session, mk, escrow_status=EscrowStatus.DISPUTED)

    result = await release_payment(db_session, payment.payment_id, ReleaseType.DISPUTE_RESOLUTION, mk.admin.user_id)
    assert result.payment.escrow_status == EscrowStatus.RELEASED
    assert result.payment.release_type == ReleaseType.DISPUTE_RESOLUTION
    assert result.payment.payout_amount == Decimal("85.00")


@pytest.mark.asyncio
async def test_manual_release_by_payer_or_admin(db_session: AsyncSession) -> None:
    mk = await make_marketplace(db_session)
    payment = await make_payment(db_session, mk)

    with pytest.raises(Forbidden):
        await release_by_caller(db_session, payment.payment_id, mk.tasker.user_id)

    result = await release_by_caller(db_session, payment.payment_id, mk.admin.user_id)
    assert result.payment.escrow_status == EscrowStatus.RELEASED
