"""Stripe webhook event handling.

Events are applied through the same service operations the API uses, so a
webhook racing a client call (e.g. ``payment_intent.succeeded`` vs
``POST /payments/confirm``) resolves through the same conditional updates.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.models.payment import EscrowStatus, PaymentStatus
from taskpay.models.payout_account import PayoutAccount, PayoutAccountStatus
from taskpay.services import confirmation, disputes, ledger
from taskpay.services.fees import to_cents

logger = logging.getLogger(__name__)


def payout_status_from_account(account: dict) -> PayoutAccountStatus:
    """Map a Stripe Connect account object to our payout account status."""
    if account.get("charges_enabled") and account.get("payouts_enabled"):
        return PayoutAccountStatus.ACTIVE
    requirements = account.get("requirements") or {}
    if requirements.get("disabled_reason"):
        return PayoutAccountStatus.RESTRICTED
    return PayoutAccountStatus.PENDING


async def _payment_intent_succeeded(db: AsyncSession, intent: dict) -> str:
    payment = await ledger.find_by_charge_ref(db, intent["id"])
    if payment is None:
        logger.warning("Webhook for unknown PaymentIntent %s", intent["id"])
        return "ignored"
    if payment.status == PaymentStatus.COMPLETED:
        return "duplicate"
    if intent.get("amount") != to_cents(payment.amount):
        logger.error(
            "Webhook amount mismatch for payment %s: %s != %s",
            payment.payment_id, intent.get("amount"), to_cents(payment.amount),
        )
        return "amount_mismatch"
    result = await confirmation.mark_charge_succeeded(db, payment)
    return "duplicate" if result.already_confirmed else "confirmed"


async def _payment_intent_failed(db: AsyncSession, intent: dict) -> str:
    payment = await ledger.find_by_charge_ref(db, intent["id"])
    if payment is None:
        return "ignored"
    error = intent.get("last_payment_error") or {}
    await confirmation.mark_charge_failed(db, payment, error.get("message") or intent.get("status", "failed"))
    return "failed"


async def _dispute_created(db: AsyncSession, dispute: dict) -> str:
    intent_id = dispute.get("payment_intent")
    payment = await ledger.find_by_charge_ref(db, intent_id) if intent_id else None
    if payment is None:
        logger.warning("Chargeback %s for unknown PaymentIntent %s", dispute.get("id"), intent_id)
        return "ignored"
    if payment.escrow_status != EscrowStatus.HELD:
        logger.warning(
            "Chargeback %s on payment %s already %s",
            dispute.get("id"), payment.payment_id, payment.escrow_status.value,
        )
        return "ignored"
    await disputes.open_processor_dispute(db, payment, dispute.get("reason"))
    return "held"


async def _account_updated(db: AsyncSession, account: dict) -> str:
    result = await db.execute(
        select(PayoutAccount).where(PayoutAccount.stripe_account_id == account["id"])
    )
    payout_account = result.scalar_one_or_none()
    if payout_account is None:
        return "ignored"
    status = payout_status_from_account(account)
    if payout_account.account_status != status:
        logger.info(
            "Payout account %s: %s -> %s",
            account["id"], payout_account.account_status.value, status.value,
        )
        payout_account.account_status = status
        await db.commit()
    return status.value


_HANDLERS = {
    "payment_intent.succeeded": _payment_intent_succeeded,
    "payment_intent.payment_failed": _payment_intent_failed,
    "payment_intent.canceled": _payment_intent_failed,
    "charge.dispute.created": _dispute_created,
    "account.updated": _account_updated,
}


async def handle_stripe_event(db: AsyncSession, event: dict) -> str:
    """Apply a verified Stripe event. Returns a short outcome for logging."""
    event_type = event.get("type", "")
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.debug("Ignoring Stripe event %s", event_type)
        return "ignored"
    obj = event.get("data", {}).get("object", {})
    outcome = await handler(db, obj)
    logger.info("Stripe event %s (%s): %s", event.get("id"), event_type, outcome)
    return outcome
