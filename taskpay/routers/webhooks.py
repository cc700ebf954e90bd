"""Stripe webhook receiver."""

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.database import get_db
from taskpay.services import payment_gateway
from taskpay.services.webhooks import handle_stripe_event

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Verify the Stripe signature and apply the event."""
    payload = await request.body()
    event = payment_gateway.construct_webhook_event(payload, stripe_signature)
    outcome = await handle_stripe_event(db, event)
    return {"received": True, "outcome": outcome}
