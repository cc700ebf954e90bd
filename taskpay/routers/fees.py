"""Public fee schedule endpoints; no auth required."""

from decimal import Decimal

from fastapi import APIRouter, Query

from taskpay.schemas.payment import FeeBreakdownResponse
from taskpay.services.fees import calculate_fees, get_fee_schedule

router = APIRouter(tags=["fees"])


@router.get("/fees")
async def fee_schedule() -> dict:
    """Current fee schedule.

    - **Requester** pays: task amount + platform fee + tax
    - **Tasker** receives: task amount - platform fee
    """
    return get_fee_schedule()


@router.get("/fees/quote", response_model=FeeBreakdownResponse)
async def fee_quote(amount: Decimal = Query(..., description="Agreed task amount")) -> FeeBreakdownResponse:
    """Itemized breakdown for a task amount."""
    return FeeBreakdownResponse(**calculate_fees(amount).to_dict())
