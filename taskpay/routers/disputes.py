"""Dispute resolution endpoint (admins)."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.auth.middleware import AuthenticatedUser, get_current_user
from taskpay.auth.rate_limit import check_rate_limit
from taskpay.database import get_db
from taskpay.schemas.dispute import DisputeResponse, ResolveDisputeRequest, ResolveDisputeResponse
from taskpay.schemas.payment import PaymentResponse
from taskpay.services import disputes as dispute_service

router = APIRouter(prefix="/disputes", tags=["disputes"])


@router.post(
    "/{dispute_id}/resolve",
    response_model=ResolveDisputeResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    data: ResolveDisputeRequest,
    auth: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> ResolveDisputeResponse:
    """Close a dispute and release, refund, or leave the payment in escrow."""
    resolution = await dispute_service.resolve_dispute(db, dispute_id, data.outcome, auth.user_id)
    return ResolveDisputeResponse(
        dispute=DisputeResponse.model_validate(resolution.dispute),
        payment=PaymentResponse.model_validate(resolution.payment) if resolution.payment else None,
    )
