"""Internal endpoints for the scheduler. Authenticated with the service key."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from taskpay.auth.middleware import require_service_key
from taskpay.database import get_db
from taskpay.schemas.payment import ReconciliationResponse, SweepResponse
from taskpay.services.auto_release import run_auto_release_sweep
from taskpay.services.reconciliation import reconcile_disbursements

router = APIRouter(prefix="/internal", tags=["internal"], dependencies=[Depends(require_service_key)])


@router.post("/auto-release/run", response_model=SweepResponse)
async def run_auto_release(db: AsyncSession = Depends(get_db)) -> SweepResponse:
    """Release every payment whose auto-release time has passed and has no active dispute."""
    summary = await run_auto_release_sweep(db)
    return SweepResponse(**summary.to_dict())


@router.post("/reconciliation/run", response_model=ReconciliationResponse)
async def run_reconciliation(db: AsyncSession = Depends(get_db)) -> ReconciliationResponse:
    """Retry transfers and refunds that failed or timed out."""
    summary = await reconcile_disbursements(db)
    return ReconciliationResponse(**summary.to_dict())
