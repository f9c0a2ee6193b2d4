"""Finance bulk lifecycle endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.auth import Actor, require_elevated
from ledgersync.db import get_db
from ledgersync.schemas.sale import BulkSelectionRequest, BulkTransitionResponse
from ledgersync.services.lifecycle import lock_paid_sales, pay_commissions

router = APIRouter(prefix="/finance", tags=["Finance"])


@router.post("/lock-paid-sales", response_model=BulkTransitionResponse)
async def lock_paid(
    data: Optional[BulkSelectionRequest] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_elevated),
):
    """
    Lock commission on paid sales.

    Safe to re-run: sales already locked or paid out are skipped.
    """
    result = await lock_paid_sales(db, actor, data.sale_ids if data else None)
    return BulkTransitionResponse.from_result(result)


@router.post("/pay-commissions", response_model=BulkTransitionResponse)
async def pay_locked(
    data: Optional[BulkSelectionRequest] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_elevated),
):
    """Record commission payout on locked sales. Safe to re-run."""
    result = await pay_commissions(db, actor, data.sale_ids if data else None)
    return BulkTransitionResponse.from_result(result)
