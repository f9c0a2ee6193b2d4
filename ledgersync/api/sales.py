"""Sale endpoints: claim, allocation, lifecycle, ledger sync and maintenance."""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.api.deps import get_ledger_client
from ledgersync.auth import (
    Actor,
    get_current_actor,
    require_adopter,
    require_elevated,
    require_superadmin,
)
from ledgersync.db import get_db
from ledgersync.schemas.sale import (
    AdoptRequest,
    AllocateRequest,
    ClaimableSaleResponse,
    ClaimResponse,
    CreateInvoiceRequest,
    DeleteRequest,
    FixVatResponse,
    RecalculateMarginsRequest,
    RecalculateMarginsResponse,
    ResyncResponse,
    SaleResponse,
    TransitionRequest,
)
from ledgersync.services.claims import allocate_sale, claim_sale, list_claimable_sales
from ledgersync.services.ledger_client import LedgerClient
from ledgersync.services.lifecycle import load_sale, transition_sale_status
from ledgersync.services.reconciliation import resync_sale
from ledgersync.services.sales import (
    fix_sale_vat,
    recalculate_margins,
    restore_sale,
    soft_delete_sale,
)
from ledgersync.services.sync import adopt_invoice, create_invoice_for_sale

router = APIRouter(prefix="/sales", tags=["Sales"])


@router.get("/claimable", response_model=list[ClaimableSaleResponse])
async def claimable(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Unclaimed placeholders the caller may claim."""
    sales = await list_claimable_sales(db, actor)
    return [ClaimableSaleResponse.from_sale(s) for s in sales]


@router.post("/recalculate-margins", response_model=RecalculateMarginsResponse)
async def recalculate(
    data: Optional[RecalculateMarginsRequest] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_elevated),
):
    """
    Re-derive cached margins from the stored amounts.

    Dry run unless dry_run is false in the body.
    """
    data = data or RecalculateMarginsRequest()
    result = await recalculate_margins(db, actor, data.sale_ids, dry_run=data.dry_run)
    return RecalculateMarginsResponse.from_result(result)


@router.get("/{sale_id}", response_model=SaleResponse)
async def get_sale(
    sale_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await load_sale(db, sale_id)


@router.post("/{sale_id}/claim", response_model=ClaimResponse)
async def claim(
    sale_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """
    Claim an unallocated sale for the calling actor.

    409 if someone else got there first, 403 if the buyer belongs to
    another shopper.
    """
    result = await claim_sale(db, sale_id, actor)
    return ClaimResponse(
        sale=SaleResponse.model_validate(result.sale),
        buyer_owner_assigned=result.owner_assigned,
    )


@router.post("/{sale_id}/allocate", response_model=SaleResponse)
async def allocate(
    sale_id: int,
    data: AllocateRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_elevated),
):
    return await allocate_sale(db, sale_id, data.shopper_id, actor)


@router.post("/{sale_id}/transition", response_model=SaleResponse)
async def transition(
    sale_id: int,
    data: TransitionRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Move a sale along the lifecycle; guards decide who may take each edge."""
    return await transition_sale_status(
        db, sale_id, data.expected_status, data.next_status, actor
    )


@router.post("/adopt", response_model=SaleResponse)
async def adopt(
    data: AdoptRequest,
    db: AsyncSession = Depends(get_db),
    ledger: LedgerClient = Depends(get_ledger_client),
    actor: Actor = Depends(require_adopter),
):
    """Adopt an existing ledger invoice, replacing its placeholder if any."""
    return await adopt_invoice(
        db, ledger, data.external_invoice_id, data.vat_tag, data.costs.to_costs(), actor
    )


@router.post("/create-invoice", response_model=SaleResponse)
async def create_invoice(
    data: CreateInvoiceRequest,
    db: AsyncSession = Depends(get_db),
    ledger: LedgerClient = Depends(get_ledger_client),
    actor: Actor = Depends(require_adopter),
):
    """Create a ledger invoice and its sale. Ledger failures return 502."""
    return await create_invoice_for_sale(db, ledger, data.to_new_invoice(), actor)


@router.post("/{sale_id}/sync-status", response_model=ResyncResponse)
async def sync_status(
    sale_id: int,
    db: AsyncSession = Depends(get_db),
    ledger: LedgerClient = Depends(get_ledger_client),
    actor: Actor = Depends(require_elevated),
):
    sale, outcome = await resync_sale(db, ledger, sale_id, actor)
    return ResyncResponse(outcome=outcome.value, sale=SaleResponse.model_validate(sale))


@router.post("/{sale_id}/fix-vat", response_model=FixVatResponse)
async def fix_vat(
    sale_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_superadmin),
):
    sale, fixed = await fix_sale_vat(db, sale_id, actor)
    return FixVatResponse(fixed=fixed, sale=SaleResponse.model_validate(sale))


@router.delete("/{sale_id}", response_model=SaleResponse)
async def delete_sale(
    sale_id: int,
    data: Optional[DeleteRequest] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_elevated),
):
    """Soft delete; the row is kept and can be restored."""
    return await soft_delete_sale(db, sale_id, actor, reason=data.reason if data else None)


@router.post("/{sale_id}/restore", response_model=SaleResponse)
async def restore(
    sale_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_elevated),
):
    return await restore_sale(db, sale_id, actor)
