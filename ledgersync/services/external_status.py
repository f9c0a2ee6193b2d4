"""
Applying the ledger's view of an invoice to a sale.

apply_external_status is shared by webhook ingestion, the reconciliation
sweep and the manual resync endpoint. Applying the same invoice state twice
is a no-op, so redelivered events and overlapping sweeps are harmless.
"""

import logging
from enum import Enum
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.auth.actor import SYSTEM_ACTOR, Actor
from ledgersync.errors import ConflictError
from ledgersync.models import Sale, SaleStatus, TriggeredBy
from ledgersync.services.incidents import (
    LedgerVoidAfterPayment,
    flag_sale_error,
    record_incident,
)
from ledgersync.services.ledger_client import LedgerInvoice
from ledgersync.services.lifecycle import STATUS_RANK, is_at_or_past, transition_sale_status

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    UNCHANGED = "unchanged"
    UPDATED = "updated"
    CREATED = "created"
    IGNORED = "ignored"


LEDGER_STATUS_MAP = {
    "AUTHORISED": SaleStatus.INVOICED,
    "PAID": SaleStatus.PAID,
    "VOIDED": SaleStatus.VOIDED,
    "DELETED": SaleStatus.VOIDED,
}

# Next step along the main path
_NEXT_STEP = {
    SaleStatus.DRAFT: SaleStatus.INVOICED,
    SaleStatus.INVOICED: SaleStatus.PAID,
}


def internal_status_for(invoice: LedgerInvoice) -> Optional[SaleStatus]:
    """
    Map a ledger invoice status onto the sale lifecycle.

    DRAFT and SUBMITTED invoices do not move a sale. An authorised invoice
    with nothing left to pay after a payment counts as paid.
    """
    status = (invoice.status or "").upper()
    if (
        status == "AUTHORISED"
        and invoice.amount_due is not None
        and invoice.amount_due == 0
        and (invoice.amount_paid or 0) > 0
    ):
        return SaleStatus.PAID
    return LEDGER_STATUS_MAP.get(status)


async def _current_status(db: AsyncSession, sale_id: int) -> Optional[SaleStatus]:
    return await db.scalar(
        select(Sale.status).where(Sale.id == sale_id, Sale.deleted_at.is_(None))
    )


async def _advance(
    db: AsyncSession,
    sale_id: int,
    target: SaleStatus,
    invoice: LedgerInvoice,
    actor: Actor,
) -> bool:
    """Walk the sale forward edge by edge until it reaches target."""
    moved = False
    for _ in range(len(STATUS_RANK)):
        current = await _current_status(db, sale_id)
        if current is None or current == SaleStatus.VOIDED or is_at_or_past(current, target):
            break
        step = _NEXT_STEP.get(current)
        if step is None or STATUS_RANK[step] > STATUS_RANK[target]:
            break
        try:
            await transition_sale_status(
                db,
                sale_id,
                current,
                step,
                actor,
                paid_date=invoice.paid_on if step == SaleStatus.PAID else None,
            )
            moved = True
        except ConflictError:
            # Moved by someone else; re-read and continue from there
            continue
    return moved


async def _link_invoice(db: AsyncSession, sale: Sale, invoice: LedgerInvoice) -> bool:
    if sale.external_invoice_id or not invoice.is_sales_invoice:
        return False
    result = await db.execute(
        update(Sale)
        .where(
            Sale.id == sale.id,
            Sale.external_invoice_id.is_(None),
            Sale.deleted_at.is_(None),
        )
        .values(external_invoice_id=invoice.invoice_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return False
    logger.info(
        f"Sale {sale.id} linked to ledger invoice {invoice.invoice_id} "
        f"by number {invoice.invoice_number}"
    )
    return True


async def _apply_void(
    db: AsyncSession,
    sale: Sale,
    invoice: LedgerInvoice,
    actor: Actor,
    external_changed: bool,
) -> bool:
    current = await _current_status(db, sale.id)
    if current in (SaleStatus.DRAFT, SaleStatus.INVOICED):
        try:
            await transition_sale_status(db, sale.id, current, SaleStatus.VOIDED, actor)
        except ConflictError:
            current = await _current_status(db, sale.id)
            if current == SaleStatus.VOIDED:
                return False
            raise
        return True

    if current is None or current == SaleStatus.VOIDED or not external_changed:
        return False

    # Paid or later: money has moved, so a human has to decide
    message = (
        f"Ledger voided invoice {invoice.invoice_number or invoice.invoice_id} "
        f"but sale {sale.id} is already {current.value}"
    )
    logger.error(message)
    await record_incident(
        db,
        LedgerVoidAfterPayment(
            sale_id=sale.id,
            external_invoice_id=invoice.invoice_id,
            internal_status=current.value,
            external_status=invoice.status,
        ),
        messages=message,
        source="reconciliation",
        triggered_by=TriggeredBy.SYNC,
        sale_id=sale.id,
    )
    await flag_sale_error(db, sale.id, message)
    return True


async def apply_external_status(
    db: AsyncSession,
    sale: Sale,
    invoice: LedgerInvoice,
    actor: Actor = SYSTEM_ACTOR,
) -> ReconcileOutcome:
    """
    Bring a sale in line with the ledger's invoice, if they differ.

    Links a sale matched only by invoice number to the invoice id first.
    Records the raw external status, then moves the lifecycle forward through
    transition_sale_status. Does not commit.
    """
    changed = await _link_invoice(db, sale, invoice)
    external_changed = sale.external_status != invoice.status

    if external_changed:
        result = await db.execute(
            update(Sale)
            .where(
                Sale.id == sale.id,
                or_(Sale.external_status.is_(None), Sale.external_status != invoice.status),
            )
            .values(
                external_status=invoice.status,
                external_invoice_number=invoice.invoice_number or sale.external_invoice_number,
            )
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount > 0 or changed

    target = internal_status_for(invoice)
    if target == SaleStatus.VOIDED:
        changed = await _apply_void(db, sale, invoice, actor, external_changed) or changed
    elif target is not None:
        changed = await _advance(db, sale.id, target, invoice, actor) or changed

    if not changed:
        return ReconcileOutcome.UNCHANGED

    await db.refresh(sale)
    logger.info(
        f"Sale {sale.id} reconciled with ledger invoice {invoice.invoice_id}: "
        f"external={invoice.status} internal={sale.status.value}"
    )
    return ReconcileOutcome.UPDATED
