"""
Sale maintenance: margins, data-integrity checks, VAT repair, soft delete.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.auth.actor import Actor
from ledgersync.config import settings
from ledgersync.errors import ConflictError, ForbiddenError, ValidationError
from ledgersync.models import AuditAction, Sale, TriggeredBy
from ledgersync.services.economics import (
    MarginResult,
    calculate_margins,
    check_sale_integrity,
    detect_zero_rate_bug,
    repair_zero_rate_vat,
)
from ledgersync.services.incidents import DataIntegrity, record_incident
from ledgersync.services.lifecycle import TERMINAL_STATUSES, load_sale
from ledgersync.utils.audit import log_action
from ledgersync.utils.dates import utcnow

logger = logging.getLogger(__name__)


def format_sale_reference(sale_id: int) -> str:
    return f"{settings.sale_reference_prefix}-{sale_id:04d}"


def apply_margins(sale: Sale) -> MarginResult:
    """Refresh the cached margin columns from the amount columns."""
    margins = calculate_margins(
        sale.sale_amount_ex_vat,
        sale.buy_price,
        sale.shipping_cost,
        sale.card_fees,
        sale.direct_costs,
        sale.introducer_commission,
    )
    sale.gross_margin = margins.gross_margin
    sale.commissionable_margin = margins.commissionable_margin
    return margins


async def record_integrity_warnings(
    db: AsyncSession,
    sale: Sale,
    triggered_by: TriggeredBy = TriggeredBy.API,
) -> int:
    """Record a data_integrity incident if the sale trips any check."""
    warnings = check_sale_integrity(
        sale.sale_amount_ex_vat,
        sale.buy_price,
        sale.gross_margin,
        sale.authenticity_status,
    )
    if not warnings:
        return 0

    await record_incident(
        db,
        DataIntegrity(sale_id=sale.id, kinds=[w.kind for w in warnings]),
        messages=[w.message for w in warnings],
        source="economics",
        triggered_by=triggered_by,
        sale_id=sale.id,
    )
    logger.warning(f"Sale {sale.id}: {len(warnings)} data integrity warning(s)")
    return len(warnings)


async def recalculate_sale_margins(
    db: AsyncSession,
    sale: Sale,
    triggered_by: TriggeredBy = TriggeredBy.API,
) -> MarginResult:
    """Re-derive cached margins after an amount change and re-run the integrity checks."""
    margins = apply_margins(sale)
    await db.flush()
    await record_integrity_warnings(db, sale, triggered_by)
    return margins


MARGIN_TOLERANCE = Decimal("0.01")


@dataclass
class MarginChange:
    sale_id: int
    sale_reference: Optional[str]
    old_gross_margin: Optional[Decimal]
    new_gross_margin: Decimal
    old_commissionable_margin: Optional[Decimal]
    new_commissionable_margin: Decimal


@dataclass
class MarginRecalculation:
    dry_run: bool
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    changes: list[MarginChange] = field(default_factory=list)


def _differs(old: Optional[Decimal], new: Decimal) -> bool:
    return old is None or abs(Decimal(old) - new) > MARGIN_TOLERANCE


async def recalculate_margins(
    db: AsyncSession,
    actor: Actor,
    sale_ids: Optional[list[int]] = None,
    dry_run: bool = True,
) -> MarginRecalculation:
    """
    Re-derive cached margins for every live sale (or the given ones).

    A dry run only reports the changes. Otherwise each changed sale is
    rewritten, integrity-checked and audited, and the batch is committed.
    """
    if not actor.is_elevated:
        raise ForbiddenError("Recalculating margins requires an elevated role")

    query = select(Sale).where(Sale.deleted_at.is_(None))
    if sale_ids is not None:
        query = query.where(Sale.id.in_(sale_ids))
    sales = (await db.execute(query.order_by(Sale.id))).scalars().all()

    summary = MarginRecalculation(dry_run=dry_run)
    for sale in sales:
        summary.processed += 1
        margins = calculate_margins(
            sale.sale_amount_ex_vat,
            sale.buy_price,
            sale.shipping_cost,
            sale.card_fees,
            sale.direct_costs,
            sale.introducer_commission,
        )
        if not (
            _differs(sale.gross_margin, margins.gross_margin)
            or _differs(sale.commissionable_margin, margins.commissionable_margin)
        ):
            summary.skipped += 1
            continue

        summary.changes.append(
            MarginChange(
                sale_id=sale.id,
                sale_reference=sale.sale_reference,
                old_gross_margin=sale.gross_margin,
                new_gross_margin=margins.gross_margin,
                old_commissionable_margin=sale.commissionable_margin,
                new_commissionable_margin=margins.commissionable_margin,
            )
        )
        if dry_run:
            continue

        await recalculate_sale_margins(db, sale)
        await log_action(
            db=db,
            actor_id=actor.actor_id,
            action=AuditAction.RECALCULATE_MARGINS,
            target_type="sale",
            target_id=sale.id,
            action_metadata={
                "old_gross_margin": str(summary.changes[-1].old_gross_margin),
                "new_gross_margin": str(margins.gross_margin),
            },
        )
        summary.updated += 1

    if not dry_run:
        await db.commit()
    logger.info(
        f"Margin recalculation by {actor} (dry_run={dry_run}): {summary.processed} processed, "
        f"{len(summary.changes)} changed, {summary.updated} updated"
    )
    return summary


async def fix_sale_vat(db: AsyncSession, sale_id: int, actor: Actor) -> tuple[Sale, bool]:
    """
    Repair the zero-rate back-calculation bug on one sale.

    Returns the sale and whether anything changed.
    """
    sale = await load_sale(db, sale_id)
    if not sale.vat_tag:
        raise ValidationError(f"Sale {sale_id} has no VAT treatment")

    if not detect_zero_rate_bug(sale.vat_tag, sale.sale_amount_ex_vat, sale.sale_amount_inc_vat):
        return sale, False

    before = {
        "ex_vat": str(sale.sale_amount_ex_vat),
        "inc_vat": str(sale.sale_amount_inc_vat),
    }
    repaired = repair_zero_rate_vat(sale.sale_amount_inc_vat)
    sale.sale_amount_ex_vat = repaired.ex_vat
    sale.sale_amount_inc_vat = repaired.inc_vat
    await recalculate_sale_margins(db, sale)

    await log_action(
        db=db,
        actor_id=actor.actor_id,
        action=AuditAction.FIX_VAT,
        target_type="sale",
        target_id=sale_id,
        action_metadata={"before": before, "after": {"ex_vat": str(repaired.ex_vat)}},
    )
    logger.info(f"Sale {sale_id}: zero-rate VAT repaired by {actor}")
    return sale, True


async def soft_delete_sale(
    db: AsyncSession,
    sale_id: int,
    actor: Actor,
    reason: Optional[str] = None,
) -> Sale:
    if not actor.is_elevated:
        raise ForbiddenError("Deleting sales requires an elevated role")

    sale = await load_sale(db, sale_id)
    if sale.status in TERMINAL_STATUSES:
        raise ValidationError(f"Sale {sale_id} is {sale.status.value} and cannot be deleted")

    result = await db.execute(
        update(Sale)
        .where(
            Sale.id == sale_id,
            Sale.deleted_at.is_(None),
            Sale.status == sale.status,
        )
        .values(deleted_at=utcnow(), deleted_by=actor.actor_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise ConflictError(f"Sale {sale_id} was modified concurrently")

    await log_action(
        db=db,
        actor_id=actor.actor_id,
        action=AuditAction.DELETE_SALE,
        target_type="sale",
        target_id=sale_id,
        action_metadata={"reason": reason, "status": sale.status.value},
    )
    logger.info(f"Sale {sale_id} soft-deleted by {actor}")
    return await load_sale(db, sale_id, include_deleted=True)


async def restore_sale(db: AsyncSession, sale_id: int, actor: Actor) -> Sale:
    if not actor.is_elevated:
        raise ForbiddenError("Restoring sales requires an elevated role")

    sale = await load_sale(db, sale_id, include_deleted=True)
    if not sale.is_deleted:
        raise ConflictError(f"Sale {sale_id} is not deleted")

    if sale.external_invoice_id:
        clash = await db.scalar(
            select(Sale.id).where(
                Sale.external_invoice_id == sale.external_invoice_id,
                Sale.needs_allocation.is_(sale.needs_allocation),
                Sale.deleted_at.is_(None),
            )
        )
        if clash is not None:
            raise ConflictError(
                f"Sale {clash} already holds invoice {sale.external_invoice_id}",
                details={"sale_id": clash},
            )

    try:
        result = await db.execute(
            update(Sale)
            .where(Sale.id == sale_id, Sale.deleted_at.is_not(None))
            .values(deleted_at=None, deleted_by=None)
            .execution_options(synchronize_session=False)
        )
    except IntegrityError as e:
        raise ConflictError(
            f"Invoice {sale.external_invoice_id} is already held by another sale"
        ) from e
    if result.rowcount == 0:
        raise ConflictError(f"Sale {sale_id} was restored concurrently")

    await log_action(
        db=db,
        actor_id=actor.actor_id,
        action=AuditAction.RESTORE_SALE,
        target_type="sale",
        target_id=sale_id,
    )
    logger.info(f"Sale {sale_id} restored by {actor}")
    return await load_sale(db, sale_id)
