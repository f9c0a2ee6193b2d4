"""
Reconciliation sweep.

Fallback for webhooks the ledger dropped or delayed:

- Pass 1 re-fetches every linked, unflagged sale still awaiting payment
  (draft or invoiced) and applies the ledger's current status.
- Pass 2 lists recent ledger invoices, imports any sales invoice that has
  no local row yet, and links rows matched only by invoice number.

Each item runs in its own session. A failing item is logged to the incident
ledger and the sweep moves on; the summary reflects partial progress.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.auth.actor import Actor
from ledgersync.config import settings
from ledgersync.errors import AppError, NotFoundError, ValidationError
from ledgersync.models import Sale, SaleStatus, SystemSetting, TriggeredBy
from ledgersync.services.external_status import ReconcileOutcome, apply_external_status
from ledgersync.services.incidents import SweepItemFailed, record_incident_detached
from ledgersync.services.ledger_client import LedgerClient, LedgerInvoice
from ledgersync.services.lifecycle import load_sale
from ledgersync.services.sync import find_sales_for_invoice, import_placeholder
from ledgersync.utils.dates import days_ago, utcnow

logger = logging.getLogger(__name__)

LAST_SWEEP_SETTING_KEY = "last_sweep"

AWAITING_PAYMENT = (SaleStatus.DRAFT, SaleStatus.INVOICED)


@dataclass
class SweepSummary:
    """Sweep counters. Imported sales count towards updated as well."""

    checked: int = 0
    updated: int = 0
    imported: int = 0
    errors: int = 0
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "updated": self.updated,
            "imported": self.imported,
            "errors": self.errors,
            "timestampISO": self.timestamp.isoformat(),
        }


def _error_code(exc: Exception) -> str:
    return exc.code if isinstance(exc, AppError) else type(exc).__name__


async def _record_item_failure(
    session_factory: async_sessionmaker[AsyncSession],
    sweep_pass: str,
    exc: Exception,
    sale_id: Optional[int] = None,
    external_invoice_id: Optional[str] = None,
) -> None:
    await record_incident_detached(
        session_factory,
        SweepItemFailed(
            sweep_pass=sweep_pass,
            sale_id=sale_id,
            external_invoice_id=external_invoice_id,
            error_code=_error_code(exc),
            error=str(exc),
        ),
        messages=f"Reconciliation {sweep_pass} failed: {exc}",
        source="reconciliation",
        triggered_by=TriggeredBy.SWEEP,
        sale_id=sale_id,
    )


async def resync_sale(
    db: AsyncSession,
    ledger: LedgerClient,
    sale_id: int,
    actor: Actor,
) -> tuple[Sale, ReconcileOutcome]:
    """Manually re-apply the ledger's current status to one sale."""
    sale = await load_sale(db, sale_id)
    if not sale.external_invoice_id:
        raise ValidationError(f"Sale {sale_id} is not linked to a ledger invoice")

    invoice = await ledger.get_invoice(sale.external_invoice_id)
    if invoice is None:
        raise NotFoundError(f"Invoice {sale.external_invoice_id} not found in ledger")

    outcome = await apply_external_status(db, sale, invoice)
    logger.info(f"Manual resync of sale {sale_id} by {actor}: {outcome.value}")
    return await load_sale(db, sale_id), outcome


async def _reconcile_awaiting_payment(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: LedgerClient,
    summary: SweepSummary,
) -> None:
    async with session_factory() as db:
        result = await db.execute(
            select(Sale.id, Sale.external_invoice_id)
            .where(
                Sale.status.in_(AWAITING_PAYMENT),
                Sale.deleted_at.is_(None),
                Sale.error_flag.is_(False),
                Sale.external_invoice_id.is_not(None),
            )
            .order_by(Sale.id)
        )
        candidates = result.all()

    for sale_id, invoice_id in candidates:
        summary.checked += 1
        try:
            invoice = await ledger.get_invoice(invoice_id)
            if invoice is None:
                raise NotFoundError(f"Invoice {invoice_id} not found in ledger")
            async with session_factory() as db:
                sale = await load_sale(db, sale_id)
                outcome = await apply_external_status(db, sale, invoice)
                await db.commit()
            if outcome == ReconcileOutcome.UPDATED:
                summary.updated += 1
        except Exception as e:
            summary.errors += 1
            logger.error(f"Sweep: sale {sale_id} (invoice {invoice_id}) failed: {e}")
            await _record_item_failure(
                session_factory, "awaiting_payment", e,
                sale_id=sale_id, external_invoice_id=invoice_id,
            )


async def _import_if_missing(
    session_factory: async_sessionmaker[AsyncSession],
    invoice: LedgerInvoice,
    summary: SweepSummary,
) -> None:
    summary.checked += 1
    try:
        async with session_factory() as db:
            canonical, placeholder = await find_sales_for_invoice(
                db, invoice.invoice_id, invoice.invoice_number
            )
            existing = canonical or placeholder
            if existing is not None and existing.external_invoice_id:
                return
            if existing is not None:
                # Matched by invoice number only; linking happens in the primitive
                outcome = await apply_external_status(db, existing, invoice)
                await db.commit()
                if outcome == ReconcileOutcome.UPDATED:
                    summary.updated += 1
                return
            sale, created = await import_placeholder(db, invoice)
            await apply_external_status(db, sale, invoice)
            await db.commit()
        if created:
            summary.imported += 1
            summary.updated += 1
    except Exception as e:
        summary.errors += 1
        logger.error(f"Sweep: import of invoice {invoice.invoice_id} failed: {e}")
        await _record_item_failure(
            session_factory, "new_invoices", e, external_invoice_id=invoice.invoice_id
        )


async def _import_recent_invoices(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: LedgerClient,
    summary: SweepSummary,
) -> None:
    since = days_ago(settings.sweep_creation_window_days)
    try:
        async for invoice in ledger.iter_invoices(since):
            if invoice.is_sales_invoice:
                await _import_if_missing(session_factory, invoice, summary)
    except Exception as e:
        summary.errors += 1
        logger.error(f"Sweep: listing invoices since {since} failed: {e}")
        await _record_item_failure(session_factory, "new_invoices", e)


async def _store_summary(
    session_factory: async_sessionmaker[AsyncSession],
    summary: SweepSummary,
) -> None:
    try:
        async with session_factory() as db:
            row = await db.get(SystemSetting, LAST_SWEEP_SETTING_KEY)
            if not row:
                row = SystemSetting(key=LAST_SWEEP_SETTING_KEY, value={})
                db.add(row)
            row.set_value(summary.to_dict())
            await db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Could not store sweep summary: {e}")


async def run_reconciliation_sweep(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: LedgerClient,
) -> SweepSummary:
    """Run both passes and return what was checked, updated and failed."""
    summary = SweepSummary()
    logger.info("Reconciliation sweep started")

    await _reconcile_awaiting_payment(session_factory, ledger, summary)
    await _import_recent_invoices(session_factory, ledger, summary)

    summary.timestamp = utcnow()
    await _store_summary(session_factory, summary)
    logger.info(
        f"Reconciliation sweep finished: checked={summary.checked} "
        f"updated={summary.updated} imported={summary.imported} errors={summary.errors}"
    )
    return summary
