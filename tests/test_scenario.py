"""
End-to-end walk of one sale from ledger import to commission payout.
"""

import pytest
from sqlalchemy import select

from ledgersync.errors import ConflictError
from ledgersync.models import Sale, SaleStatus
from ledgersync.services.claims import claim_sale
from ledgersync.services.lifecycle import RowOutcome, lock_paid_sales, pay_commissions
from ledgersync.services.webhooks import WebhookPayload, process_webhook


def invoice_update(invoice_id: str) -> WebhookPayload:
    return WebhookPayload.model_validate({
        "events": [{"resourceId": invoice_id, "eventCategory": "INVOICE", "eventType": "UPDATE"}]
    })


@pytest.mark.asyncio
async def test_sale_from_import_to_commission_paid(
    session_factory, ledger, shopper_s, shopper_t, finance_actor, fetch_sale
):
    # Imported as a placeholder
    ledger.put("INV-1")
    await process_webhook(session_factory, ledger, invoice_update("INV-1"))

    async with session_factory() as db:
        sale = await db.scalar(select(Sale).where(Sale.external_invoice_id == "INV-1"))
    assert sale.needs_allocation
    assert sale.status == SaleStatus.INVOICED

    # S claims, T is too late
    async with session_factory() as db:
        result = await claim_sale(db, sale.id, shopper_s)
        assert result.sale.shopper_id == "shopper-s"

    async with session_factory() as db:
        with pytest.raises(ConflictError):
            await claim_sale(db, sale.id, shopper_t)

    # Ledger reports payment
    ledger.mark_paid("INV-1")
    result = await process_webhook(session_factory, ledger, invoice_update("INV-1"))
    assert result.errors == 0

    stored = await fetch_sale(sale.id)
    assert stored.status == SaleStatus.PAID
    assert stored.paid_date is not None

    # Finance locks and pays out
    async with session_factory() as db:
        locked = await lock_paid_sales(db, finance_actor)
    assert locked.total_transitioned == 1
    assert (await fetch_sale(sale.id)).status == SaleStatus.LOCKED

    async with session_factory() as db:
        paid = await pay_commissions(db, finance_actor)
    assert paid.total_transitioned == 1
    assert (await fetch_sale(sale.id)).status == SaleStatus.COMMISSION_PAID

    # Re-running payout leaves the sale alone
    async with session_factory() as db:
        rerun = await pay_commissions(db, finance_actor)
    assert rerun.total_transitioned == 0
    assert rerun.total_failed == 0

    async with session_factory() as db:
        explicit = await pay_commissions(db, finance_actor, sale_ids=[sale.id])
    assert [row.outcome for row in explicit.results] == [RowOutcome.SKIPPED]

    stored = await fetch_sale(sale.id)
    assert stored.status == SaleStatus.COMMISSION_PAID
    assert stored.shopper_id == "shopper-s"
    assert not stored.error_flag
