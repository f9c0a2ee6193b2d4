"""
Tests for invoice adoption, creation and placeholder import.
"""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from ledgersync.errors import (
    ConflictError,
    ForbiddenError,
    LedgerTransientError,
    NotFoundError,
    ValidationError,
)
from ledgersync.models import AuditAction, AuditLog, Buyer, Sale, SaleSource, SaleStatus
from ledgersync.services.sync import (
    InvoiceLine,
    NewInvoice,
    SaleCosts,
    adopt_invoice,
    create_invoice_for_sale,
    find_sales_for_invoice,
    import_placeholder,
)


async def count_live_sales(session_factory, invoice_id: str) -> int:
    async with session_factory() as db:
        return await db.scalar(
            select(func.count(Sale.id)).where(
                Sale.external_invoice_id == invoice_id,
                Sale.deleted_at.is_(None),
            )
        )


# ── Placeholder import ───────────────────────────────────


class TestImportPlaceholder:

    @pytest.mark.asyncio
    async def test_creates_placeholder_and_buyer(self, db_session, ledger):
        invoice = ledger.put("inv-1", number="INV-0001")

        sale, created = await import_placeholder(db_session, invoice)
        await db_session.commit()

        assert created
        assert sale.needs_allocation
        assert sale.source == SaleSource.LEDGER_IMPORT
        assert sale.status == SaleStatus.DRAFT
        assert sale.sale_reference == f"SL-{sale.id:04d}"
        assert sale.sale_amount_ex_vat == Decimal("100.00")
        assert sale.sale_amount_inc_vat == Decimal("120.00")

        buyer = await db_session.get(Buyer, sale.buyer_id)
        assert buyer.external_contact_id == "contact-1"

    @pytest.mark.asyncio
    async def test_is_idempotent(self, db_session, session_factory, ledger):
        invoice = ledger.put("inv-1")

        first, created = await import_placeholder(db_session, invoice)
        await db_session.commit()
        second, created_again = await import_placeholder(db_session, invoice)

        assert created and not created_again
        assert second.id == first.id
        assert await count_live_sales(session_factory, "inv-1") == 1

    @pytest.mark.asyncio
    async def test_rejects_purchase_invoice(self, db_session, ledger):
        invoice = ledger.put("bill-1", invoice_type="ACCPAY")

        with pytest.raises(ValidationError):
            await import_placeholder(db_session, invoice)

    @pytest.mark.asyncio
    async def test_reuses_buyer_by_name(self, db_session, ledger, buyer_factory):
        buyer = await buyer_factory(name="Jane Buyer", external_contact_id=None)
        invoice = ledger.put("inv-1", contact_id="contact-9", contact_name="jane buyer")

        sale, _ = await import_placeholder(db_session, invoice)

        assert sale.buyer_id == buyer.id


# ── Adoption ─────────────────────────────────────────────


class TestAdoptInvoice:

    @pytest.mark.asyncio
    async def test_adopt_replaces_placeholder(self, db_session, session_factory, ledger, ops_actor):
        invoice = ledger.put("inv-1")
        placeholder, _ = await import_placeholder(db_session, invoice)
        await db_session.commit()

        costs = SaleCosts(buy_price=Decimal("60"), shopper_id="shopper-s", item_title="Watch")
        sale = await adopt_invoice(db_session, ledger, "inv-1", "uk_standard", costs, ops_actor)
        await db_session.commit()

        assert sale.id != placeholder.id
        assert not sale.needs_allocation
        assert sale.source == SaleSource.ADOPTED
        assert sale.status == SaleStatus.INVOICED
        assert sale.external_status == "AUTHORISED"
        assert sale.gross_margin == Decimal("40.00")
        assert sale.shopper_id == "shopper-s"

        async with session_factory() as db:
            retired = await db.get(Sale, placeholder.id)
            assert retired.is_deleted
            assert retired.deleted_by == "ops-1"

            canonical, remaining = await find_sales_for_invoice(db, "inv-1")
            assert canonical.id == sale.id
            assert remaining is None

            audit = await db.scalar(
                select(AuditLog).where(AuditLog.action == AuditAction.ADOPT_INVOICE)
            )
            assert audit.action_metadata["replaced_placeholder_id"] == placeholder.id

    @pytest.mark.asyncio
    async def test_adopt_without_placeholder(self, db_session, ledger, ops_actor):
        ledger.put("inv-2", status="PAID", amount_due="0", amount_paid="120.00")

        sale = await adopt_invoice(db_session, ledger, "inv-2", "uk_standard", SaleCosts(), ops_actor)

        assert sale.status == SaleStatus.PAID
        assert sale.paid_date is not None

    @pytest.mark.asyncio
    async def test_adopt_existing_canonical_conflicts(
        self, db_session, session_factory, ledger, sale_factory, ops_actor
    ):
        await sale_factory(external_invoice_id="inv-1", status=SaleStatus.INVOICED)
        ledger.put("inv-1")

        with pytest.raises(ConflictError):
            await adopt_invoice(db_session, ledger, "inv-1", "uk_standard", SaleCosts(), ops_actor)

        assert await count_live_sales(session_factory, "inv-1") == 1

    @pytest.mark.asyncio
    async def test_unknown_invoice(self, db_session, ledger, ops_actor):
        with pytest.raises(NotFoundError):
            await adopt_invoice(db_session, ledger, "nope", "uk_standard", SaleCosts(), ops_actor)

    @pytest.mark.asyncio
    async def test_unknown_vat_tag(self, db_session, ledger, ops_actor):
        ledger.put("inv-1")

        with pytest.raises(ValidationError):
            await adopt_invoice(db_session, ledger, "inv-1", "moon_tax", SaleCosts(), ops_actor)

    @pytest.mark.asyncio
    async def test_shopper_cannot_adopt(self, db_session, ledger, shopper_s):
        ledger.put("inv-1")

        with pytest.raises(ForbiddenError):
            await adopt_invoice(db_session, ledger, "inv-1", "uk_standard", SaleCosts(), shopper_s)


# ── Creation ─────────────────────────────────────────────


class TestCreateInvoice:

    @pytest.mark.asyncio
    async def test_creates_invoice_and_sale(self, db_session, ledger, buyer_factory, ops_actor):
        buyer = await buyer_factory()
        request = NewInvoice(
            buyer_id=buyer.id,
            vat_tag="uk_standard",
            lines=[InvoiceLine(description="Vintage watch", unit_amount=Decimal("1000"))],
            costs=SaleCosts(buy_price=Decimal("600"), shopper_id="shopper-s"),
        )

        sale = await create_invoice_for_sale(db_session, ledger, request, ops_actor)
        await db_session.commit()

        assert sale.source == SaleSource.INVOICE_CREATED
        assert sale.status == SaleStatus.INVOICED
        assert sale.sale_amount_ex_vat == Decimal("1000.00")
        assert sale.sale_amount_inc_vat == Decimal("1200.00")
        assert sale.gross_margin == Decimal("400.00")
        assert sale.external_invoice_id == "new-1"

        call = ledger.created[0]
        assert call["contact_id"] == "contact-1"
        assert call["account_code"] == "425"
        assert call["tax_type"] == "OUTPUT2"

    @pytest.mark.asyncio
    async def test_margin_scheme_is_zero_rated(self, db_session, ledger, buyer_factory, ops_actor):
        buyer = await buyer_factory()
        request = NewInvoice(
            buyer_id=buyer.id,
            vat_tag="margin_scheme",
            lines=[InvoiceLine(description="Bag", unit_amount=Decimal("500"), quantity=Decimal("2"))],
        )

        sale = await create_invoice_for_sale(db_session, ledger, request, ops_actor)

        assert sale.sale_amount_ex_vat == sale.sale_amount_inc_vat == Decimal("1000.00")
        assert ledger.created[0]["account_code"] == "424"

    @pytest.mark.asyncio
    async def test_ledger_failure_creates_nothing(
        self, db_session, session_factory, ledger, buyer_factory, ops_actor
    ):
        buyer = await buyer_factory()
        ledger.create_error = LedgerTransientError("Ledger down")
        request = NewInvoice(
            buyer_id=buyer.id,
            vat_tag="uk_standard",
            lines=[InvoiceLine(description="Watch", unit_amount=Decimal("100"))],
        )

        with pytest.raises(LedgerTransientError):
            await create_invoice_for_sale(db_session, ledger, request, ops_actor)
        await db_session.rollback()

        async with session_factory() as db:
            assert await db.scalar(select(func.count(Sale.id))) == 0

    @pytest.mark.asyncio
    async def test_buyer_without_contact(self, db_session, ledger, buyer_factory, ops_actor):
        buyer = await buyer_factory(external_contact_id=None)
        request = NewInvoice(
            buyer_id=buyer.id,
            vat_tag="uk_standard",
            lines=[InvoiceLine(description="Watch", unit_amount=Decimal("100"))],
        )

        with pytest.raises(ValidationError):
            await create_invoice_for_sale(db_session, ledger, request, ops_actor)
        assert ledger.created == []

    @pytest.mark.asyncio
    async def test_no_lines(self, db_session, ledger, buyer_factory, ops_actor):
        buyer = await buyer_factory()

        with pytest.raises(ValidationError):
            await create_invoice_for_sale(
                db_session, ledger, NewInvoice(buyer_id=buyer.id, vat_tag="export", lines=[]), ops_actor
            )
