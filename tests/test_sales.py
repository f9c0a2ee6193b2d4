"""
Tests for sale maintenance: VAT repair, margins, soft delete and restore.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from ledgersync.auth.actor import Actor, ActorRole
from ledgersync.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from ledgersync.models import AuditAction, AuditLog, ErrorRecord, IncidentCategory, Sale, SaleStatus
from ledgersync.services.lifecycle import load_sale
from ledgersync.services.sales import (
    fix_sale_vat,
    format_sale_reference,
    recalculate_margins,
    recalculate_sale_margins,
    restore_sale,
    soft_delete_sale,
)

SUPERADMIN = Actor(actor_id="root", role=ActorRole.SUPERADMIN)


def test_sale_reference_format():
    assert format_sale_reference(7) == "SL-0007"
    assert format_sale_reference(12345) == "SL-12345"


class TestFixVat:

    @pytest.mark.asyncio
    async def test_repairs_back_calculated_zero_rate(self, db_session, sale_factory):
        sale = await sale_factory(
            vat_tag="margin_scheme",
            sale_amount_ex_vat=Decimal("1000.00"),
            sale_amount_inc_vat=Decimal("1200.00"),
            buy_price=Decimal("700.00"),
        )

        fixed_sale, fixed = await fix_sale_vat(db_session, sale.id, SUPERADMIN)

        assert fixed
        assert fixed_sale.sale_amount_ex_vat == Decimal("1200.00")
        assert fixed_sale.sale_amount_inc_vat == Decimal("1200.00")
        assert fixed_sale.gross_margin == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_leaves_correct_sale_alone(self, db_session, sale_factory):
        sale = await sale_factory(vat_tag="uk_standard")

        _, fixed = await fix_sale_vat(db_session, sale.id, SUPERADMIN)

        assert not fixed

    @pytest.mark.asyncio
    async def test_requires_vat_tag(self, db_session, sale_factory):
        sale = await sale_factory(vat_tag=None)

        with pytest.raises(ValidationError):
            await fix_sale_vat(db_session, sale.id, SUPERADMIN)


class TestSoftDelete:

    @pytest.mark.asyncio
    async def test_delete_and_restore(self, db_session, sale_factory, finance_actor):
        sale = await sale_factory(external_invoice_id="inv-1")

        deleted = await soft_delete_sale(db_session, sale.id, finance_actor, reason="duplicate")
        assert deleted.is_deleted
        assert deleted.deleted_by == "fin-1"

        with pytest.raises(NotFoundError):
            await load_sale(db_session, sale.id)

        restored = await restore_sale(db_session, sale.id, finance_actor)
        assert not restored.is_deleted

    @pytest.mark.asyncio
    async def test_terminal_sale_cannot_be_deleted(self, db_session, sale_factory, finance_actor):
        sale = await sale_factory(status=SaleStatus.COMMISSION_PAID)

        with pytest.raises(ValidationError):
            await soft_delete_sale(db_session, sale.id, finance_actor)

    @pytest.mark.asyncio
    async def test_shopper_cannot_delete(self, db_session, sale_factory, shopper_s):
        sale = await sale_factory()

        with pytest.raises(ForbiddenError):
            await soft_delete_sale(db_session, sale.id, shopper_s)

    @pytest.mark.asyncio
    async def test_restore_clashing_invoice(self, db_session, sale_factory, finance_actor):
        old = await sale_factory(external_invoice_id="inv-1")
        await soft_delete_sale(db_session, old.id, finance_actor)
        await db_session.commit()
        await sale_factory(external_invoice_id="inv-1")

        with pytest.raises(ConflictError):
            await restore_sale(db_session, old.id, finance_actor)

    @pytest.mark.asyncio
    async def test_restore_live_sale(self, db_session, sale_factory, finance_actor):
        sale = await sale_factory()

        with pytest.raises(ConflictError):
            await restore_sale(db_session, sale.id, finance_actor)


class TestRecalculate:

    @pytest.mark.asyncio
    async def test_loss_making_sale_is_reported(self, db_session, sale_factory):
        sale = await sale_factory()
        sale = await load_sale(db_session, sale.id)
        sale.buy_price = Decimal("1500.00")

        margins = await recalculate_sale_margins(db_session, sale)

        assert margins.gross_margin == Decimal("-500.00")
        assert sale.gross_margin == Decimal("-500.00")
        incident = await db_session.scalar(select(ErrorRecord).where(ErrorRecord.sale_id == sale.id))
        assert incident.category == IncidentCategory.DATA_INTEGRITY
        assert set(incident.details["kinds"]) == {"negative_margin", "buy_exceeds_sale"}


async def make_stale(session_factory, sale_id: int, **values) -> None:
    async with session_factory() as db:
        await db.execute(update(Sale).where(Sale.id == sale_id).values(**values))
        await db.commit()


class TestBulkRecalculate:

    @pytest.mark.asyncio
    async def test_dry_run_reports_without_writing(
        self, db_session, session_factory, sale_factory, fetch_sale, finance_actor
    ):
        stale = await sale_factory()
        fresh = await sale_factory()
        await make_stale(session_factory, stale.id, gross_margin=Decimal("999.00"))

        result = await recalculate_margins(db_session, finance_actor)

        assert result.dry_run
        assert result.processed == 2
        assert result.skipped == 1
        assert result.updated == 0
        assert [c.sale_id for c in result.changes] == [stale.id]
        assert result.changes[0].new_gross_margin == Decimal("400.00")
        assert (await fetch_sale(stale.id)).gross_margin == Decimal("999.00")
        assert fresh.id not in {c.sale_id for c in result.changes}

    @pytest.mark.asyncio
    async def test_applies_changes_and_audits(
        self, db_session, session_factory, sale_factory, fetch_sale, finance_actor
    ):
        sale = await sale_factory()
        await make_stale(
            session_factory, sale.id,
            gross_margin=Decimal("1000.00"), commissionable_margin=Decimal("1000.00"),
        )

        result = await recalculate_margins(db_session, finance_actor, dry_run=False)

        assert result.updated == 1
        stored = await fetch_sale(sale.id)
        assert stored.gross_margin == Decimal("400.00")
        assert stored.commissionable_margin == Decimal("400.00")
        async with session_factory() as db:
            audits = await db.scalar(
                select(func.count(AuditLog.id)).where(
                    AuditLog.action == AuditAction.RECALCULATE_MARGINS
                )
            )
        assert audits == 1

        again = await recalculate_margins(db_session, finance_actor, dry_run=False)
        assert again.updated == 0
        assert again.skipped == 1

    @pytest.mark.asyncio
    async def test_records_integrity_incident_per_sale(
        self, db_session, session_factory, sale_factory, finance_actor
    ):
        losses = [await sale_factory(buy_price=Decimal("1500.00")) for _ in range(2)]
        for sale in losses:
            await make_stale(session_factory, sale.id, gross_margin=Decimal("0.00"))

        await recalculate_margins(db_session, finance_actor, dry_run=False)

        async with session_factory() as db:
            incidents = (
                await db.execute(
                    select(ErrorRecord).where(ErrorRecord.category == IncidentCategory.DATA_INTEGRITY)
                )
            ).scalars().all()
        assert {i.sale_id for i in incidents} == {s.id for s in losses}

    @pytest.mark.asyncio
    async def test_selected_sales_and_deleted_skipped(
        self, db_session, sale_factory, finance_actor
    ):
        chosen = await sale_factory()
        await sale_factory()
        deleted = await sale_factory(deleted_at=datetime(2026, 1, 1, tzinfo=timezone.utc))

        result = await recalculate_margins(db_session, finance_actor, sale_ids=[chosen.id, deleted.id])

        assert result.processed == 1

    @pytest.mark.asyncio
    async def test_shopper_forbidden(self, db_session, shopper_s):
        with pytest.raises(ForbiddenError):
            await recalculate_margins(db_session, shopper_s)
