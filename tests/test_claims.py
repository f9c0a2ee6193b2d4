"""
Tests for claiming and allocating placeholder sales.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from ledgersync.errors import ConflictError, ForbiddenError, NotFoundError
from ledgersync.models import AuditAction, AuditLog, Buyer, Sale, SaleStatus
from ledgersync.services.claims import allocate_sale, claim_sale, list_claimable_sales


@pytest.fixture
def placeholder_factory(sale_factory):
    async def _create(**kwargs):
        defaults = {
            "status": SaleStatus.INVOICED,
            "needs_allocation": True,
            "external_invoice_id": "inv-claim",
        }
        defaults.update(kwargs)
        return await sale_factory(**defaults)

    return _create


class TestClaimSale:

    @pytest.mark.asyncio
    async def test_claim_success(self, db_session, placeholder_factory, shopper_s):
        sale = await placeholder_factory()

        result = await claim_sale(db_session, sale.id, shopper_s)

        assert result.sale.shopper_id == "shopper-s"
        assert not result.sale.needs_allocation
        assert result.sale.allocated_by == "shopper-s"
        assert result.owner_assigned is False

        audit = await db_session.scalar(
            select(AuditLog).where(AuditLog.action == AuditAction.CLAIM_SALE)
        )
        assert audit.target_id == sale.id

    @pytest.mark.asyncio
    async def test_second_claim_conflicts(self, db_session, placeholder_factory, shopper_s, shopper_t):
        sale = await placeholder_factory()
        await claim_sale(db_session, sale.id, shopper_s)

        with pytest.raises(ConflictError):
            await claim_sale(db_session, sale.id, shopper_t)

    @pytest.mark.asyncio
    async def test_stale_reader_loses_race(
        self, session_factory, placeholder_factory, shopper_s, shopper_t, fetch_sale
    ):
        sale = await placeholder_factory()

        async with session_factory() as first, session_factory() as second:
            # Both sessions see the sale unclaimed before either writes
            assert (await first.get(Sale, sale.id)).shopper_id is None
            assert (await second.get(Sale, sale.id)).shopper_id is None

            await claim_sale(first, sale.id, shopper_s)

            with pytest.raises(ConflictError):
                await claim_sale(second, sale.id, shopper_t)

        assert (await fetch_sale(sale.id)).shopper_id == "shopper-s"

        async with session_factory() as db:
            claims = await db.scalar(
                select(func.count(AuditLog.id)).where(AuditLog.action == AuditAction.CLAIM_SALE)
            )
        assert claims == 1

    @pytest.mark.asyncio
    async def test_buyer_owned_by_someone_else(
        self, db_session, placeholder_factory, buyer_factory, shopper_t
    ):
        buyer = await buyer_factory(owner_id="shopper-s")
        sale = await placeholder_factory(buyer_id=buyer.id)

        with pytest.raises(ForbiddenError):
            await claim_sale(db_session, sale.id, shopper_t)

    @pytest.mark.asyncio
    async def test_unowned_buyer_gets_claimant(
        self, db_session, session_factory, placeholder_factory, buyer_factory, shopper_s
    ):
        buyer = await buyer_factory()
        sale = await placeholder_factory(buyer_id=buyer.id)

        result = await claim_sale(db_session, sale.id, shopper_s)

        assert result.owner_assigned
        async with session_factory() as db:
            stored = await db.get(Buyer, buyer.id)
            assert stored.owner_id == "shopper-s"
            assert stored.owner_changed_by == "shopper-s"

    @pytest.mark.asyncio
    async def test_buyer_already_owned_by_claimant(
        self, db_session, placeholder_factory, buyer_factory, shopper_s
    ):
        buyer = await buyer_factory(owner_id="shopper-s")
        sale = await placeholder_factory(buyer_id=buyer.id)

        result = await claim_sale(db_session, sale.id, shopper_s)

        assert result.sale.shopper_id == "shopper-s"
        assert result.owner_assigned is False

    @pytest.mark.asyncio
    async def test_missing_sale(self, db_session, shopper_s):
        with pytest.raises(NotFoundError):
            await claim_sale(db_session, 999, shopper_s)

    @pytest.mark.asyncio
    async def test_deleted_sale(self, db_session, placeholder_factory, shopper_s):
        sale = await placeholder_factory(deleted_at=datetime.now(timezone.utc))

        with pytest.raises(NotFoundError):
            await claim_sale(db_session, sale.id, shopper_s)

    @pytest.mark.asyncio
    async def test_canonical_sale_cannot_be_claimed(self, db_session, sale_factory, shopper_s):
        sale = await sale_factory(shopper_id="shopper-x")

        with pytest.raises(ConflictError):
            await claim_sale(db_session, sale.id, shopper_s)


class TestAllocateSale:

    @pytest.mark.asyncio
    async def test_finance_allocates(self, db_session, placeholder_factory, finance_actor):
        sale = await placeholder_factory()

        allocated = await allocate_sale(db_session, sale.id, "shopper-t", finance_actor)

        assert allocated.shopper_id == "shopper-t"
        assert allocated.allocated_by == "fin-1"
        assert not allocated.needs_allocation

    @pytest.mark.asyncio
    async def test_shopper_cannot_allocate(self, db_session, placeholder_factory, shopper_s):
        sale = await placeholder_factory()

        with pytest.raises(ForbiddenError):
            await allocate_sale(db_session, sale.id, "shopper-s", shopper_s)

    @pytest.mark.asyncio
    async def test_already_allocated(self, db_session, placeholder_factory, finance_actor):
        sale = await placeholder_factory()
        await allocate_sale(db_session, sale.id, "shopper-t", finance_actor)

        with pytest.raises(ConflictError):
            await allocate_sale(db_session, sale.id, "shopper-s", finance_actor)


class TestClaimableSales:

    @pytest.mark.asyncio
    async def test_lists_only_claimable_for_actor(
        self, db_session, sale_factory, placeholder_factory, buyer_factory, shopper_s
    ):
        own_buyer = await buyer_factory(name="Own", external_contact_id="c-own", owner_id="shopper-s")
        other_buyer = await buyer_factory(name="Other", external_contact_id="c-other", owner_id="shopper-t")
        free_buyer = await buyer_factory(name="Free", external_contact_id="c-free")

        no_buyer = await placeholder_factory(external_invoice_id="inv-1")
        owned = await placeholder_factory(external_invoice_id="inv-2", buyer_id=own_buyer.id)
        unowned = await placeholder_factory(external_invoice_id="inv-3", buyer_id=free_buyer.id)
        await placeholder_factory(external_invoice_id="inv-4", buyer_id=other_buyer.id)
        await placeholder_factory(external_invoice_id="inv-5", shopper_id="shopper-t")
        await placeholder_factory(
            external_invoice_id="inv-6", deleted_at=datetime(2026, 1, 1, tzinfo=timezone.utc)
        )
        await sale_factory(external_invoice_id="inv-7")

        sales = await list_claimable_sales(db_session, shopper_s)

        assert {s.id for s in sales} == {no_buyer.id, owned.id, unowned.id}
        by_id = {s.id: s for s in sales}
        assert by_id[owned.id].buyer.name == "Own"
        assert by_id[no_buyer.id].buyer is None

    @pytest.mark.asyncio
    async def test_newest_first(self, db_session, placeholder_factory, shopper_s):
        older = await placeholder_factory(
            external_invoice_id="inv-old", sale_date=datetime(2026, 1, 1, tzinfo=timezone.utc)
        )
        newer = await placeholder_factory(
            external_invoice_id="inv-new", sale_date=datetime(2026, 6, 1, tzinfo=timezone.utc)
        )

        sales = await list_claimable_sales(db_session, shopper_s)

        assert [s.id for s in sales] == [newer.id, older.id]

    @pytest.mark.asyncio
    async def test_claimed_sale_drops_out(self, db_session, placeholder_factory, shopper_s, shopper_t):
        sale = await placeholder_factory()
        await claim_sale(db_session, sale.id, shopper_s)

        assert await list_claimable_sales(db_session, shopper_t) == []
