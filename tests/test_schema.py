"""
Tests for the database schema: canonical and placeholder uniqueness.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError

from ledgersync.models import Sale


async def insert(session_factory, **kwargs) -> None:
    async with session_factory() as db:
        db.add(Sale(**kwargs))
        await db.commit()


class TestInvoiceUniqueness:

    @pytest.mark.asyncio
    async def test_two_canonical_rows_rejected(self, session_factory):
        await insert(session_factory, external_invoice_id="inv-1")

        with pytest.raises(IntegrityError):
            await insert(session_factory, external_invoice_id="inv-1")

    @pytest.mark.asyncio
    async def test_two_placeholders_rejected(self, session_factory):
        await insert(session_factory, external_invoice_id="inv-1", needs_allocation=True)

        with pytest.raises(IntegrityError):
            await insert(session_factory, external_invoice_id="inv-1", needs_allocation=True)

    @pytest.mark.asyncio
    async def test_canonical_and_placeholder_coexist(self, session_factory):
        await insert(session_factory, external_invoice_id="inv-1", needs_allocation=True)
        await insert(session_factory, external_invoice_id="inv-1")

    @pytest.mark.asyncio
    async def test_deleted_rows_do_not_count(self, session_factory):
        await insert(
            session_factory,
            external_invoice_id="inv-1",
            deleted_at=datetime.now(timezone.utc),
        )
        await insert(session_factory, external_invoice_id="inv-1")

    @pytest.mark.asyncio
    async def test_unlinked_sales_unrestricted(self, session_factory):
        await insert(session_factory)
        await insert(session_factory)


class TestTables:

    @pytest.mark.asyncio
    async def test_tables_exist(self, db_engine):
        async with db_engine.connect() as conn:
            tables = await conn.run_sync(lambda c: inspect(c).get_table_names())

        assert {"sales", "buyers", "errors", "audit_logs", "system_settings"} <= set(tables)

    @pytest.mark.asyncio
    async def test_sales_columns(self, db_engine):
        async with db_engine.connect() as conn:
            columns = await conn.run_sync(
                lambda c: {col["name"] for col in inspect(c).get_columns("sales")}
            )

        for name in (
            "status",
            "external_invoice_id",
            "needs_allocation",
            "commission_locked",
            "gross_margin",
            "commissionable_margin",
            "deleted_at",
            "error_flag",
        ):
            assert name in columns

    @pytest.mark.asyncio
    async def test_partial_indexes(self, db_engine):
        async with db_engine.connect() as conn:
            indexes = await conn.run_sync(lambda c: inspect(c).get_indexes("sales"))

        unique = {ix["name"] for ix in indexes if ix["unique"]}
        assert "uq_sales_canonical_external_invoice" in unique
        assert "uq_sales_placeholder_external_invoice" in unique
