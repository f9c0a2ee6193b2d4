"""
Pytest configuration and fixtures.
"""

import os

# Settings are read once at import time
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("IS_PRODUCTION", "true")

import itertools
from decimal import Decimal
from typing import Any, Optional

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ledgersync.auth.actor import Actor, ActorRole
from ledgersync.errors import LedgerTransientError
from ledgersync.models import Base, Buyer, Sale, SaleStatus
from ledgersync.services.economics import calculate_margins
from ledgersync.services.ledger_client import LedgerInvoice, LedgerLineItem


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """
    File-backed SQLite engine.

    Each session gets its own connection, which lets tests hold a stale
    read in one session while another commits.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Create test database session."""
    async with session_factory() as session:
        yield session


# ── Actors ───────────────────────────────────────────────


@pytest.fixture
def finance_actor():
    return Actor(actor_id="fin-1", role=ActorRole.FINANCE)


@pytest.fixture
def ops_actor():
    return Actor(actor_id="ops-1", role=ActorRole.OPERATIONS)


@pytest.fixture
def shopper_s():
    return Actor(actor_id="shopper-s", role=ActorRole.SHOPPER)


@pytest.fixture
def shopper_t():
    return Actor(actor_id="shopper-t", role=ActorRole.SHOPPER)


# ── Fake ledger ──────────────────────────────────────────


def make_invoice(
    invoice_id: str,
    status: str = "AUTHORISED",
    number: Optional[str] = None,
    invoice_type: str = "ACCREC",
    sub_total: str = "100.00",
    total: str = "120.00",
    amount_due: Optional[str] = None,
    amount_paid: Optional[str] = None,
    contact_id: str = "contact-1",
    contact_name: str = "Jane Buyer",
    fully_paid_on: Optional[str] = None,
) -> LedgerInvoice:
    data: dict[str, Any] = {
        "InvoiceID": invoice_id,
        "InvoiceNumber": number or f"N-{invoice_id}",
        "Type": invoice_type,
        "Status": status,
        "Contact": {"ContactID": contact_id, "Name": contact_name},
        "Date": "/Date(1760745600000+0000)/",
        "SubTotal": sub_total,
        "Total": total,
        "CurrencyCode": "GBP",
        "LineItems": [{"Description": "Vintage watch", "UnitAmount": sub_total}],
    }
    if amount_due is not None:
        data["AmountDue"] = amount_due
    if amount_paid is not None:
        data["AmountPaid"] = amount_paid
    if fully_paid_on is not None:
        data["FullyPaidOnDate"] = fully_paid_on
    return LedgerInvoice.model_validate(data)


class FakeLedger:
    """In-memory stand-in for LedgerClient."""

    def __init__(self):
        self.invoices: dict[str, LedgerInvoice] = {}
        self.failing: set[str] = set()
        self.created: list[dict[str, Any]] = []
        self.create_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self._ids = itertools.count(1)

    def put(self, invoice_id: str, **kwargs) -> LedgerInvoice:
        invoice = make_invoice(invoice_id, **kwargs)
        self.invoices[invoice_id] = invoice
        return invoice

    def mark_paid(self, invoice_id: str) -> LedgerInvoice:
        invoice = self.invoices[invoice_id].model_copy(
            update={
                "status": "PAID",
                "amount_due": Decimal("0"),
                "amount_paid": self.invoices[invoice_id].total,
                "fully_paid_on_date": "/Date(1760832000000+0000)/",
            }
        )
        self.invoices[invoice_id] = invoice
        return invoice

    async def get_invoice(self, invoice_id: str) -> Optional[LedgerInvoice]:
        if invoice_id in self.failing:
            raise LedgerTransientError(f"Ledger unreachable for {invoice_id}")
        return self.invoices.get(invoice_id)

    async def iter_invoices(self, since):
        if self.list_error:
            raise self.list_error
        for invoice in list(self.invoices.values()):
            yield invoice

    async def create_invoice(
        self,
        contact_id: str,
        line_items: list[LedgerLineItem],
        account_code: str,
        tax_type: str,
        jurisdiction_tag: str,
        currency: str = "GBP",
        reference: Optional[str] = None,
        due_date=None,
        line_amount_type: str = "Exclusive",
        idempotency_key: Optional[str] = None,
    ) -> LedgerInvoice:
        if self.create_error:
            raise self.create_error
        invoice_id = f"new-{next(self._ids)}"
        self.created.append({
            "invoice_id": invoice_id,
            "contact_id": contact_id,
            "account_code": account_code,
            "tax_type": tax_type,
            "jurisdiction_tag": jurisdiction_tag,
            "currency": currency,
            "line_items": line_items,
        })
        sub_total = sum(item.unit_amount * item.quantity for item in line_items)
        return self.put(
            invoice_id,
            contact_id=contact_id,
            sub_total=str(sub_total),
            total=str(sub_total),
        )


@pytest.fixture
def ledger():
    return FakeLedger()


# ── Data builders ────────────────────────────────────────


@pytest.fixture
def sale_factory(session_factory):
    """Insert and commit a sale; returns the committed row."""

    async def _create(**kwargs) -> Sale:
        defaults: dict[str, Any] = {
            "status": SaleStatus.DRAFT,
            "vat_tag": "uk_standard",
            "sale_amount_ex_vat": Decimal("1000.00"),
            "sale_amount_inc_vat": Decimal("1200.00"),
            "buy_price": Decimal("600.00"),
        }
        defaults.update(kwargs)
        sale = Sale(**defaults)
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
        async with session_factory() as db:
            db.add(sale)
            await db.commit()
        return sale

    return _create


@pytest.fixture
def buyer_factory(session_factory):
    async def _create(**kwargs) -> Buyer:
        defaults: dict[str, Any] = {"name": "Jane Buyer", "external_contact_id": "contact-1"}
        defaults.update(kwargs)
        buyer = Buyer(**defaults)
        async with session_factory() as db:
            db.add(buyer)
            await db.commit()
        return buyer

    return _create


@pytest.fixture
def fetch_sale(session_factory):
    async def _fetch(sale_id: int) -> Sale:
        async with session_factory() as db:
            return await db.scalar(select(Sale).where(Sale.id == sale_id))

    return _fetch
