"""
Idempotent creation and adoption of ledger invoices.

Rules:
- At most one canonical (non-deleted, non-placeholder) sale per invoice id.
  Adopting or creating against an invoice that already has one is a conflict.
- A placeholder for the invoice is replaced: the canonical sale is inserted
  first and the placeholder soft-deleted afterwards, in the same unit of work.
- Placeholder import never inserts twice for the same invoice.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.auth.actor import ADOPTION_ROLES, SYSTEM_ACTOR, Actor
from ledgersync.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from ledgersync.models import AuditAction, Buyer, Sale, SaleSource, SaleStatus, TriggeredBy
from ledgersync.services.economics import (
    calculate_vat,
    get_vat_treatment,
    to_money,
    validate_sale_vat,
)
from ledgersync.services.external_status import apply_external_status
from ledgersync.services.ledger_client import (
    LedgerClient,
    LedgerContact,
    LedgerInvoice,
    LedgerLineItem,
)
from ledgersync.services.sales import apply_margins, format_sale_reference, record_integrity_warnings
from ledgersync.utils.audit import log_action
from ledgersync.utils.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SaleCosts:
    """Cost side of a sale, supplied by the person adopting or creating it."""

    buy_price: Decimal = Decimal("0")
    shipping_cost: Decimal = Decimal("0")
    card_fees: Decimal = Decimal("0")
    direct_costs: Decimal = Decimal("0")
    introducer_commission: Decimal = Decimal("0")
    shopper_id: Optional[str] = None
    item_title: Optional[str] = None
    authenticity_status: Optional[str] = None


@dataclass
class InvoiceLine:
    description: str
    unit_amount: Decimal
    quantity: Decimal = Decimal("1")


@dataclass
class NewInvoice:
    buyer_id: int
    vat_tag: str
    lines: list[InvoiceLine]
    costs: SaleCosts = field(default_factory=SaleCosts)
    currency: str = "GBP"
    reference: Optional[str] = None
    idempotency_key: Optional[str] = None


# ── Lookups ────────────────────────────────────────────────


async def find_sales_for_invoice(
    db: AsyncSession,
    invoice_id: str,
    invoice_number: Optional[str] = None,
) -> tuple[Optional[Sale], Optional[Sale]]:
    """
    Return (canonical, placeholder) for an invoice, ignoring deleted rows.

    Matches on invoice id, falling back to invoice number.
    """
    result = await db.execute(
        select(Sale).where(
            Sale.external_invoice_id == invoice_id,
            Sale.deleted_at.is_(None),
        )
    )
    sales = list(result.scalars().all())

    if not sales and invoice_number:
        result = await db.execute(
            select(Sale).where(
                Sale.external_invoice_number == invoice_number,
                Sale.deleted_at.is_(None),
            )
        )
        sales = list(result.scalars().all())

    canonical = next((s for s in sales if not s.needs_allocation), None)
    placeholder = next((s for s in sales if s.needs_allocation), None)
    return canonical, placeholder


async def find_or_create_buyer(
    db: AsyncSession,
    contact: Optional[LedgerContact],
) -> Optional[Buyer]:
    """Match a ledger contact to a buyer by contact id, then by name."""
    if contact is None or not (contact.contact_id or contact.name):
        return None

    if contact.contact_id:
        buyer = await db.scalar(
            select(Buyer).where(Buyer.external_contact_id == contact.contact_id)
        )
        if buyer:
            return buyer

    if contact.name:
        buyer = await db.scalar(
            select(Buyer)
            .where(func.lower(Buyer.name) == contact.name.strip().lower())
            .order_by(Buyer.id)
            .limit(1)
        )
        if buyer:
            if buyer.external_contact_id is None and contact.contact_id:
                buyer.external_contact_id = contact.contact_id
            return buyer

    buyer = Buyer(
        name=(contact.name or contact.contact_id or "Unknown").strip(),
        email=contact.email_address,
        external_contact_id=contact.contact_id,
    )
    db.add(buyer)
    await db.flush()
    logger.info(f"Created buyer {buyer.id} for ledger contact {contact.contact_id}")
    return buyer


def _invoice_amounts(invoice: LedgerInvoice) -> tuple[Decimal, Decimal]:
    """(ex VAT, inc VAT) as reported by the ledger."""
    inc = to_money(invoice.total)
    ex = to_money(invoice.sub_total) if invoice.sub_total is not None else inc
    return ex, inc


# ── Placeholder import ─────────────────────────────────────


async def import_placeholder(
    db: AsyncSession,
    invoice: LedgerInvoice,
    actor: Actor = SYSTEM_ACTOR,
) -> tuple[Sale, bool]:
    """
    Create an unallocated placeholder sale for a ledger invoice.

    Returns (sale, created). If the invoice is already represented, the
    existing row is returned. A concurrent import that wins the unique index
    rolls this session back and returns the winner's row.
    """
    canonical, placeholder = await find_sales_for_invoice(
        db, invoice.invoice_id, invoice.invoice_number
    )
    existing = canonical or placeholder
    if existing:
        return existing, False

    if not invoice.is_sales_invoice:
        raise ValidationError(f"Invoice {invoice.invoice_id} is not a sales invoice")

    buyer = await find_or_create_buyer(db, invoice.contact)
    ex, inc = _invoice_amounts(invoice)

    sale = Sale(
        status=SaleStatus.DRAFT,
        source=SaleSource.LEDGER_IMPORT,
        sale_date=invoice.invoice_date,
        currency=invoice.currency_code or "GBP",
        item_title=invoice.line_items[0].description[:255] if invoice.line_items else None,
        sale_amount_ex_vat=ex,
        sale_amount_inc_vat=inc,
        external_invoice_id=invoice.invoice_id,
        external_invoice_number=invoice.invoice_number,
        needs_allocation=True,
        buyer_id=buyer.id if buyer else None,
        internal_notes=f"Imported from ledger invoice {invoice.invoice_number or invoice.invoice_id}",
    )
    apply_margins(sale)
    db.add(sale)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        canonical, placeholder = await find_sales_for_invoice(db, invoice.invoice_id)
        existing = canonical or placeholder
        if existing is None:
            raise
        logger.info(f"Invoice {invoice.invoice_id} imported concurrently as sale {existing.id}")
        return existing, False

    sale.sale_reference = format_sale_reference(sale.id)
    await db.flush()

    await log_action(
        db=db,
        actor_id=actor.actor_id,
        action=AuditAction.IMPORT_PLACEHOLDER,
        target_type="sale",
        target_id=sale.id,
        action_metadata={"external_invoice_id": invoice.invoice_id},
    )
    logger.info(f"Placeholder sale {sale.id} created for invoice {invoice.invoice_id}")
    return sale, True


# ── Promote and replace ────────────────────────────────────


async def promote_and_replace(
    db: AsyncSession,
    sale: Sale,
    placeholder: Optional[Sale],
    invoice: LedgerInvoice,
    actor: Actor,
    action: AuditAction,
) -> Sale:
    """
    Insert `sale` as the canonical row for `invoice`, then retire the placeholder.

    The canonical insert happens first; the placeholder lives in its own
    unique index, so both may briefly coexist but two canonical rows never
    can. Does not commit.
    """
    sale.needs_allocation = False
    sale.status = SaleStatus.DRAFT
    sale.external_invoice_id = invoice.invoice_id
    sale.external_invoice_number = invoice.invoice_number
    apply_margins(sale)

    db.add(sale)
    try:
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        raise ConflictError(
            f"Invoice {invoice.invoice_id} already belongs to another sale",
            details={"external_invoice_id": invoice.invoice_id},
        ) from e

    sale.sale_reference = format_sale_reference(sale.id)
    await db.flush()

    await apply_external_status(db, sale, invoice)

    if placeholder is not None:
        result = await db.execute(
            update(Sale)
            .where(
                Sale.id == placeholder.id,
                Sale.needs_allocation.is_(True),
                Sale.deleted_at.is_(None),
            )
            .values(
                deleted_at=utcnow(),
                deleted_by=actor.actor_id,
                internal_notes=f"Replaced by sale {sale.id}",
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConflictError(
                f"Placeholder sale {placeholder.id} changed while being replaced",
                details={"placeholder_id": placeholder.id},
            )

    await record_integrity_warnings(db, sale, TriggeredBy.SYNC)
    await log_action(
        db=db,
        actor_id=actor.actor_id,
        action=action,
        target_type="sale",
        target_id=sale.id,
        action_metadata={
            "external_invoice_id": invoice.invoice_id,
            "replaced_placeholder_id": placeholder.id if placeholder else None,
        },
    )
    return sale


def _check_adoption_role(actor: Actor) -> None:
    if actor.role not in ADOPTION_ROLES:
        raise ForbiddenError(f"{actor.role.value} may not adopt or create invoices")


async def adopt_invoice(
    db: AsyncSession,
    ledger: LedgerClient,
    external_invoice_id: str,
    vat_tag: str,
    costs: SaleCosts,
    actor: Actor,
) -> Sale:
    """
    Turn an existing ledger invoice into a fully specified canonical sale.

    Raises:
        ConflictError: a canonical sale already holds the invoice
        NotFoundError: the ledger does not know the invoice
        ValidationError: not a sales invoice, or unknown VAT treatment
    """
    _check_adoption_role(actor)
    get_vat_treatment(vat_tag)

    canonical, placeholder = await find_sales_for_invoice(db, external_invoice_id)
    if canonical is not None:
        raise ConflictError(
            f"Invoice {external_invoice_id} is already held by sale {canonical.id}",
            details={"sale_id": canonical.id},
        )

    invoice = await ledger.get_invoice(external_invoice_id)
    if invoice is None:
        raise NotFoundError(f"Invoice {external_invoice_id} not found in ledger")
    if not invoice.is_sales_invoice:
        raise ValidationError(f"Invoice {external_invoice_id} is not a sales invoice")

    ex, inc = _invoice_amounts(invoice)
    vat_check = validate_sale_vat(vat_tag, ex, inc)
    if not vat_check.is_valid:
        logger.warning(
            f"Invoice {external_invoice_id}: VAT {vat_check.actual_amount} does not match "
            f"{vat_tag} (expected {vat_check.expected_amount})"
        )

    buyer = await find_or_create_buyer(db, invoice.contact)
    sale = Sale(
        source=SaleSource.ADOPTED,
        sale_date=invoice.invoice_date,
        vat_tag=vat_tag,
        currency=invoice.currency_code or "GBP",
        item_title=costs.item_title,
        sale_amount_ex_vat=ex,
        sale_amount_inc_vat=inc,
        buy_price=to_money(costs.buy_price),
        shipping_cost=to_money(costs.shipping_cost),
        card_fees=to_money(costs.card_fees),
        direct_costs=to_money(costs.direct_costs),
        introducer_commission=to_money(costs.introducer_commission),
        shopper_id=costs.shopper_id,
        allocated_by=actor.actor_id if costs.shopper_id else None,
        allocated_at=utcnow() if costs.shopper_id else None,
        authenticity_status=costs.authenticity_status,
        buyer_id=buyer.id if buyer else None,
    )
    sale = await promote_and_replace(
        db, sale, placeholder, invoice, actor, AuditAction.ADOPT_INVOICE
    )
    logger.info(f"Invoice {external_invoice_id} adopted as sale {sale.id} by {actor}")
    return sale


async def create_invoice_for_sale(
    db: AsyncSession,
    ledger: LedgerClient,
    request: NewInvoice,
    actor: Actor,
) -> Sale:
    """
    Create a ledger invoice and its canonical sale.

    Ledger failures abort the whole operation and reach the caller.
    """
    _check_adoption_role(actor)
    treatment = get_vat_treatment(request.vat_tag)
    if not request.lines:
        raise ValidationError("At least one line item is required")

    buyer = await db.get(Buyer, request.buyer_id)
    if buyer is None:
        raise NotFoundError(f"Buyer {request.buyer_id} not found")
    if not buyer.external_contact_id:
        raise ValidationError(f"Buyer {buyer.id} is not linked to a ledger contact")

    ex = to_money(sum((line.unit_amount * line.quantity for line in request.lines), Decimal("0")))
    if ex <= 0:
        raise ValidationError("Invoice total must be positive")
    vat = calculate_vat(request.vat_tag, ex)

    invoice = await ledger.create_invoice(
        contact_id=buyer.external_contact_id,
        line_items=[
            LedgerLineItem(
                description=line.description,
                quantity=line.quantity,
                unit_amount=line.unit_amount,
            )
            for line in request.lines
        ],
        account_code=treatment.account_code,
        tax_type=treatment.tax_type,
        jurisdiction_tag=request.vat_tag,
        currency=request.currency,
        reference=request.reference,
        idempotency_key=request.idempotency_key,
    )

    canonical, placeholder = await find_sales_for_invoice(db, invoice.invoice_id)
    if canonical is not None:
        raise ConflictError(
            f"Invoice {invoice.invoice_id} is already held by sale {canonical.id}",
            details={"sale_id": canonical.id},
        )

    costs = request.costs
    sale = Sale(
        source=SaleSource.INVOICE_CREATED,
        sale_date=invoice.invoice_date or utcnow(),
        vat_tag=request.vat_tag,
        currency=request.currency,
        item_title=costs.item_title or request.lines[0].description[:255],
        sale_amount_ex_vat=vat.ex_vat,
        sale_amount_inc_vat=vat.inc_vat,
        buy_price=to_money(costs.buy_price),
        shipping_cost=to_money(costs.shipping_cost),
        card_fees=to_money(costs.card_fees),
        direct_costs=to_money(costs.direct_costs),
        introducer_commission=to_money(costs.introducer_commission),
        shopper_id=costs.shopper_id,
        allocated_by=actor.actor_id if costs.shopper_id else None,
        allocated_at=utcnow() if costs.shopper_id else None,
        authenticity_status=costs.authenticity_status,
        buyer_id=buyer.id,
    )
    sale = await promote_and_replace(
        db, sale, placeholder, invoice, actor, AuditAction.CREATE_INVOICE
    )
    logger.info(f"Sale {sale.id} created with ledger invoice {invoice.invoice_number} by {actor}")
    return sale
