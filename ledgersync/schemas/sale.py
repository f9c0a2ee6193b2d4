"""
Sale request/response schemas.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from ledgersync.models.sale import Sale, SaleSource, SaleStatus
from ledgersync.services.lifecycle import BulkTransitionResult
from ledgersync.services.sales import MarginRecalculation
from ledgersync.services.sync import InvoiceLine, NewInvoice, SaleCosts


class SaleResponse(BaseModel):
    """Full sale view."""

    id: int
    sale_reference: Optional[str]
    status: SaleStatus
    source: SaleSource
    sale_date: Optional[datetime]
    vat_tag: Optional[str]
    currency: str

    sale_amount_ex_vat: Decimal
    sale_amount_inc_vat: Decimal
    buy_price: Decimal
    shipping_cost: Decimal
    card_fees: Decimal
    direct_costs: Decimal
    introducer_commission: Decimal
    gross_margin: Decimal
    commissionable_margin: Decimal

    external_invoice_id: Optional[str]
    external_invoice_number: Optional[str]
    external_status: Optional[str]
    paid_date: Optional[datetime]

    needs_allocation: bool
    shopper_id: Optional[str]
    buyer_id: Optional[int]

    commission_locked: bool
    commission_locked_at: Optional[datetime]
    commission_locked_by: Optional[str]
    commission_paid: bool
    commission_paid_at: Optional[datetime]

    error_flag: bool
    deleted_at: Optional[datetime]

    model_config = {"from_attributes": True}


class CostsRequest(BaseModel):
    buy_price: Decimal = Field(Decimal("0"), ge=0)
    shipping_cost: Decimal = Field(Decimal("0"), ge=0)
    card_fees: Decimal = Field(Decimal("0"), ge=0)
    direct_costs: Decimal = Field(Decimal("0"), ge=0)
    introducer_commission: Decimal = Field(Decimal("0"), ge=0)
    shopper_id: Optional[str] = Field(None, max_length=100)
    item_title: Optional[str] = Field(None, max_length=255)
    authenticity_status: Optional[str] = Field(
        None, pattern="^(verified|pending|not_verified)$"
    )

    def to_costs(self) -> SaleCosts:
        return SaleCosts(**self.model_dump())


class AdoptRequest(BaseModel):
    external_invoice_id: str = Field(..., min_length=1, max_length=100)
    vat_tag: str = Field(..., min_length=1, max_length=50)
    costs: CostsRequest = Field(default_factory=CostsRequest)


class InvoiceLineRequest(BaseModel):
    description: str = Field(..., min_length=1, max_length=4000)
    unit_amount: Decimal = Field(..., gt=0)
    quantity: Decimal = Field(Decimal("1"), gt=0)


class CreateInvoiceRequest(BaseModel):
    buyer_id: int
    vat_tag: str = Field(..., min_length=1, max_length=50)
    lines: list[InvoiceLineRequest] = Field(..., min_length=1)
    costs: CostsRequest = Field(default_factory=CostsRequest)
    currency: str = Field("GBP", pattern="^[A-Z]{3}$")
    reference: Optional[str] = Field(None, max_length=255)
    idempotency_key: Optional[str] = Field(None, max_length=128)

    def to_new_invoice(self) -> NewInvoice:
        return NewInvoice(
            buyer_id=self.buyer_id,
            vat_tag=self.vat_tag,
            lines=[InvoiceLine(**line.model_dump()) for line in self.lines],
            costs=self.costs.to_costs(),
            currency=self.currency,
            reference=self.reference,
            idempotency_key=self.idempotency_key,
        )


class TransitionRequest(BaseModel):
    expected_status: SaleStatus
    next_status: SaleStatus


class AllocateRequest(BaseModel):
    shopper_id: str = Field(..., min_length=1, max_length=100)


class DeleteRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ClaimResponse(BaseModel):
    success: bool = True
    sale: SaleResponse
    buyer_owner_assigned: bool


class ResyncResponse(BaseModel):
    outcome: str
    sale: SaleResponse


class FixVatResponse(BaseModel):
    fixed: bool
    sale: SaleResponse


class BulkSelectionRequest(BaseModel):
    sale_ids: Optional[list[int]] = Field(None, max_length=500)


class BulkRowResponse(BaseModel):
    sale_id: int
    sale_reference: Optional[str]
    outcome: str
    error: Optional[str] = None


class BulkTransitionResponse(BaseModel):
    target_status: SaleStatus
    results: list[BulkRowResponse]
    total_candidates: int
    total_transitioned: int
    total_skipped: int
    total_failed: int

    @classmethod
    def from_result(cls, result: BulkTransitionResult) -> "BulkTransitionResponse":
        return cls(
            target_status=result.target_status,
            results=[
                BulkRowResponse(
                    sale_id=row.sale_id,
                    sale_reference=row.sale_reference,
                    outcome=row.outcome.value,
                    error=row.error,
                )
                for row in result.results
            ],
            total_candidates=result.total_candidates,
            total_transitioned=result.total_transitioned,
            total_skipped=result.total_skipped,
            total_failed=result.total_failed,
        )


class ClaimableSaleResponse(BaseModel):
    id: int
    sale_reference: Optional[str]
    sale_date: Optional[datetime]
    sale_amount_inc_vat: Decimal
    currency: str
    external_invoice_id: Optional[str]
    external_invoice_number: Optional[str]
    external_status: Optional[str]
    buyer_id: Optional[int]
    buyer_name: Optional[str]
    buyer_has_owner: bool

    @classmethod
    def from_sale(cls, sale: Sale) -> "ClaimableSaleResponse":
        return cls(
            id=sale.id,
            sale_reference=sale.sale_reference,
            sale_date=sale.sale_date,
            sale_amount_inc_vat=sale.sale_amount_inc_vat,
            currency=sale.currency,
            external_invoice_id=sale.external_invoice_id,
            external_invoice_number=sale.external_invoice_number,
            external_status=sale.external_status,
            buyer_id=sale.buyer_id,
            buyer_name=sale.buyer.name if sale.buyer else None,
            buyer_has_owner=bool(sale.buyer and sale.buyer.owner_id),
        )


class RecalculateMarginsRequest(BaseModel):
    dry_run: bool = True
    sale_ids: Optional[list[int]] = Field(None, max_length=500)


class MarginChangeResponse(BaseModel):
    sale_id: int
    sale_reference: Optional[str]
    old_gross_margin: Optional[Decimal]
    new_gross_margin: Decimal
    old_commissionable_margin: Optional[Decimal]
    new_commissionable_margin: Decimal

    model_config = {"from_attributes": True}


class RecalculateMarginsResponse(BaseModel):
    dry_run: bool
    processed: int
    needs_update: int
    updated: int
    skipped: int
    changes: list[MarginChangeResponse]

    @classmethod
    def from_result(cls, result: MarginRecalculation) -> "RecalculateMarginsResponse":
        return cls(
            dry_run=result.dry_run,
            processed=result.processed,
            needs_update=len(result.changes),
            updated=result.updated,
            skipped=result.skipped,
            changes=[MarginChangeResponse.model_validate(c) for c in result.changes],
        )
