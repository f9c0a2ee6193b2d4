"""
Sale model: one sale transaction tracked through its financial lifecycle.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledgersync.models.base import BaseModel, SoftDeleteMixin

if TYPE_CHECKING:
    from ledgersync.models.buyer import Buyer


class SaleStatus(str, Enum):
    """Lifecycle status of a sale."""
    DRAFT = "draft"                      # Created or imported, no invoice yet
    INVOICED = "invoiced"                # Linked to a ledger invoice
    PAID = "paid"                        # Ledger confirmed payment
    LOCKED = "locked"                    # Frozen for commission computation
    COMMISSION_PAID = "commission_paid"  # Payout recorded
    VOIDED = "voided"                    # Invoice voided in the ledger


class SaleSource(str, Enum):
    """How the sale row came into existence."""
    MANUAL = "manual"
    LEDGER_IMPORT = "ledger_import"
    ADOPTED = "adopted"
    INVOICE_CREATED = "invoice_created"


def _money_column() -> Mapped[Decimal]:
    return mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))


class Sale(BaseModel, SoftDeleteMixin):
    """
    A sale and its link to the external ledger.

    status is only ever written through the lifecycle transition function.
    gross_margin and commissionable_margin are caches of the calculation
    engine and can always be re-derived from the amount columns.

    Placeholder rows (needs_allocation=True) are created from ledger imports
    and wait for a shopper to claim them. At most one canonical row and one
    placeholder row may exist per external invoice among non-deleted rows.
    """

    __tablename__ = "sales"
    __table_args__ = (
        Index(
            "uq_sales_canonical_external_invoice",
            "external_invoice_id",
            unique=True,
            postgresql_where=text("deleted_at IS NULL AND needs_allocation = false"),
            sqlite_where=text("deleted_at IS NULL AND needs_allocation = 0"),
        ),
        Index(
            "uq_sales_placeholder_external_invoice",
            "external_invoice_id",
            unique=True,
            postgresql_where=text("deleted_at IS NULL AND needs_allocation = true"),
            sqlite_where=text("deleted_at IS NULL AND needs_allocation = 1"),
        ),
    )

    sale_reference: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        unique=True,
    )
    sale_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    status: Mapped[SaleStatus] = mapped_column(
        SQLAlchemyEnum(
            SaleStatus,
            values_callable=lambda x: [e.value for e in x],
        ),
        default=SaleStatus.DRAFT,
        nullable=False,
        index=True,
    )
    source: Mapped[SaleSource] = mapped_column(
        SQLAlchemyEnum(
            SaleSource,
            values_callable=lambda x: [e.value for e in x],
        ),
        default=SaleSource.MANUAL,
        nullable=False,
    )
    status_changed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    status_changed_by: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )

    # Item / tax treatment
    item_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    vat_tag: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="Key into the VAT treatment table",
    )
    currency: Mapped[str] = mapped_column(String(3), default="GBP", nullable=False)

    # Amounts
    sale_amount_ex_vat: Mapped[Decimal] = _money_column()
    sale_amount_inc_vat: Mapped[Decimal] = _money_column()
    buy_price: Mapped[Decimal] = _money_column()
    shipping_cost: Mapped[Decimal] = _money_column()
    card_fees: Mapped[Decimal] = _money_column()
    direct_costs: Mapped[Decimal] = _money_column()
    introducer_commission: Mapped[Decimal] = _money_column()

    # Derived (cached)
    gross_margin: Mapped[Decimal] = _money_column()
    commissionable_margin: Mapped[Decimal] = _money_column()

    # External ledger linkage
    external_invoice_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True,
    )
    external_invoice_number: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True,
    )
    external_status: Mapped[Optional[str]] = mapped_column(
        String(30),
        nullable=True,
    )
    paid_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Allocation
    needs_allocation: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        index=True,
    )
    shopper_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True,
    )
    allocated_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    allocated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    buyer_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("buyers.id"),
        nullable=True,
        index=True,
    )

    # Commission
    commission_locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    commission_locked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    commission_locked_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    commission_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    commission_paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Data quality
    error_flag: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        index=True,
    )
    error_messages: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    authenticity_status: Mapped[Optional[str]] = mapped_column(
        String(30),
        nullable=True,
        comment="verified, pending or not_verified",
    )
    internal_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    buyer: Mapped[Optional["Buyer"]] = relationship(
        "Buyer",
        back_populates="sales",
        lazy="raise",
    )

    @property
    def is_placeholder(self) -> bool:
        return self.needs_allocation

    def __repr__(self) -> str:
        return f"<Sale(id={self.id}, ref={self.sale_reference}, status={self.status})>"
