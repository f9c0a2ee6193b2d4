"""Initial database schema

Revision ID: 000_initial_schema
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "000_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SALE_STATUSES = ("draft", "invoiced", "paid", "locked", "commission_paid", "voided")
SALE_SOURCES = ("manual", "ledger_import", "adopted", "invoice_created")
INCIDENT_CATEGORIES = (
    "webhook_signature_invalid",
    "webhook_event_failed",
    "sweep_item_failed",
    "lifecycle_rejected",
    "ledger_void_after_payment",
    "data_integrity",
    "claim_owner_assignment_skipped",
)
AUDIT_ACTIONS = (
    "transition_status",
    "claim_sale",
    "allocate_sale",
    "assign_buyer_owner",
    "import_placeholder",
    "adopt_invoice",
    "create_invoice",
    "delete_sale",
    "restore_sale",
    "fix_vat",
    "recalculate_margins",
    "resolve_error",
)


def _money(name: str) -> sa.Column:
    return sa.Column(name, sa.Numeric(12, 2), nullable=False, server_default="0")


def upgrade() -> None:
    """Create all initial tables."""

    # Buyers
    op.create_table(
        "buyers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("external_contact_id", sa.String(100), nullable=True, unique=True),
        sa.Column("owner_id", sa.String(100), nullable=True),
        sa.Column("owner_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("owner_changed_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_buyers_name", "buyers", ["name"])
    op.create_index("ix_buyers_owner_id", "buyers", ["owner_id"])

    # Sales
    op.create_table(
        "sales",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sale_reference", sa.String(50), nullable=True, unique=True),
        sa.Column("sale_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.Enum(*SALE_STATUSES, name="salestatus"), nullable=False),
        sa.Column("source", sa.Enum(*SALE_SOURCES, name="salesource"), nullable=False),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status_changed_by", sa.String(100), nullable=True),
        sa.Column("item_title", sa.String(255), nullable=True),
        sa.Column("vat_tag", sa.String(50), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False, server_default="GBP"),
        _money("sale_amount_ex_vat"),
        _money("sale_amount_inc_vat"),
        _money("buy_price"),
        _money("shipping_cost"),
        _money("card_fees"),
        _money("direct_costs"),
        _money("introducer_commission"),
        _money("gross_margin"),
        _money("commissionable_margin"),
        sa.Column("external_invoice_id", sa.String(100), nullable=True),
        sa.Column("external_invoice_number", sa.String(100), nullable=True),
        sa.Column("external_status", sa.String(30), nullable=True),
        sa.Column("paid_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("needs_allocation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("shopper_id", sa.String(100), nullable=True),
        sa.Column("allocated_by", sa.String(100), nullable=True),
        sa.Column("allocated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("buyers.id"), nullable=True),
        sa.Column("commission_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("commission_locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("commission_locked_by", sa.String(100), nullable=True),
        sa.Column("commission_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("commission_paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_flag", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error_messages", sa.JSON(), nullable=True),
        sa.Column("authenticity_status", sa.String(30), nullable=True),
        sa.Column("internal_notes", sa.Text(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sales_status", "sales", ["status"])
    op.create_index("ix_sales_external_invoice_id", "sales", ["external_invoice_id"])
    op.create_index("ix_sales_external_invoice_number", "sales", ["external_invoice_number"])
    op.create_index("ix_sales_needs_allocation", "sales", ["needs_allocation"])
    op.create_index("ix_sales_shopper_id", "sales", ["shopper_id"])
    op.create_index("ix_sales_buyer_id", "sales", ["buyer_id"])
    op.create_index("ix_sales_error_flag", "sales", ["error_flag"])
    op.create_index("ix_sales_deleted_at", "sales", ["deleted_at"])
    op.create_index(
        "uq_sales_canonical_external_invoice",
        "sales",
        ["external_invoice_id"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL AND needs_allocation = false"),
    )
    op.create_index(
        "uq_sales_placeholder_external_invoice",
        "sales",
        ["external_invoice_id"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL AND needs_allocation = true"),
    )

    # Incident ledger
    op.create_table(
        "errors",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sale_id", sa.Integer(), sa.ForeignKey("sales.id"), nullable=True),
        sa.Column("category", sa.Enum(*INCIDENT_CATEGORIES, name="incidentcategory"), nullable=False),
        sa.Column("severity", sa.Enum("low", "medium", "high", "critical", name="severity"), nullable=False),
        sa.Column("source", sa.String(100), nullable=False),
        sa.Column("message", sa.JSON(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column(
            "triggered_by",
            sa.Enum("webhook", "sweep", "lifecycle", "claim", "sync", "api", name="triggeredby"),
            nullable=False,
        ),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolved_by", sa.String(100), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_errors_sale_id", "errors", ["sale_id"])
    op.create_index("ix_errors_category", "errors", ["category"])
    op.create_index("ix_errors_severity", "errors", ["severity"])
    op.create_index("ix_errors_resolved", "errors", ["resolved"])
    op.create_index("ix_errors_created_at", "errors", ["created_at"])

    # Audit logs
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("actor_id", sa.String(100), nullable=False),
        sa.Column("action", sa.Enum(*AUDIT_ACTIONS, name="auditaction"), nullable=False),
        sa.Column("target_type", sa.String(50), nullable=True),
        sa.Column("target_id", sa.Integer(), nullable=True),
        sa.Column("action_metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])

    # System settings
    op.create_table(
        "system_settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value", sa.JSON(), nullable=False),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("system_settings")
    op.drop_table("audit_logs")
    op.drop_table("errors")
    op.drop_table("sales")
    op.drop_table("buyers")

    for enum_name in (
        "auditaction",
        "triggeredby",
        "severity",
        "incidentcategory",
        "salesource",
        "salestatus",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
