"""
AuditLog model for tracking actor actions.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Integer, JSON, String, func
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.orm import Mapped, mapped_column

from ledgersync.models.base import Base


class AuditAction(str, Enum):
    """Types of auditable actions."""
    TRANSITION_STATUS = "transition_status"
    CLAIM_SALE = "claim_sale"
    ALLOCATE_SALE = "allocate_sale"
    ASSIGN_BUYER_OWNER = "assign_buyer_owner"
    IMPORT_PLACEHOLDER = "import_placeholder"
    ADOPT_INVOICE = "adopt_invoice"
    CREATE_INVOICE = "create_invoice"
    DELETE_SALE = "delete_sale"
    RESTORE_SALE = "restore_sale"
    FIX_VAT = "fix_vat"
    RECALCULATE_MARGINS = "recalculate_margins"
    RESOLVE_ERROR = "resolve_error"


class AuditLog(Base):
    """
    Audit log of every state-changing action.

    Actors come from the external identity provider, so actor_id is the
    provider's opaque id rather than a foreign key.
    """

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    actor_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    action: Mapped[AuditAction] = mapped_column(
        SQLAlchemyEnum(
            AuditAction,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        index=True,
    )
    target_type: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="Type of entity affected (sale, buyer, error)",
    )
    target_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="ID of the affected entity",
    )
    action_metadata: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
        comment="Additional context about the action",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, actor_id={self.actor_id}, action={self.action})>"
