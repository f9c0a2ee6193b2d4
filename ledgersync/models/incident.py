"""
ErrorRecord model: the append-only incident ledger.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, String, Text, func
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.orm import Mapped, mapped_column

from ledgersync.models.base import Base


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IncidentCategory(str, Enum):
    """Closed set of incident kinds. Each has its own details schema."""
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
    WEBHOOK_EVENT_FAILED = "webhook_event_failed"
    SWEEP_ITEM_FAILED = "sweep_item_failed"
    LIFECYCLE_REJECTED = "lifecycle_rejected"
    LEDGER_VOID_AFTER_PAYMENT = "ledger_void_after_payment"
    DATA_INTEGRITY = "data_integrity"
    CLAIM_OWNER_ASSIGNMENT_SKIPPED = "claim_owner_assignment_skipped"


class TriggeredBy(str, Enum):
    WEBHOOK = "webhook"
    SWEEP = "sweep"
    LIFECYCLE = "lifecycle"
    CLAIM = "claim"
    SYNC = "sync"
    API = "api"


class ErrorRecord(Base):
    """
    A recorded incident.

    Rows are never updated except to mark them resolved.
    """

    __tablename__ = "errors"

    id: Mapped[int] = mapped_column(primary_key=True)
    sale_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("sales.id"),
        nullable=True,
        index=True,
    )
    category: Mapped[IncidentCategory] = mapped_column(
        SQLAlchemyEnum(
            IncidentCategory,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        index=True,
    )
    severity: Mapped[Severity] = mapped_column(
        SQLAlchemyEnum(
            Severity,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        index=True,
    )
    source: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Component that produced the incident",
    )
    message: Mapped[list] = mapped_column(
        JSON,
        nullable=False,
        comment="List of human-readable messages",
    )
    details: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        comment="Category-specific structured details",
    )
    triggered_by: Mapped[TriggeredBy] = mapped_column(
        SQLAlchemyEnum(
            TriggeredBy,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    resolved: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        index=True,
    )
    resolved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    resolved_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return (
            f"<ErrorRecord(id={self.id}, category={self.category}, "
            f"severity={self.severity}, resolved={self.resolved})>"
        )
