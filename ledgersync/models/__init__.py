"""SQLAlchemy models."""

from ledgersync.models.audit import AuditAction, AuditLog
from ledgersync.models.base import Base, BaseModel, SoftDeleteMixin, TimestampMixin
from ledgersync.models.buyer import Buyer
from ledgersync.models.incident import (
    ErrorRecord,
    IncidentCategory,
    Severity,
    TriggeredBy,
)
from ledgersync.models.sale import Sale, SaleSource, SaleStatus
from ledgersync.models.settings import SystemSetting

__all__ = [
    "AuditAction",
    "AuditLog",
    "Base",
    "BaseModel",
    "Buyer",
    "ErrorRecord",
    "IncidentCategory",
    "Sale",
    "SaleSource",
    "SaleStatus",
    "Severity",
    "SoftDeleteMixin",
    "SystemSetting",
    "TimestampMixin",
    "TriggeredBy",
]
