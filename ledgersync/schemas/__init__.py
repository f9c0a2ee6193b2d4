"""Pydantic schemas for request/response validation."""

from ledgersync.schemas.incident import IncidentResponse, ResolveIncidentRequest
from ledgersync.schemas.sale import (
    AdoptRequest,
    AllocateRequest,
    BulkSelectionRequest,
    BulkTransitionResponse,
    ClaimResponse,
    CostsRequest,
    CreateInvoiceRequest,
    DeleteRequest,
    FixVatResponse,
    ResyncResponse,
    SaleResponse,
    TransitionRequest,
)

__all__ = [
    "AdoptRequest",
    "AllocateRequest",
    "BulkSelectionRequest",
    "BulkTransitionResponse",
    "ClaimResponse",
    "CostsRequest",
    "CreateInvoiceRequest",
    "DeleteRequest",
    "FixVatResponse",
    "IncidentResponse",
    "ResolveIncidentRequest",
    "ResyncResponse",
    "SaleResponse",
    "TransitionRequest",
]
