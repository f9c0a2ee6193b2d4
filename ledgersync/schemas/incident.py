"""
Incident ledger schemas.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ledgersync.models.incident import IncidentCategory, Severity, TriggeredBy
from ledgersync.services.incidents import IncidentDetails


class IncidentResponse(BaseModel):
    id: int
    sale_id: Optional[int]
    category: IncidentCategory
    severity: Severity
    source: str
    message: list[str]
    details: IncidentDetails
    triggered_by: TriggeredBy
    resolved: bool
    resolved_by: Optional[str]
    resolved_at: Optional[datetime]
    created_at: datetime

    model_config = {"from_attributes": True}


class ResolveIncidentRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)
    clear_sale_flag: bool = False
