"""Incident ledger endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.auth import Actor, require_elevated
from ledgersync.db import get_db
from ledgersync.models import IncidentCategory
from ledgersync.schemas.incident import IncidentResponse, ResolveIncidentRequest
from ledgersync.services.incidents import list_open_incidents, resolve_incident

router = APIRouter(prefix="/errors", tags=["Errors"])


@router.get("", response_model=list[IncidentResponse])
async def list_incidents(
    category: Optional[IncidentCategory] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_elevated),
):
    """Unresolved incidents, newest first."""
    return await list_open_incidents(db, limit=limit, category=category)


@router.post("/{incident_id}/resolve", response_model=IncidentResponse)
async def resolve(
    incident_id: int,
    data: ResolveIncidentRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_elevated),
):
    return await resolve_incident(
        db, incident_id, actor, notes=data.notes, clear_sale_flag=data.clear_sale_flag
    )
