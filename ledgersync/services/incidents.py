"""
Incident ledger.

Incidents are append-only ErrorRecord rows. Each category has a closed
details schema; the union below is the complete list, so every incident the
service can produce is enumerable and testable.
"""

import logging
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.auth.actor import Actor
from ledgersync.errors import ConflictError, IntegrityWarningKind, NotFoundError
from ledgersync.models import (
    AuditAction,
    ErrorRecord,
    IncidentCategory,
    Sale,
    Severity,
    TriggeredBy,
)
from ledgersync.utils.audit import log_action
from ledgersync.utils.dates import utcnow

logger = logging.getLogger(__name__)


class _IncidentDetails(BaseModel):
    model_config = ConfigDict(extra="forbid")


class WebhookSignatureInvalid(_IncidentDetails):
    category: Literal["webhook_signature_invalid"] = "webhook_signature_invalid"
    signature_present: bool
    body_length: int
    remote_addr: Optional[str] = None


class WebhookEventFailed(_IncidentDetails):
    category: Literal["webhook_event_failed"] = "webhook_event_failed"
    event_category: Optional[str] = None
    event_type: Optional[str] = None
    resource_id: Optional[str] = None
    error_code: str
    error: str


class SweepItemFailed(_IncidentDetails):
    category: Literal["sweep_item_failed"] = "sweep_item_failed"
    sweep_pass: Literal["awaiting_payment", "new_invoices"]
    sale_id: Optional[int] = None
    external_invoice_id: Optional[str] = None
    error_code: str
    error: str


class LifecycleRejected(_IncidentDetails):
    category: Literal["lifecycle_rejected"] = "lifecycle_rejected"
    sale_id: int
    operation: str
    from_status: Optional[str] = None
    to_status: str
    reason: str


class LedgerVoidAfterPayment(_IncidentDetails):
    category: Literal["ledger_void_after_payment"] = "ledger_void_after_payment"
    sale_id: int
    external_invoice_id: str
    internal_status: str
    external_status: str


class DataIntegrity(_IncidentDetails):
    category: Literal["data_integrity"] = "data_integrity"
    sale_id: int
    kinds: list[IntegrityWarningKind]


class ClaimOwnerAssignmentSkipped(_IncidentDetails):
    category: Literal["claim_owner_assignment_skipped"] = "claim_owner_assignment_skipped"
    sale_id: int
    buyer_id: int
    claimant_id: str
    current_owner: Optional[str] = None


IncidentDetails = Annotated[
    Union[
        WebhookSignatureInvalid,
        WebhookEventFailed,
        SweepItemFailed,
        LifecycleRejected,
        LedgerVoidAfterPayment,
        DataIntegrity,
        ClaimOwnerAssignmentSkipped,
    ],
    Field(discriminator="category"),
]

_details_adapter: TypeAdapter[IncidentDetails] = TypeAdapter(IncidentDetails)

DEFAULT_SEVERITY = {
    IncidentCategory.WEBHOOK_SIGNATURE_INVALID: Severity.HIGH,
    IncidentCategory.WEBHOOK_EVENT_FAILED: Severity.MEDIUM,
    IncidentCategory.SWEEP_ITEM_FAILED: Severity.MEDIUM,
    IncidentCategory.LIFECYCLE_REJECTED: Severity.MEDIUM,
    IncidentCategory.LEDGER_VOID_AFTER_PAYMENT: Severity.HIGH,
    IncidentCategory.DATA_INTEGRITY: Severity.LOW,
    IncidentCategory.CLAIM_OWNER_ASSIGNMENT_SKIPPED: Severity.LOW,
}


def parse_incident_details(data: dict) -> IncidentDetails:
    """Validate stored details back into their typed model."""
    return _details_adapter.validate_python(data)


async def record_incident(
    db: AsyncSession,
    details: IncidentDetails,
    messages: Union[str, list[str]],
    source: str,
    triggered_by: TriggeredBy,
    sale_id: Optional[int] = None,
    severity: Optional[Severity] = None,
) -> ErrorRecord:
    """
    Append an incident in the caller's unit of work.

    Commit happens in the calling context.
    """
    category = IncidentCategory(details.category)
    record = ErrorRecord(
        sale_id=sale_id,
        category=category,
        severity=severity or DEFAULT_SEVERITY[category],
        source=source,
        message=[messages] if isinstance(messages, str) else list(messages),
        details=details.model_dump(mode="json"),
        triggered_by=triggered_by,
        resolved=False,
    )
    db.add(record)
    await db.flush()
    return record


async def record_incident_detached(
    session_factory: async_sessionmaker[AsyncSession],
    details: IncidentDetails,
    messages: Union[str, list[str]],
    source: str,
    triggered_by: TriggeredBy,
    sale_id: Optional[int] = None,
    severity: Optional[Severity] = None,
) -> Optional[int]:
    """
    Append an incident in its own session and commit it.

    Used where the surrounding unit of work may roll back. A failure to
    record is logged and does not propagate.
    """
    try:
        async with session_factory() as db:
            record = await record_incident(
                db,
                details,
                messages,
                source=source,
                triggered_by=triggered_by,
                sale_id=sale_id,
                severity=severity,
            )
            await db.commit()
            return record.id
    except SQLAlchemyError as e:
        logger.error(f"Failed to record {details.category} incident: {e}")
        return None


async def flag_sale_error(db: AsyncSession, sale_id: int, message: str) -> None:
    """Set the sale's error flag and append a message to it."""
    current = await db.scalar(select(Sale.error_messages).where(Sale.id == sale_id))
    messages = list(current or []) + [message]
    await db.execute(
        update(Sale)
        .where(Sale.id == sale_id)
        .values(error_flag=True, error_messages=messages)
        .execution_options(synchronize_session=False)
    )


async def resolve_incident(
    db: AsyncSession,
    incident_id: int,
    actor: Actor,
    notes: Optional[str] = None,
    clear_sale_flag: bool = False,
) -> ErrorRecord:
    """
    Mark an incident resolved. The only mutation an incident ever receives.

    Raises:
        NotFoundError: no such incident
        ConflictError: already resolved
    """
    result = await db.execute(
        update(ErrorRecord)
        .where(ErrorRecord.id == incident_id, ErrorRecord.resolved.is_(False))
        .values(
            resolved=True,
            resolved_by=actor.actor_id,
            resolved_at=utcnow(),
            resolved_notes=notes,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        exists = await db.scalar(select(ErrorRecord.id).where(ErrorRecord.id == incident_id))
        if exists is None:
            raise NotFoundError(f"Incident {incident_id} not found")
        raise ConflictError(f"Incident {incident_id} is already resolved")

    record = await db.scalar(
        select(ErrorRecord)
        .where(ErrorRecord.id == incident_id)
        .execution_options(populate_existing=True)
    )

    if clear_sale_flag and record.sale_id is not None:
        await db.execute(
            update(Sale)
            .where(Sale.id == record.sale_id)
            .values(error_flag=False, error_messages=None)
            .execution_options(synchronize_session=False)
        )

    await log_action(
        db=db,
        actor_id=actor.actor_id,
        action=AuditAction.RESOLVE_ERROR,
        target_type="error",
        target_id=incident_id,
        action_metadata={"clear_sale_flag": clear_sale_flag, "sale_id": record.sale_id},
    )
    logger.info(f"Incident {incident_id} resolved by {actor}")
    return record


async def list_open_incidents(
    db: AsyncSession,
    limit: int = 100,
    category: Optional[IncidentCategory] = None,
) -> list[ErrorRecord]:
    query = select(ErrorRecord).where(ErrorRecord.resolved.is_(False))
    if category is not None:
        query = query.where(ErrorRecord.category == category)
    result = await db.execute(query.order_by(ErrorRecord.created_at.desc()).limit(limit))
    return list(result.scalars().all())
