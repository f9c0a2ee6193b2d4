"""
Ledger webhook ingestion.

The signature is checked before anything else. The event payload is only
used to learn which invoice changed; its state is always re-fetched from the
ledger. Events are processed one by one, each in its own session.
"""

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.errors import AppError, AuthError, NotFoundError, ValidationError
from ledgersync.models import Severity, TriggeredBy
from ledgersync.services.external_status import ReconcileOutcome, apply_external_status
from ledgersync.services.incidents import (
    WebhookEventFailed,
    WebhookSignatureInvalid,
    record_incident_detached,
)
from ledgersync.services.ledger_client import LedgerClient
from ledgersync.services.sync import find_sales_for_invoice, import_placeholder

logger = logging.getLogger(__name__)

INVOICE_CATEGORY = "INVOICE"


class WebhookEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event_category: Optional[str] = Field(None, alias="eventCategory")
    event_type: Optional[str] = Field(None, alias="eventType")
    resource_id: Optional[str] = Field(None, alias="resourceId")
    resource_url: Optional[str] = Field(None, alias="resourceUrl")
    tenant_id: Optional[str] = Field(None, alias="tenantId")
    event_date_utc: Optional[str] = Field(None, alias="eventDateUtc")


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    events: list[WebhookEvent] = Field(default_factory=list)

    @property
    def is_handshake(self) -> bool:
        return not self.events


@dataclass
class WebhookResult:
    processed: int = 0
    skipped: int = 0
    errors: int = 0


def compute_signature(body: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of the raw body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(compute_signature(body, secret), signature.strip())


async def verify_or_reject(
    session_factory: async_sessionmaker[AsyncSession],
    body: bytes,
    signature: Optional[str],
    secret: str,
    remote_addr: Optional[str] = None,
) -> None:
    """
    Raise AuthError unless the body carries a valid signature.

    Every rejection is written to the incident ledger as a security incident.
    """
    if verify_signature(body, signature, secret):
        return

    logger.warning(f"Rejected webhook with invalid signature from {remote_addr}")
    await record_incident_detached(
        session_factory,
        WebhookSignatureInvalid(
            signature_present=bool(signature),
            body_length=len(body),
            remote_addr=remote_addr,
        ),
        messages="Webhook signature verification failed",
        source="webhooks",
        triggered_by=TriggeredBy.WEBHOOK,
        severity=Severity.HIGH,
    )
    raise AuthError("Invalid webhook signature")


async def ingest_invoice_event(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: LedgerClient,
    event: WebhookEvent,
) -> ReconcileOutcome:
    """Apply one invoice event; unknown sales invoices become placeholders."""
    if not event.resource_id:
        raise ValidationError("Invoice event has no resourceId")

    invoice = await ledger.get_invoice(event.resource_id)
    if invoice is None:
        raise NotFoundError(f"Invoice {event.resource_id} not found in ledger")

    async with session_factory() as db:
        canonical, placeholder = await find_sales_for_invoice(
            db, invoice.invoice_id, invoice.invoice_number
        )
        sale = canonical or placeholder
        created = False
        if sale is None:
            if not invoice.is_sales_invoice:
                logger.debug(f"Ignoring {invoice.type} invoice {invoice.invoice_id}")
                return ReconcileOutcome.IGNORED
            sale, created = await import_placeholder(db, invoice)

        outcome = await apply_external_status(db, sale, invoice)
        await db.commit()

    return ReconcileOutcome.CREATED if created else outcome


async def process_webhook(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: LedgerClient,
    payload: WebhookPayload,
) -> WebhookResult:
    """Process every event, isolating failures per event."""
    result = WebhookResult()

    for event in payload.events:
        if (event.event_category or "").upper() != INVOICE_CATEGORY:
            result.skipped += 1
            continue

        try:
            outcome = await ingest_invoice_event(session_factory, ledger, event)
            result.processed += 1
            logger.info(f"Webhook {event.event_type} for invoice {event.resource_id}: {outcome.value}")
        except Exception as e:
            result.errors += 1
            logger.error(f"Webhook event for invoice {event.resource_id} failed: {e}")
            await record_incident_detached(
                session_factory,
                WebhookEventFailed(
                    event_category=event.event_category,
                    event_type=event.event_type,
                    resource_id=event.resource_id,
                    error_code=e.code if isinstance(e, AppError) else type(e).__name__,
                    error=str(e),
                ),
                messages=f"Webhook event for invoice {event.resource_id} failed: {e}",
                source="webhooks",
                triggered_by=TriggeredBy.WEBHOOK,
            )

    return result
