"""Ledger webhook endpoint."""

import pydantic
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.api.deps import get_client_ip, get_ledger_client
from ledgersync.config import settings
from ledgersync.db import get_session_factory
from ledgersync.errors import ValidationError
from ledgersync.services.ledger_client import LedgerClient
from ledgersync.services.webhooks import WebhookPayload, process_webhook, verify_or_reject

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/ledger")
async def ledger_webhook(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    ledger: LedgerClient = Depends(get_ledger_client),
):
    """
    Receive invoice change notifications from the ledger.

    - Invalid or missing signature: 401, logged as a security incident
    - No events: connectivity handshake, acknowledged immediately
    - Otherwise each event is processed independently
    """
    body = await request.body()
    await verify_or_reject(
        session_factory,
        body,
        request.headers.get(settings.webhook_signature_header),
        settings.webhook_secret,
        remote_addr=get_client_ip(request),
    )

    try:
        payload = WebhookPayload.model_validate_json(body or b"{}")
    except pydantic.ValidationError as e:
        raise ValidationError("Malformed webhook payload", details={"errors": e.error_count()})

    if payload.is_handshake:
        return {"status": "ok"}

    result = await process_webhook(session_factory, ledger, payload)
    return {
        "received": True,
        "processed": result.processed,
        "skipped": result.skipped,
        "errors": result.errors,
    }
