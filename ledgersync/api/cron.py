"""Externally triggered jobs."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.api.deps import get_ledger_client, require_cron_secret
from ledgersync.db import get_session_factory
from ledgersync.services.ledger_client import LedgerClient
from ledgersync.services.reconciliation import run_reconciliation_sweep

router = APIRouter(prefix="/cron", tags=["Cron"])


@router.post("/reconcile", dependencies=[Depends(require_cron_secret)])
async def reconcile(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    ledger: LedgerClient = Depends(get_ledger_client),
):
    """Run the reconciliation sweep now and return its summary."""
    summary = await run_reconciliation_sweep(session_factory, ledger)
    return summary.to_dict()
