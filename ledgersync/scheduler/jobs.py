"""
Background job definitions using APScheduler.

Jobs include:
- Reconciliation sweep (ledger status catch-up and missed invoice import)
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.config import settings
from ledgersync.services.ledger_client import LedgerClient
from ledgersync.services.reconciliation import run_reconciliation_sweep

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = AsyncIOScheduler()


async def reconciliation_job(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: LedgerClient,
):
    """Run the reconciliation sweep."""
    logger.debug("Running reconciliation job")
    try:
        summary = await run_reconciliation_sweep(session_factory, ledger)
        if summary.errors:
            logger.warning(f"Reconciliation job finished with {summary.errors} error(s)")
    except Exception as e:
        logger.error(f"Reconciliation job error: {e}")


def setup_scheduler(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: LedgerClient,
) -> AsyncIOScheduler:
    """
    Configure and add all scheduled jobs.

    Called during application startup with the process-owned collaborators.
    """
    scheduler.add_job(
        reconciliation_job,
        trigger=IntervalTrigger(minutes=settings.sweep_interval_minutes),
        args=[session_factory, ledger],
        id="reconciliation_sweep",
        name="Reconcile sales with the ledger",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    logger.info("Scheduler configured with jobs")
    return scheduler
