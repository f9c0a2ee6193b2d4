"""
Sale lifecycle and ledger reconciliation service.

Main FastAPI application with:
- Ledger webhook ingestion
- Sale claim, lifecycle and finance endpoints
- Scheduled reconciliation sweep
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ledgersync import __version__
from ledgersync.api import api_router
from ledgersync.config import settings
from ledgersync.db import AsyncSessionLocal, engine
from ledgersync.errors import AppError
from ledgersync.scheduler import scheduler, setup_scheduler
from ledgersync.services.ledger_client import LedgerClient, SettingsTokenStore

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
    - Builds the ledger client and publishes it on app.state
    - Starts the reconciliation scheduler

    Shutdown:
    - Stops the scheduler, closes the ledger client and the engine
    """
    logger.info("Starting ledgersync...")

    ledger = LedgerClient.from_settings(SettingsTokenStore(AsyncSessionLocal))
    app.state.ledger_client = ledger

    if settings.scheduler_enabled:
        setup_scheduler(AsyncSessionLocal, ledger)
        scheduler.start()
        logger.info(f"Reconciliation sweep every {settings.sweep_interval_minutes} min")

    logger.info("ledgersync started successfully!")

    yield

    logger.info("Shutting down ledgersync...")
    if scheduler.running:
        scheduler.shutdown(wait=False)
    await ledger.aclose()
    await engine.dispose()


# Create FastAPI application
app = FastAPI(
    title="ledgersync",
    description="Sale lifecycle and external ledger reconciliation",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(api_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ledgersync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=not settings.is_production,
    )
