"""API router aggregation."""

from fastapi import APIRouter

from ledgersync.api.cron import router as cron_router
from ledgersync.api.errors import router as errors_router
from ledgersync.api.finance import router as finance_router
from ledgersync.api.health import router as health_router
from ledgersync.api.sales import router as sales_router
from ledgersync.api.webhooks import router as webhooks_router

# Main API router (for /api/* endpoints)
api_router = APIRouter(prefix="/api")

api_router.include_router(health_router)
api_router.include_router(webhooks_router)
api_router.include_router(sales_router)
api_router.include_router(finance_router)
api_router.include_router(cron_router)
api_router.include_router(errors_router)

__all__ = ["api_router"]
