"""
Shared API dependencies.
"""

import hmac

from fastapi import Request

from ledgersync.config import settings
from ledgersync.errors import AuthError, ExternalServiceError
from ledgersync.services.ledger_client import LedgerClient


def get_ledger_client(request: Request) -> LedgerClient:
    """The ledger client built by the application lifespan."""
    ledger = getattr(request.app.state, "ledger_client", None)
    if ledger is None:
        raise ExternalServiceError("Ledger client is not configured")
    return ledger


async def require_cron_secret(request: Request) -> None:
    """Authorise the external cron trigger by its shared bearer secret."""
    authorization = request.headers.get("Authorization", "")
    scheme, _, token = authorization.partition(" ")
    if (
        not settings.cron_secret
        or scheme.lower() != "bearer"
        or not hmac.compare_digest(token.strip(), settings.cron_secret)
    ):
        raise AuthError("Invalid cron secret")


def get_client_ip(request: Request):
    """Client IP, honouring X-Forwarded-For behind a proxy."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None
