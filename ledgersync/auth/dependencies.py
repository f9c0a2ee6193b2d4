"""
FastAPI dependencies for actor resolution and role gates.
"""

from fastapi import Depends, Request

from ledgersync.auth.actor import ADOPTION_ROLES, Actor, ActorRole
from ledgersync.auth.jwt import get_token_from_request, verify_token
from ledgersync.errors import AuthError, ForbiddenError


async def get_current_actor(request: Request) -> Actor:
    """
    Resolve the calling actor from its token.

    Raises AuthError if the token is missing, invalid or carries an
    unknown role.
    """
    token = get_token_from_request(request)
    if not token:
        raise AuthError("Not authenticated")

    payload = verify_token(token)
    if not payload:
        raise AuthError("Invalid or expired token")

    try:
        role = ActorRole(payload["role"])
    except ValueError:
        raise AuthError(f"Unknown role: {payload['role']}")

    # System identity is reserved for in-process jobs
    if role == ActorRole.SYSTEM:
        raise AuthError("System tokens are not accepted over HTTP")

    return Actor(actor_id=payload["actor_id"], role=role)


async def require_elevated(
    actor: Actor = Depends(get_current_actor),
) -> Actor:
    """Superadmin, admin or finance."""
    if not actor.is_elevated:
        raise ForbiddenError("Elevated role required")
    return actor


async def require_adopter(
    actor: Actor = Depends(get_current_actor),
) -> Actor:
    """Roles allowed to adopt or create ledger invoices."""
    if actor.role not in ADOPTION_ROLES:
        raise ForbiddenError("Not allowed to adopt or create invoices")
    return actor


async def require_superadmin(
    actor: Actor = Depends(get_current_actor),
) -> Actor:
    if actor.role != ActorRole.SUPERADMIN:
        raise ForbiddenError("Superadmin access required")
    return actor
