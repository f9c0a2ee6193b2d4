"""Actor authentication and authorization."""

from ledgersync.auth.actor import (
    ADOPTION_ROLES,
    ELEVATED_ROLES,
    SYSTEM_ACTOR,
    Actor,
    ActorRole,
)
from ledgersync.auth.dependencies import (
    get_current_actor,
    require_adopter,
    require_elevated,
    require_superadmin,
)
from ledgersync.auth.jwt import create_access_token, verify_token

__all__ = [
    "ADOPTION_ROLES",
    "ELEVATED_ROLES",
    "SYSTEM_ACTOR",
    "Actor",
    "ActorRole",
    "create_access_token",
    "get_current_actor",
    "require_adopter",
    "require_elevated",
    "require_superadmin",
    "verify_token",
]
