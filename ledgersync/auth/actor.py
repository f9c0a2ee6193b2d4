"""
Actors supplied by the identity provider.
"""

from dataclasses import dataclass
from enum import Enum


class ActorRole(str, Enum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    FINANCE = "finance"
    OPERATIONS = "operations"
    FOUNDER = "founder"
    SHOPPER = "shopper"
    SYSTEM = "system"


# May lock, pay commissions, allocate, delete and restore
ELEVATED_ROLES = frozenset({ActorRole.SUPERADMIN, ActorRole.ADMIN, ActorRole.FINANCE})

# May adopt ledger invoices and create new ones
ADOPTION_ROLES = frozenset({
    ActorRole.SUPERADMIN,
    ActorRole.ADMIN,
    ActorRole.OPERATIONS,
    ActorRole.FOUNDER,
})


@dataclass(frozen=True)
class Actor:
    actor_id: str
    role: ActorRole

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES

    @property
    def is_system(self) -> bool:
        return self.role == ActorRole.SYSTEM

    def __str__(self) -> str:
        return f"{self.role.value}:{self.actor_id}"


SYSTEM_ACTOR = Actor(actor_id="system", role=ActorRole.SYSTEM)
