"""Authenticated caller identity as supplied by the authentication layer."""

from dataclasses import dataclass
from enum import Enum


class Role(Enum):
    """Caller roles."""
    CUSTOMER = "customer"
    TESTER = "tester"
    ADMIN = "admin"
    SYSTEM = "system"   # scheduled expiry and other internal collaborators


@dataclass(frozen=True)
class Actor:
    """
    Trusted (actor_id, role) pair.

    The core never authenticates; it only checks what an already
    authenticated actor may do.
    """

    actor_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_system(self) -> bool:
        return self.role == Role.SYSTEM

    @classmethod
    def system(cls, actor_id: str = "system") -> "Actor":
        """Actor used by internal collaborators such as session expiry."""
        return cls(actor_id=actor_id, role=Role.SYSTEM)

    @classmethod
    def tester(cls, actor_id: str) -> "Actor":
        return cls(actor_id=actor_id, role=Role.TESTER)

    @classmethod
    def customer(cls, actor_id: str) -> "Actor":
        return cls(actor_id=actor_id, role=Role.CUSTOMER)

    @classmethod
    def admin(cls, actor_id: str) -> "Actor":
        return cls(actor_id=actor_id, role=Role.ADMIN)
