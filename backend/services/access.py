from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from backend.app.db.models.core_types import Role
from backend.app.db.models.models_v1 import User
from backend.services.errors import PermissionDenied

logger = logging.getLogger(__name__)

APPROVER_ROLES = {Role.admin, Role.supervisor}


@dataclass(frozen=True)
class Actor:
    """Qui agit. Passé explicitement à chaque transition, jamais lu d'un contexte global."""

    id: int
    username: str
    role: Role
    location_ids: frozenset[int] = field(default_factory=frozenset)

    @property
    def is_approver(self) -> bool:
        return self.role in APPROVER_ROLES

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(
            id=int(user.id),
            username=user.username,
            role=Role(user.role),
            location_ids=frozenset(int(ul.location_id) for ul in user.locations),
        )


class Permissions(Protocol):
    def can_create_prf(self) -> bool: ...

    def can_approve_prf(self) -> bool: ...

    def can_create_po(self) -> bool: ...

    def can_close_po(self) -> bool: ...

    def can_post_deliveries(self, location_id: int) -> bool: ...

    def can_approve_over_delivery(self) -> bool: ...


class RolePermissions:
    """Capacités dérivées du rôle de l'acteur."""

    def __init__(self, actor: Actor):
        self.actor = actor

    def can_create_prf(self) -> bool:
        return self.actor.role != Role.procurement_specialist

    def can_approve_prf(self) -> bool:
        return self.actor.role in APPROVER_ROLES

    def can_create_po(self) -> bool:
        return self.actor.role in APPROVER_ROLES | {Role.procurement_specialist}

    def can_close_po(self) -> bool:
        return self.actor.role in APPROVER_ROLES

    def can_post_deliveries(self, location_id: int) -> bool:
        if self.actor.role in APPROVER_ROLES:
            return True
        if self.actor.role == Role.operator:
            return location_id in self.actor.location_ids
        return False

    def can_approve_over_delivery(self) -> bool:
        return self.actor.role in APPROVER_ROLES


def require(allowed: bool, actor: Actor, action: str) -> None:
    """Refus inconditionnel, avant toute mutation."""
    if not allowed:
        logger.warning("User %s (%s) denied %s", actor.username, actor.role.value, action)
        raise PermissionDenied(f"You are not allowed to {action}", {"action": action})
