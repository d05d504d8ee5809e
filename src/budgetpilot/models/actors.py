"""
Acting users and their budget permission levels.

Levels:
  ADMIN → manage line items, approve/reject/re-open purchase requests, everything below
  EDIT  → create and manage purchase requests and transactions
  VIEW  → read only
  NONE  → no access
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PermissionLevel(str, Enum):
    """Budget permission levels, lowest first."""

    NONE = "none"
    VIEW = "view"
    EDIT = "edit"
    ADMIN = "admin"


_RANK = {
    PermissionLevel.NONE: 0,
    PermissionLevel.VIEW: 1,
    PermissionLevel.EDIT: 2,
    PermissionLevel.ADMIN: 3,
}

# Roles that map onto each level, highest match wins
ADMIN_ROLES = frozenset({"Administrators", "Budgets - Admin"})
EDIT_ROLES = frozenset({"Budgets - Edit", "All Staff"})
VIEW_ROLES = frozenset({"Budgets - View"})


class Actor(BaseModel):
    """The user on whose behalf a mutation is made."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str = ""
    level: PermissionLevel = PermissionLevel.VIEW
    roles: frozenset[str] = Field(default_factory=frozenset)

    @classmethod
    def from_roles(cls, actor_id: int, roles: list[str] | set[str], name: str = "") -> Actor:
        """Derive the permission level from security role names."""
        role_set = frozenset(roles)
        if role_set & ADMIN_ROLES:
            level = PermissionLevel.ADMIN
        elif role_set & EDIT_ROLES:
            level = PermissionLevel.EDIT
        elif role_set & VIEW_ROLES:
            level = PermissionLevel.VIEW
        else:
            level = PermissionLevel.NONE
        return cls(id=actor_id, name=name, level=level, roles=role_set)

    def at_least(self, level: PermissionLevel) -> bool:
        return _RANK[self.level] >= _RANK[level]

    @property
    def can_view(self) -> bool:
        return self.at_least(PermissionLevel.VIEW)

    @property
    def can_manage_line_items(self) -> bool:
        return self.at_least(PermissionLevel.ADMIN)

    @property
    def can_approve_purchase_requests(self) -> bool:
        return self.at_least(PermissionLevel.ADMIN)

    @property
    def can_manage_purchase_requests(self) -> bool:
        return self.at_least(PermissionLevel.EDIT)

    @property
    def can_manage_transactions(self) -> bool:
        return self.at_least(PermissionLevel.EDIT)
