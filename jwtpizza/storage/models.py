from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from jwtpizza.storage.errors import ConstraintViolation


class Role(str, Enum):
    ADMIN = "admin"
    DINER = "diner"
    FRANCHISEE = "franchisee"


@dataclass(frozen=True)
class RoleBinding:
    """A role held by a user, optionally scoped to a franchise id."""

    role: Role
    object_id: Optional[int] = None

    def to_dict(self) -> dict:
        data: dict = {"role": self.role.value}
        if self.object_id is not None:
            data["objectId"] = self.object_id
        return data


def normalize_binding(role: Role | str, object_id: Optional[int] = None) -> RoleBinding:
    """Validate a role binding before it is written.

    Unknown roles and Franchisee bindings without a franchise scope are
    rejected; the unscoped roles drop any scope they were handed.
    """
    try:
        parsed = Role(role)
    except ValueError as exc:
        raise ConstraintViolation("unknown role", {"role": str(role)}) from exc
    if parsed is Role.FRANCHISEE:
        if not object_id:
            raise ConstraintViolation(
                "franchisee role requires a franchise", {"role": parsed.value}
            )
        return RoleBinding(parsed, int(object_id))
    return RoleBinding(parsed)


def binding_from_row(role: str, object_id: Optional[int]) -> Optional[RoleBinding]:
    """Decode a stored binding; 0 and NULL both mean unscoped, unknown roles are skipped."""
    try:
        parsed = Role(role)
    except ValueError:
        return None
    return RoleBinding(parsed, object_id or None)


@dataclass
class User:
    id: int
    name: str
    email: str
    roles: List[RoleBinding] = field(default_factory=list)

    def has_role(self, role: Role) -> bool:
        return any(binding.role is role for binding in self.roles)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "roles": [binding.to_dict() for binding in self.roles],
        }


@dataclass
class UserSummary:
    id: int
    name: str
    email: str

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "email": self.email}


@dataclass
class Store:
    id: int
    franchise_id: int
    name: str
    total_revenue: float = 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "franchiseId": self.franchise_id,
            "name": self.name,
            "totalRevenue": self.total_revenue,
        }


@dataclass
class Franchise:
    id: int
    name: str
    admins: Optional[List[UserSummary]] = None
    stores: Optional[List[Store]] = None

    def to_dict(self) -> dict:
        data: dict = {"id": self.id, "name": self.name}
        if self.admins is not None:
            data["admins"] = [admin.to_dict() for admin in self.admins]
        if self.stores is not None:
            data["stores"] = [store.to_dict() for store in self.stores]
        return data


@dataclass
class SessionMarker:
    fragment: str
    user_id: int
    created_at: datetime = field(default_factory=datetime.utcnow)


__all__ = [
    "Role",
    "RoleBinding",
    "normalize_binding",
    "binding_from_row",
    "User",
    "UserSummary",
    "Store",
    "Franchise",
    "SessionMarker",
]
