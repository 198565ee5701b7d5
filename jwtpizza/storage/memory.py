from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from jwtpizza.logging import get_logger
from jwtpizza.storage.errors import ConstraintViolation
from jwtpizza.storage.models import (
    Franchise,
    Role,
    RoleBinding,
    SessionMarker,
    Store,
    User,
    UserSummary,
    normalize_binding,
)
from jwtpizza.storage.pagination import matches_name


class MemoryStore:
    """In-process backing store used for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, str] = {}
        self.markers: Dict[str, SessionMarker] = {}
        self.franchises: Dict[int, Franchise] = {}
        self.stores: Dict[int, Store] = {}
        self._user_seq = 0
        self._franchise_seq = 0
        self._store_seq = 0
        # RLock so composite operations can call the single-row helpers
        self._data_lock = threading.RLock()

    def ping(self) -> str:
        return "memory"

    # users -------------------------------------------------------------
    def create_user(
        self,
        name: str,
        email: str,
        password_hash: str,
        roles: Sequence[RoleBinding],
    ) -> User:
        bindings = [normalize_binding(b.role, b.object_id) for b in roles]
        if not bindings:
            raise ConstraintViolation("user requires at least one role", {"field": "roles"})
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            for binding in bindings:
                if binding.object_id is not None and binding.object_id not in self.franchises:
                    raise ConstraintViolation(
                        "franchise not found", {"franchise_id": binding.object_id}
                    )
            self._user_seq += 1
            user = User(id=self._user_seq, name=name, email=email, roles=list(bindings))
            self.users[user.id] = user
            self.credentials[user.id] = password_hash
            return self._copy_user(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._copy_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return self._copy_user(user)
        return None

    def get_password_hash(self, user_id: int) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def update_user(
        self,
        user_id: int,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if email is not None and any(
                other.email == email and other.id != user_id for other in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if name is not None:
                user.name = name
            if email is not None:
                user.email = email
            if password_hash is not None:
                self.credentials[user_id] = password_hash
            return self._copy_user(user)

    def delete_user(self, user_id: int) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            for fragment, marker in list(self.markers.items()):
                if marker.user_id == user_id:
                    self.markers.pop(fragment, None)
            return True

    def list_users(self, offset: int, limit: int, name_filter: str = "*") -> List[User]:
        with self._data_lock:
            matched = [
                self._copy_user(user)
                for user in sorted(self.users.values(), key=lambda u: u.id)
                if matches_name(user.name, name_filter)
            ]
        return matched[offset : offset + limit]

    # session markers ---------------------------------------------------
    def add_session_marker(self, fragment: str, user_id: int) -> SessionMarker:
        if not fragment:
            raise ConstraintViolation("empty session fragment", {"field": "token"})
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            marker = SessionMarker(fragment=fragment, user_id=user_id, created_at=datetime.utcnow())
            self.markers[fragment] = marker
            return marker

    def get_session_marker(self, fragment: str) -> Optional[int]:
        if not fragment:
            return None
        with self._data_lock:
            marker = self.markers.get(fragment)
            return marker.user_id if marker else None

    def delete_session_marker(self, fragment: str) -> bool:
        if not fragment:
            return False
        with self._data_lock:
            return self.markers.pop(fragment, None) is not None

    # franchises --------------------------------------------------------
    def create_franchise(self, name: str, admin_ids: Sequence[int]) -> Franchise:
        with self._data_lock:
            if any(f.name == name for f in self.franchises.values()):
                raise ConstraintViolation("franchise already exists", {"field": "name"})
            missing = [uid for uid in admin_ids if uid not in self.users]
            if missing:
                raise ConstraintViolation("user not found", {"user_ids": missing})
            self._franchise_seq += 1
            franchise = Franchise(id=self._franchise_seq, name=name)
            self.franchises[franchise.id] = franchise
            for uid in admin_ids:
                binding = RoleBinding(Role.FRANCHISEE, franchise.id)
                if binding not in self.users[uid].roles:
                    self.users[uid].roles.append(binding)
            return Franchise(id=franchise.id, name=franchise.name)

    def delete_franchise(self, franchise_id: int) -> bool:
        with self._data_lock:
            if franchise_id not in self.franchises:
                return False
            for store_id, store in list(self.stores.items()):
                if store.franchise_id == franchise_id:
                    self.stores.pop(store_id, None)
            for user in self.users.values():
                user.roles = [
                    b
                    for b in user.roles
                    if not (b.role is Role.FRANCHISEE and b.object_id == franchise_id)
                ]
            self.franchises.pop(franchise_id, None)
            return True

    def list_franchises(
        self, offset: int, limit: int, name_filter: str = "*"
    ) -> List[Franchise]:
        with self._data_lock:
            matched = [
                Franchise(id=f.id, name=f.name)
                for f in sorted(self.franchises.values(), key=lambda f: f.id)
                if matches_name(f.name, name_filter)
            ]
        return matched[offset : offset + limit]

    def get_franchise(self, franchise_id: int) -> Optional[Franchise]:
        with self._data_lock:
            franchise = self.franchises.get(franchise_id)
            if not franchise:
                return None
            return Franchise(id=franchise.id, name=franchise.name)

    def list_franchise_admins(self, franchise_id: int) -> List[UserSummary]:
        with self._data_lock:
            return [
                UserSummary(id=user.id, name=user.name, email=user.email)
                for user in sorted(self.users.values(), key=lambda u: u.id)
                if RoleBinding(Role.FRANCHISEE, franchise_id) in user.roles
            ]

    def get_user_franchise_ids(self, user_id: int) -> List[int]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return []
            return sorted(
                b.object_id
                for b in user.roles
                if b.role is Role.FRANCHISEE and b.object_id in self.franchises
            )

    # stores ------------------------------------------------------------
    def create_store(self, franchise_id: int, name: str) -> Store:
        with self._data_lock:
            if franchise_id not in self.franchises:
                raise ConstraintViolation(
                    "franchise not found", {"franchise_id": franchise_id}
                )
            self._store_seq += 1
            store = Store(id=self._store_seq, franchise_id=franchise_id, name=name)
            self.stores[store.id] = store
            return Store(id=store.id, franchise_id=franchise_id, name=name)

    def delete_store(self, franchise_id: int, store_id: int) -> bool:
        with self._data_lock:
            store = self.stores.get(store_id)
            if not store or store.franchise_id != franchise_id:
                return False
            self.stores.pop(store_id, None)
            return True

    def list_stores(self, franchise_id: int) -> List[Store]:
        with self._data_lock:
            return [
                Store(
                    id=s.id,
                    franchise_id=s.franchise_id,
                    name=s.name,
                    total_revenue=s.total_revenue,
                )
                for s in sorted(self.stores.values(), key=lambda s: s.id)
                if s.franchise_id == franchise_id
            ]

    def _copy_user(self, user: User) -> User:
        return User(id=user.id, name=user.name, email=user.email, roles=list(user.roles))
