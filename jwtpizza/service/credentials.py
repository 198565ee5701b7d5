from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Iterator, List, Optional, Protocol, Sequence, Tuple

from jwtpizza.logging import get_logger
from jwtpizza.service.errors import ConflictError, NotFoundError, ServerError, ValidationError
from jwtpizza.service.passwords import PasswordHasher
from jwtpizza.storage.errors import ConstraintViolation, StorageError
from jwtpizza.storage.models import Role, RoleBinding, User
from jwtpizza.storage.pagination import get_offset

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def create_user(
        self, name: str, email: str, password_hash: str, roles: Sequence[RoleBinding]
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_hash(self, user_id: int) -> Optional[str]: ...

    def update_user(
        self,
        user_id: int,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> Optional[User]: ...

    def delete_user(self, user_id: int) -> bool: ...

    def list_users(self, offset: int, limit: int, name_filter: str = "*") -> List[User]: ...


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Translate storage failures into service errors, keeping the cause chained."""
    try:
        yield
    except ConstraintViolation as exc:
        if exc.detail.get("field") in {"roles", "token"}:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        raise ConflictError(exc.message, detail=exc.detail) from exc
    except StorageError as exc:
        logger.error("storage_failure", operation=operation, error=str(exc))
        raise ServerError(f"unable to {operation.replace('_', ' ')}") from exc


class CredentialService:
    """User records, password hashes and role bindings."""

    def __init__(self, store: CredentialStore, hasher: PasswordHasher) -> None:
        self.store = store
        self.hasher = hasher

    async def create_user(
        self,
        name: str,
        email: str,
        password: str,
        roles: Optional[Sequence[RoleBinding]] = None,
    ) -> User:
        bindings = list(roles) if roles else [RoleBinding(Role.DINER)]
        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        with storage_errors("create_user"):
            user = self.store.create_user(name, email, password_hash, bindings)
        logger.info(
            "user_created", user_id=user.id, roles=[b.role.value for b in user.roles]
        )
        return user

    def find_by_email(self, email: str) -> User:
        with storage_errors("find_user"):
            user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("unknown user")
        return user

    def get_user(self, user_id: int) -> User:
        with storage_errors("find_user"):
            user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("unknown user")
        return user

    async def verify_password(self, user: Optional[User], password: str) -> bool:
        """Check ``password`` for ``user``; an absent user still costs one hash verification."""
        if user is None:
            await asyncio.to_thread(self.hasher.burn, password)
            return False
        with storage_errors("find_user"):
            stored = self.store.get_password_hash(user.id)
        if not stored:
            await asyncio.to_thread(self.hasher.burn, password)
            return False
        return await asyncio.to_thread(self.hasher.verify, password, stored)

    async def update_user(
        self,
        user_id: int,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
    ) -> User:
        password_hash = None
        if password:
            password_hash = await asyncio.to_thread(self.hasher.hash, password)
        with storage_errors("update_user"):
            user = self.store.update_user(
                user_id, name=name, email=email, password_hash=password_hash
            )
        if not user:
            raise NotFoundError("unknown user")
        logger.info("user_updated", user_id=user_id, rehashed=password_hash is not None)
        return user

    def delete_user(self, user_id: int) -> None:
        with storage_errors("delete_user"):
            removed = self.store.delete_user(user_id)
        if not removed:
            raise NotFoundError("unknown user")
        logger.info("user_deleted", user_id=user_id)

    def list_users(
        self, page: int = 0, limit: int = 10, name_filter: str = "*"
    ) -> Tuple[List[User], bool]:
        """One page of users plus whether another page follows; ``page`` is zero-based."""
        with storage_errors("list_users"):
            rows = self.store.list_users(get_offset(page + 1, limit), limit + 1, name_filter)
        return rows[:limit], len(rows) > limit
