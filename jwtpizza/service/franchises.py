from __future__ import annotations

from typing import List, Optional, Protocol, Sequence, Tuple

from jwtpizza.logging import get_logger
from jwtpizza.service.auth import authorize
from jwtpizza.service.credentials import storage_errors
from jwtpizza.service.errors import NotFoundError, ServerError
from jwtpizza.storage.errors import StorageError
from jwtpizza.storage.models import Franchise, Role, Store, User, UserSummary
from jwtpizza.storage.pagination import get_offset

logger = get_logger(__name__)


class FranchiseStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_franchise(self, name: str, admin_ids: Sequence[int]) -> Franchise: ...

    def delete_franchise(self, franchise_id: int) -> bool: ...

    def list_franchises(self, offset: int, limit: int, name_filter: str = "*") -> List[Franchise]: ...

    def get_franchise(self, franchise_id: int) -> Optional[Franchise]: ...

    def list_franchise_admins(self, franchise_id: int) -> List[UserSummary]: ...

    def get_user_franchise_ids(self, user_id: int) -> List[int]: ...

    def create_store(self, franchise_id: int, name: str) -> Store: ...

    def delete_store(self, franchise_id: int, store_id: int) -> bool: ...

    def list_stores(self, franchise_id: int) -> List[Store]: ...


class FranchiseService:
    """Franchises, their stores, and the franchisee bindings that scope them."""

    def __init__(self, store: FranchiseStore) -> None:
        self.store = store

    def create_franchise(self, name: str, admin_emails: Sequence[str]) -> Franchise:
        # Admin lookups run outside the insert transaction; a user deleted in
        # between surfaces as a constraint violation from the store.
        admins: List[UserSummary] = []
        with storage_errors("create_franchise"):
            for email in admin_emails:
                user = self.store.get_user_by_email(email)
                if not user:
                    raise NotFoundError(
                        f"unknown user for franchise admin {email} provided",
                        detail={"field": "admins"},
                    )
                admins.append(UserSummary(id=user.id, name=user.name, email=user.email))
            franchise = self.store.create_franchise(name, [a.id for a in admins])
        franchise.admins = admins
        franchise.stores = []
        logger.info("franchise_created", franchise_id=franchise.id, admin_count=len(admins))
        return franchise

    def delete_franchise(self, franchise_id: int) -> None:
        try:
            removed = self.store.delete_franchise(franchise_id)
        except StorageError as exc:
            logger.error("franchise_delete_failed", franchise_id=franchise_id, error=str(exc))
            raise ServerError("unable to delete franchise") from exc
        if not removed:
            raise NotFoundError("unknown franchise")
        logger.info("franchise_deleted", franchise_id=franchise_id)

    def list_franchises(
        self,
        requester: Optional[User] = None,
        page: int = 0,
        limit: int = 10,
        name_filter: str = "*",
    ) -> Tuple[List[Franchise], bool]:
        """One zero-based page of franchises and whether more follow.

        Admin requesters also see each franchise's admins.
        """
        with storage_errors("list_franchises"):
            rows = self.store.list_franchises(
                get_offset(page + 1, limit), limit + 1, name_filter
            )
            franchises = rows[:limit]
            include_admins = authorize(requester, Role.ADMIN)
            for franchise in franchises:
                self._populate(franchise, include_admins=include_admins)
        return franchises, len(rows) > limit

    def get_user_franchises(self, user_id: int) -> List[Franchise]:
        with storage_errors("list_franchises"):
            franchises = []
            for franchise_id in self.store.get_user_franchise_ids(user_id):
                franchise = self.store.get_franchise(franchise_id)
                if franchise:
                    franchises.append(self._populate(franchise))
        return franchises

    def get_franchise(self, franchise_id: int) -> Franchise:
        with storage_errors("get_franchise"):
            franchise = self.store.get_franchise(franchise_id)
            if not franchise:
                raise NotFoundError("unknown franchise")
            return self._populate(franchise)

    def create_store(self, franchise_id: int, name: str) -> Store:
        with storage_errors("create_store"):
            if not self.store.get_franchise(franchise_id):
                raise NotFoundError("unknown franchise")
            store = self.store.create_store(franchise_id, name)
        logger.info("store_created", franchise_id=franchise_id, store_id=store.id)
        return store

    def delete_store(self, franchise_id: int, store_id: int) -> None:
        with storage_errors("delete_store"):
            removed = self.store.delete_store(franchise_id, store_id)
        if not removed:
            raise NotFoundError("unknown store")
        logger.info("store_deleted", franchise_id=franchise_id, store_id=store_id)

    def _populate(self, franchise: Franchise, *, include_admins: bool = True) -> Franchise:
        if include_admins:
            franchise.admins = self.store.list_franchise_admins(franchise.id)
        franchise.stores = self.store.list_stores(franchise.id)
        return franchise
