from __future__ import annotations

from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Sequence

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from jwtpizza.logging import get_logger
from jwtpizza.storage.errors import ConstraintViolation, StorageError
from jwtpizza.storage.models import (
    Franchise,
    Role,
    RoleBinding,
    SessionMarker,
    Store,
    User,
    UserSummary,
    binding_from_row,
    normalize_binding,
)
from jwtpizza.storage.pagination import name_pattern

_REQUIRED_TABLES = ("user", "user_role", "auth", "franchise", "store")

# Unscoped bindings are stored with object_id 0
_NO_SCOPE = 0


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    """Re-raise driver failures as storage errors with the driver error as cause."""
    try:
        yield
    except errors.UniqueViolation as exc:
        raise ConstraintViolation(
            "duplicate value", {"operation": operation, "constraint": _constraint(exc)}
        ) from exc
    except errors.ForeignKeyViolation as exc:
        raise ConstraintViolation(
            "referenced row missing", {"operation": operation, "constraint": _constraint(exc)}
        ) from exc
    except psycopg.Error as exc:
        raise StorageError(f"{operation} failed", {"operation": operation}) from exc


def _constraint(exc: psycopg.Error) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    return getattr(diag, "constraint_name", None) if diag else None


class PostgresStore:
    """Postgres-backed store; every operation borrows one pooled connection.

    Expected tables (created by the operator, never by this class)::

        "user"     (id serial PK, name, email UNIQUE, password)
        user_role  (id serial PK, user_id FK, role, object_id int, 0 = unscoped)
        auth       (token PK, user_id FK)
        franchise  (id serial PK, name UNIQUE)
        store      (id serial PK, franchise_id FK, name, total_revenue)
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        timeout: float = 10.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def ping(self) -> str:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return "postgres"

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Fail fast when the relational schema has not been installed."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f'public."{table}"',)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def _roles_for(self, conn, user_ids: Sequence[int]) -> Dict[int, List[RoleBinding]]:
        roles: Dict[int, List[RoleBinding]] = {uid: [] for uid in user_ids}
        if not user_ids:
            return roles
        rows = conn.execute(
            "SELECT user_id, role, object_id FROM user_role WHERE user_id = ANY(%s) ORDER BY id",
            (list(user_ids),),
        ).fetchall()
        for row in rows:
            binding = binding_from_row(row["role"], row.get("object_id"))
            if binding is not None:
                roles[row["user_id"]].append(binding)
        return roles

    def _user_from_row(self, conn, row: dict) -> User:
        roles = self._roles_for(conn, [row["id"]])
        return User(id=row["id"], name=row["name"], email=row["email"], roles=roles[row["id"]])

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
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    'INSERT INTO "user" (name, email, password) VALUES (%s, %s, %s) RETURNING id',
                    (name, email, password_hash),
                ).fetchone()
                user_id = row["id"]
                for binding in bindings:
                    conn.execute(
                        "INSERT INTO user_role (user_id, role, object_id) VALUES (%s, %s, %s)",
                        (user_id, binding.role.value, binding.object_id or _NO_SCOPE),
                    )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "franchise not found", {"field": "roles"}
            ) from exc
        except psycopg.Error as exc:
            raise StorageError("create_user failed", {"operation": "create_user"}) from exc
        return User(id=user_id, name=name, email=email, roles=bindings)

    def get_user(self, user_id: int) -> Optional[User]:
        with _translate_errors("get_user"), self._connect() as conn:
            row = conn.execute(
                'SELECT id, name, email FROM "user" WHERE id = %s', (user_id,)
            ).fetchone()
            return self._user_from_row(conn, row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with _translate_errors("get_user_by_email"), self._connect() as conn:
            row = conn.execute(
                'SELECT id, name, email FROM "user" WHERE email = %s', (email,)
            ).fetchone()
            return self._user_from_row(conn, row) if row else None

    def get_password_hash(self, user_id: int) -> Optional[str]:
        with _translate_errors("get_password_hash"), self._connect() as conn:
            row = conn.execute(
                'SELECT password FROM "user" WHERE id = %s', (user_id,)
            ).fetchone()
        return row["password"] if row else None

    def update_user(
        self,
        user_id: int,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> Optional[User]:
        assignments = []
        params: list = []
        for column, value in (("name", name), ("email", email), ("password", password_hash)):
            if value is not None:
                assignments.append(f"{column} = %s")
                params.append(value)
        try:
            with self._connect() as conn:
                if assignments:
                    conn.execute(
                        'UPDATE "user" SET {} WHERE id = %s'.format(", ".join(assignments)),
                        (*params, user_id),
                    )
                row = conn.execute(
                    'SELECT id, name, email FROM "user" WHERE id = %s', (user_id,)
                ).fetchone()
                return self._user_from_row(conn, row) if row else None
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        except psycopg.Error as exc:
            raise StorageError("update_user failed", {"operation": "update_user"}) from exc

    def delete_user(self, user_id: int) -> bool:
        with _translate_errors("delete_user"), self._connect() as conn, conn.transaction():
            conn.execute("DELETE FROM auth WHERE user_id = %s", (user_id,))
            conn.execute("DELETE FROM user_role WHERE user_id = %s", (user_id,))
            result = conn.execute('DELETE FROM "user" WHERE id = %s', (user_id,))
            return result.rowcount > 0

    def list_users(self, offset: int, limit: int, name_filter: str = "*") -> List[User]:
        with _translate_errors("list_users"), self._connect() as conn:
            rows = conn.execute(
                'SELECT id, name, email FROM "user" WHERE name LIKE %s ORDER BY id LIMIT %s OFFSET %s',
                (name_pattern(name_filter), limit, offset),
            ).fetchall()
            roles = self._roles_for(conn, [row["id"] for row in rows])
        return [
            User(id=row["id"], name=row["name"], email=row["email"], roles=roles[row["id"]])
            for row in rows
        ]

    # session markers ---------------------------------------------------
    def add_session_marker(self, fragment: str, user_id: int) -> SessionMarker:
        if not fragment:
            raise ConstraintViolation("empty session fragment", {"field": "token"})
        with _translate_errors("add_session_marker"), self._connect() as conn:
            conn.execute(
                "INSERT INTO auth (token, user_id) VALUES (%s, %s)", (fragment, user_id)
            )
        return SessionMarker(fragment=fragment, user_id=user_id)

    def get_session_marker(self, fragment: str) -> Optional[int]:
        if not fragment:
            return None
        with _translate_errors("get_session_marker"), self._connect() as conn:
            row = conn.execute(
                "SELECT user_id FROM auth WHERE token = %s", (fragment,)
            ).fetchone()
        return row["user_id"] if row else None

    def delete_session_marker(self, fragment: str) -> bool:
        if not fragment:
            return False
        with _translate_errors("delete_session_marker"), self._connect() as conn:
            result = conn.execute("DELETE FROM auth WHERE token = %s", (fragment,))
            return result.rowcount > 0

    # franchises --------------------------------------------------------
    def create_franchise(self, name: str, admin_ids: Sequence[int]) -> Franchise:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    "INSERT INTO franchise (name) VALUES (%s) RETURNING id", (name,)
                ).fetchone()
                franchise_id = row["id"]
                for user_id in admin_ids:
                    conn.execute(
                        "INSERT INTO user_role (user_id, role, object_id) VALUES (%s, %s, %s)",
                        (user_id, Role.FRANCHISEE.value, franchise_id),
                    )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("franchise already exists", {"field": "name"}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user not found", {"user_ids": list(admin_ids)}) from exc
        except psycopg.Error as exc:
            raise StorageError(
                "create_franchise failed", {"operation": "create_franchise"}
            ) from exc
        return Franchise(id=franchise_id, name=name)

    def delete_franchise(self, franchise_id: int) -> bool:
        with _translate_errors("delete_franchise"), self._connect() as conn, conn.transaction():
            conn.execute("DELETE FROM store WHERE franchise_id = %s", (franchise_id,))
            conn.execute(
                "DELETE FROM user_role WHERE role = %s AND object_id = %s",
                (Role.FRANCHISEE.value, franchise_id),
            )
            result = conn.execute("DELETE FROM franchise WHERE id = %s", (franchise_id,))
            return result.rowcount > 0

    def list_franchises(
        self, offset: int, limit: int, name_filter: str = "*"
    ) -> List[Franchise]:
        with _translate_errors("list_franchises"), self._connect() as conn:
            rows = conn.execute(
                "SELECT id, name FROM franchise WHERE name LIKE %s ORDER BY id LIMIT %s OFFSET %s",
                (name_pattern(name_filter), limit, offset),
            ).fetchall()
        return [Franchise(id=row["id"], name=row["name"]) for row in rows]

    def get_franchise(self, franchise_id: int) -> Optional[Franchise]:
        with _translate_errors("get_franchise"), self._connect() as conn:
            row = conn.execute(
                "SELECT id, name FROM franchise WHERE id = %s", (franchise_id,)
            ).fetchone()
        return Franchise(id=row["id"], name=row["name"]) if row else None

    def list_franchise_admins(self, franchise_id: int) -> List[UserSummary]:
        with _translate_errors("list_franchise_admins"), self._connect() as conn:
            rows = conn.execute(
                """
                SELECT u.id, u.name, u.email
                FROM user_role AS r JOIN "user" AS u ON u.id = r.user_id
                WHERE r.role = %s AND r.object_id = %s
                ORDER BY u.id
                """,
                (Role.FRANCHISEE.value, franchise_id),
            ).fetchall()
        return [UserSummary(id=row["id"], name=row["name"], email=row["email"]) for row in rows]

    def get_user_franchise_ids(self, user_id: int) -> List[int]:
        with _translate_errors("get_user_franchise_ids"), self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT r.object_id
                FROM user_role AS r JOIN franchise AS f ON f.id = r.object_id
                WHERE r.user_id = %s AND r.role = %s
                ORDER BY r.object_id
                """,
                (user_id, Role.FRANCHISEE.value),
            ).fetchall()
        return [row["object_id"] for row in rows]

    # stores ------------------------------------------------------------
    def create_store(self, franchise_id: int, name: str) -> Store:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO store (franchise_id, name) VALUES (%s, %s) RETURNING id",
                    (franchise_id, name),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "franchise not found", {"franchise_id": franchise_id}
            ) from exc
        except psycopg.Error as exc:
            raise StorageError("create_store failed", {"operation": "create_store"}) from exc
        return Store(id=row["id"], franchise_id=franchise_id, name=name)

    def delete_store(self, franchise_id: int, store_id: int) -> bool:
        with _translate_errors("delete_store"), self._connect() as conn:
            result = conn.execute(
                "DELETE FROM store WHERE franchise_id = %s AND id = %s",
                (franchise_id, store_id),
            )
            return result.rowcount > 0

    def list_stores(self, franchise_id: int) -> List[Store]:
        with _translate_errors("list_stores"), self._connect() as conn:
            rows = conn.execute(
                "SELECT id, franchise_id, name, total_revenue FROM store WHERE franchise_id = %s ORDER BY id",
                (franchise_id,),
            ).fetchall()
        return [
            Store(
                id=row["id"],
                franchise_id=row["franchise_id"],
                name=row["name"],
                total_revenue=float(row.get("total_revenue") or 0),
            )
            for row in rows
        ]
