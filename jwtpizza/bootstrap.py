"""Create the first Admin account.

Usage:
    ADMIN_EMAIL=admin@jwt.com ADMIN_PASSWORD=... jwtpizza-bootstrap-admin
    jwtpizza-bootstrap-admin --name "Pizza Admin" --email admin@jwt.com --password ...

Environment Variables:
    ADMIN_NAME, ADMIN_EMAIL, ADMIN_PASSWORD: defaults for the flags
    DATABASE_URL: PostgreSQL connection string
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
from typing import Optional

from jwtpizza.logging import get_logger
from jwtpizza.service.errors import NotFoundError, ServiceError
from jwtpizza.storage.models import Role, RoleBinding

logger = get_logger(__name__)


async def bootstrap_admin(
    name: str, email: str, password: str, *, dry_run: bool = False, runtime=None
) -> dict:
    """Create an Admin user unless one with ``email`` already exists."""
    if runtime is None:
        from jwtpizza.service.runtime import get_runtime

        runtime = get_runtime()

    try:
        existing = runtime.credentials.find_by_email(email)
    except NotFoundError:
        existing = None
    if existing:
        status = "already_admin" if existing.has_role(Role.ADMIN) else "exists_not_admin"
        return {"user_id": existing.id, "email": email, "status": status}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.credentials.create_user(
        name, email, password, roles=[RoleBinding(Role.ADMIN)]
    )
    logger.info("admin_bootstrapped", user_id=user.id)
    return {"user_id": user.id, "email": email, "status": "created"}


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the pizza service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", "admin"))
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    # No tokens are minted here, so a throwaway secret is enough
    os.environ.setdefault("JWT_SECRET", secrets.token_urlsafe(48))

    try:
        result = asyncio.run(
            bootstrap_admin(args.name, args.email, args.password, dry_run=args.dry_run)
        )
    except (ServiceError, RuntimeError, ValueError) as exc:
        print(f"Error: {exc}")
        return 1

    if result["status"] == "created":
        print(f"Created admin user: {result['email']} (id: {result['user_id']})")
    elif result["status"] == "dry_run":
        print(f"[DRY RUN] Would create admin user: {result['email']}")
    elif result["status"] == "already_admin":
        print(f"User {result['email']} already exists as admin (id: {result['user_id']})")
    else:
        print(f"Error: {result['email']} exists and is not an admin")
        return 1
    return 0
