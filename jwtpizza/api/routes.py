from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from jwtpizza.api.schemas import (
    AuthResponse,
    CreateFranchiseRequest,
    CreateStoreRequest,
    Envelope,
    FranchiseListResponse,
    FranchiseResponse,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    StoreResponse,
    UpdateUserRequest,
    UserListResponse,
    UserResponse,
)
from jwtpizza.logging import bind_user, get_logger
from jwtpizza.service.errors import AuthenticationError, ForbiddenError, RateLimitedError
from jwtpizza.service.runtime import Runtime, check_rate_limit, get_runtime
from jwtpizza.storage.models import Franchise, Role, Store, User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    return _extract_bearer(authorization)


async def get_user(token: Optional[str] = Depends(get_token)) -> User:
    runtime = get_runtime()
    user = await runtime.tokens.resolve(token)
    if not user:
        raise AuthenticationError("unauthorized")
    bind_user(user.id)
    return user


async def get_admin_user(user: User = Depends(get_user)) -> User:
    if not get_runtime().auth.authorize(user, Role.ADMIN):
        raise ForbiddenError("unauthorized")
    return user


def _require(user: User, role: Role, scope_id: Optional[int] = None) -> None:
    # Denials never name the role or scope that was missing
    if not get_runtime().auth.authorize(user, role, scope_id):
        raise ForbiddenError("unauthorized")


def _require_self_or_admin(user: User, user_id: int) -> None:
    if user.id != user_id:
        _require(user, Role.ADMIN)


async def _enforce_rate_limit(runtime: Runtime, key: str, limit: int, window: int) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limited", limit=limit, window_seconds=window)
        raise RateLimitedError(
            "too many requests", detail={"retry_after": reset_seconds, "remaining": remaining}
        )


def _user_response(user: User) -> UserResponse:
    return UserResponse.model_validate(user.to_dict())


def _franchise_response(franchise: Franchise) -> FranchiseResponse:
    return FranchiseResponse.model_validate(franchise.to_dict())


def _store_response(store: Store) -> StoreResponse:
    return StoreResponse.model_validate(store.to_dict())


# auth ------------------------------------------------------------------


@router.post("/auth", response_model=Envelope, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a diner account and start a session for it.

    Raises:
        409: If the email is already registered
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{body.email}",
        runtime.settings.register_rate_limit_per_minute,
        60,
    )
    user, token = await runtime.auth.register(body.name, body.email, body.password)
    return Envelope(status="ok", data=AuthResponse(user=_user_response(user), token=token))


@router.put("/auth", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email and password for a bearer token.

    Raises:
        404: If the email is unknown or the password is wrong
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    user, token = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=AuthResponse(user=_user_response(user), token=token))


@router.delete("/auth", response_model=Envelope, tags=["auth"])
async def logout(
    user: User = Depends(get_user),
    token: Optional[str] = Depends(get_token),
):
    await get_runtime().auth.logout(token)
    logger.info("logout", user_id=user.id)
    return Envelope(status="ok", data=MessageResponse(message="logout successful"))


# users -----------------------------------------------------------------


@router.get("/user/me", response_model=Envelope, tags=["user"])
async def get_me(user: User = Depends(get_user)):
    return Envelope(status="ok", data=_user_response(user))


@router.get("/user", response_model=Envelope, tags=["user"])
async def list_users(
    page: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1, le=100),
    name: str = Query("*", max_length=255),
    user: User = Depends(get_user),
):
    runtime = get_runtime()
    users, more = runtime.credentials.list_users(
        page, limit or runtime.settings.list_per_page, name
    )
    return Envelope(
        status="ok",
        data=UserListResponse(users=[_user_response(u) for u in users], more=more),
    )


@router.put("/user/{user_id}", response_model=Envelope, tags=["user"])
async def update_user(
    user_id: int,
    body: UpdateUserRequest,
    user: User = Depends(get_user),
):
    """Update name, email or password of the caller (or anyone, for an Admin).

    The response carries a fresh token for the updated record.
    """
    _require_self_or_admin(user, user_id)
    runtime = get_runtime()
    updated = await runtime.credentials.update_user(
        user_id, name=body.name, email=body.email, password=body.password
    )
    token = await runtime.tokens.issue(updated)
    return Envelope(status="ok", data=AuthResponse(user=_user_response(updated), token=token))


@router.delete("/user/{user_id}", response_model=Envelope, tags=["user"])
async def delete_user(user_id: int, user: User = Depends(get_user)):
    _require_self_or_admin(user, user_id)
    await get_runtime().auth.delete_user(user_id)
    return Envelope(status="ok", data=MessageResponse(message="user deleted"))


# franchises ------------------------------------------------------------


@router.get("/franchise", response_model=Envelope, tags=["franchise"])
async def list_franchises(
    page: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1, le=100),
    name: str = Query("*", max_length=255),
    authorization: Optional[str] = Header(None),
):
    """Public franchise listing; Admin callers also see franchise admins."""
    runtime = get_runtime()
    requester = await runtime.tokens.resolve(_extract_bearer(authorization))
    franchises, more = runtime.franchises.list_franchises(
        requester, page, limit or runtime.settings.list_per_page, name
    )
    return Envelope(
        status="ok",
        data=FranchiseListResponse(
            franchises=[_franchise_response(f) for f in franchises], more=more
        ),
    )


@router.get("/franchise/{user_id}", response_model=Envelope, tags=["franchise"])
async def list_user_franchises(user_id: int, user: User = Depends(get_user)):
    runtime = get_runtime()
    franchises = []
    if user.id == user_id or runtime.auth.authorize(user, Role.ADMIN):
        franchises = runtime.franchises.get_user_franchises(user_id)
    return Envelope(status="ok", data=[_franchise_response(f) for f in franchises])


@router.post("/franchise", response_model=Envelope, tags=["franchise"])
async def create_franchise(body: CreateFranchiseRequest, user: User = Depends(get_admin_user)):
    franchise = get_runtime().franchises.create_franchise(
        body.name, [admin.email for admin in body.admins]
    )
    return Envelope(status="ok", data=_franchise_response(franchise))


@router.delete("/franchise/{franchise_id}", response_model=Envelope, tags=["franchise"])
async def delete_franchise(franchise_id: int, user: User = Depends(get_admin_user)):
    get_runtime().franchises.delete_franchise(franchise_id)
    return Envelope(status="ok", data=MessageResponse(message="franchise deleted"))


@router.post("/franchise/{franchise_id}/store", response_model=Envelope, tags=["franchise"])
async def create_store(
    franchise_id: int,
    body: CreateStoreRequest,
    user: User = Depends(get_user),
):
    _require(user, Role.FRANCHISEE, franchise_id)
    store = get_runtime().franchises.create_store(franchise_id, body.name)
    return Envelope(status="ok", data=_store_response(store))


@router.delete(
    "/franchise/{franchise_id}/store/{store_id}", response_model=Envelope, tags=["franchise"]
)
async def delete_store(franchise_id: int, store_id: int, user: User = Depends(get_user)):
    _require(user, Role.FRANCHISEE, franchise_id)
    get_runtime().franchises.delete_store(franchise_id, store_id)
    return Envelope(status="ok", data=MessageResponse(message="store deleted"))
