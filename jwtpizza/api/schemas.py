from __future__ import annotations

import re
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from jwtpizza.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error payload with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+$")


def _validate_email(value: str) -> str:
    # Case is preserved; lookups compare exactly as stored
    normalized = value.strip()
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if not _EMAIL_PATTERN.match(normalized):
        raise ValueError("invalid email address")
    return normalized


def _validate_password(value: str) -> str:
    if not value:
        raise ValueError("password required")
    if len(value) > 1024:
        raise ValueError("password too long")
    return value


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_register_password(cls, value: str) -> str:
        return _validate_password(value)


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_login_password(cls, value: str) -> str:
        return _validate_password(value)


class UpdateUserRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[str] = None
    password: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("password")
    @classmethod
    def _validate_update_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password(value) if value is not None else None


class RoleResponse(BaseModel):
    role: str
    objectId: Optional[int] = None


class UserResponse(BaseModel):
    id: int
    name: str
    email: str
    roles: List[RoleResponse]


class AuthResponse(BaseModel):
    user: UserResponse
    token: str


class UserListResponse(BaseModel):
    users: List[UserResponse]
    more: bool


class FranchiseAdmin(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _validate_email(value)


class CreateFranchiseRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    admins: List[FranchiseAdmin] = Field(default_factory=list, max_length=100)


class CreateStoreRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class StoreResponse(BaseModel):
    id: int
    franchiseId: int
    name: str
    totalRevenue: float = 0.0


class FranchiseAdminResponse(BaseModel):
    id: int
    name: str
    email: str


class FranchiseResponse(BaseModel):
    id: int
    name: str
    admins: Optional[List[FranchiseAdminResponse]] = None
    stores: Optional[List[StoreResponse]] = None


class FranchiseListResponse(BaseModel):
    franchises: List[FranchiseResponse]
    more: bool


class MessageResponse(BaseModel):
    message: str
