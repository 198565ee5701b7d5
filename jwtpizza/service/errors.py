from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """A failure the HTTP layer renders as an error envelope.

    Subclasses pin the ``status_code`` and the ``error_code`` clients switch on;
    ``detail`` is passed through to the envelope unchanged.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """No bearer token, or its session marker is gone."""

    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated, but no role binding covers the action or franchise."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Unknown user, franchise or store.

    Also raised for a wrong password so login never reveals which emails exist.
    """

    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate email or franchise name, or a role binding scoped to a missing franchise."""

    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Store or hashing failure; the cause is chained for logs, never shown."""

    status_code = 500
    error_code = "server_error"
