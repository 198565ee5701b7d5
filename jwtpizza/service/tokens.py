from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Optional, Protocol

from redis.exceptions import RedisError

from jwtpizza.config import Settings
from jwtpizza.logging import get_logger
from jwtpizza.service.errors import ServerError
from jwtpizza.storage.errors import ConstraintViolation, StorageError
from jwtpizza.storage.models import SessionMarker, User
from jwtpizza.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# OSError covers socket-level failures raised before redis wraps them
_CACHE_ERRORS = (RedisError, OSError)


class MarkerStore(Protocol):
    def add_session_marker(self, fragment: str, user_id: int) -> SessionMarker: ...

    def get_session_marker(self, fragment: str) -> Optional[int]: ...

    def delete_session_marker(self, fragment: str) -> bool: ...

    def get_user(self, user_id: int) -> Optional[User]: ...


def get_token_signature(token: Optional[str]) -> str:
    """Return the signature segment of a three-part token, or ``""`` if malformed."""
    if not token:
        return ""
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        return ""
    return parts[2]


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


class TokenService:
    """Mints bearer tokens and tracks their liveness through session markers.

    A token is live exactly while a marker keyed by its signature segment
    exists. Nothing expires on its own; logout (or deleting the owner)
    removes the marker.
    """

    def __init__(
        self,
        store: MarkerStore,
        cache: Optional[RedisCache],
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.logger = logger

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    async def issue(self, user: User) -> str:
        """Mint a token for ``user`` and persist its marker before returning it."""
        payload = {
            "sub": user.id,
            "name": user.name,
            "email": user.email,
            "roles": [binding.to_dict() for binding in user.roles],
            "iss": self.settings.jwt_issuer,
            "iat": int(time.time()),
            # Fresh per token so concurrent logins never share a fragment
            "jti": secrets.token_urlsafe(16),
        }
        token = self._encode_jwt(payload)
        fragment = get_token_signature(token)
        try:
            self.store.add_session_marker(fragment, user.id)
        except (ConstraintViolation, StorageError) as exc:
            self.logger.error("session_marker_persist_failed", user_id=user.id, error=str(exc))
            raise ServerError("unable to start session") from exc
        if self.cache:
            # The store row is authoritative; a cold cache only costs a lookup
            try:
                await self.cache.cache_marker(fragment, user.id)
            except _CACHE_ERRORS as exc:
                self.logger.warning("session_cache_write_failed", user_id=user.id, error=str(exc))
        self.logger.info("session_issued", user_id=user.id)
        return token

    async def revoke(self, token: Optional[str]) -> None:
        """Delete the marker for ``token``; malformed or unknown tokens are a no-op.

        The store row goes first and the cache entry second, so a concurrent
        read-through can never re-cache a marker after it is gone.
        """
        fragment = get_token_signature(token)
        if not fragment:
            return
        try:
            removed = self.store.delete_session_marker(fragment)
        except StorageError as exc:
            self.logger.error("session_marker_delete_failed", error=str(exc))
            raise ServerError("unable to end session") from exc
        if self.cache:
            try:
                await self.cache.evict_marker(fragment)
            except _CACHE_ERRORS as exc:
                # A surviving cache entry would keep the token live until its TTL
                self.logger.error("session_cache_evict_failed", error=str(exc))
                raise ServerError("unable to end session") from exc
        if removed:
            self.logger.info("session_revoked")

    async def _marker_owner(self, fragment: str) -> Optional[int]:
        if self.cache:
            try:
                cached = await self.cache.get_marker_user(fragment)
            except _CACHE_ERRORS as exc:
                self.logger.warning("session_cache_read_failed", error=str(exc))
                return self._stored_owner(fragment)
            if cached is not None:
                return cached
        user_id = self._stored_owner(fragment)
        if user_id is None or not self.cache:
            return user_id
        try:
            await self.cache.cache_marker(fragment, user_id)
            # A revoke may have landed while the entry was being written
            if self._stored_owner(fragment) is None:
                await self.cache.evict_marker(fragment)
                return None
        except _CACHE_ERRORS as exc:
            self.logger.warning("session_cache_write_failed", user_id=user_id, error=str(exc))
            return self._stored_owner(fragment)
        return user_id

    def _stored_owner(self, fragment: str) -> Optional[int]:
        try:
            return self.store.get_session_marker(fragment)
        except StorageError as exc:
            self.logger.error("session_marker_lookup_failed", error=str(exc))
            raise ServerError("unable to check session") from exc

    async def is_active(self, token: Optional[str]) -> bool:
        fragment = get_token_signature(token)
        if not fragment:
            return False
        return await self._marker_owner(fragment) is not None

    async def resolve(self, token: Optional[str]) -> Optional[User]:
        """Return the token's owner, or ``None`` for an anonymous caller.

        Identity comes from the marker, never from the token's claims, so
        the first two segments are not trusted. Never-issued, revoked and
        orphaned tokens are indistinguishable to the caller.
        """
        fragment = get_token_signature(token)
        if not fragment:
            return None
        user_id = await self._marker_owner(fragment)
        if user_id is None:
            return None
        return self.store.get_user(user_id)

    async def forget_user(self, user_id: int) -> None:
        """Drop cached markers for a deleted user; the store cascade removes the rows."""
        if not self.cache:
            return
        try:
            evicted = await self.cache.evict_user_markers(user_id)
        except _CACHE_ERRORS as exc:
            # resolve() still fails closed: the owner row is gone
            self.logger.warning("session_cache_purge_failed", user_id=user_id, error=str(exc))
            return
        self.logger.info("session_cache_purged", user_id=user_id, evicted=evicted)
