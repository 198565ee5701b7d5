from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from jwtpizza.config import Settings, get_settings, reset_settings_cache
from jwtpizza.logging import get_logger
from jwtpizza.service.auth import AuthService
from jwtpizza.service.credentials import CredentialService
from jwtpizza.service.franchises import FranchiseService
from jwtpizza.service.passwords import PasswordHasher
from jwtpizza.service.tokens import TokenService
from jwtpizza.storage.memory import MemoryStore
from jwtpizza.storage.postgres import PostgresStore
from jwtpizza.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

RateLimitResult = Union[bool, Tuple[bool, int, int]]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return urlunparse(parsed._replace(netloc=f"{parsed.username or ''}:***@{host}"))


def _build_store(settings: Settings) -> Union[MemoryStore, PostgresStore]:
    if settings.use_memory_store:
        return MemoryStore()
    try:
        return PostgresStore(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            timeout=settings.db_connect_timeout,
        )
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            database_url=_mask_url_password(settings.database_url),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise


def _build_cache(settings: Settings) -> Optional[Union[RedisCache, SyncRedisCache]]:
    """Connect the marker cache, or return ``None`` where running without Redis is allowed."""
    redis_error: Optional[Exception] = None
    if settings.redis_url:
        # Sync client under TEST_MODE so tests never bind it to a dead event loop
        cache_cls = SyncRedisCache if settings.test_mode else RedisCache
        try:
            cache = cache_cls(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for the session cache and rate limits; start Redis "
            "or set TEST_MODE=true or ALLOW_REDIS_FALLBACK_DEV=true."
        ) from redis_error
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return None


class LocalRateLimiter:
    """Per-process token buckets used when Redis is unavailable."""

    def __init__(self) -> None:
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, limit: int, window_seconds: int, cost: int = 1) -> Tuple[bool, int, int]:
        now = time.monotonic()
        refill_rate = float(limit) / float(window_seconds)
        with self._lock:
            tokens, last = self._buckets.get(key, (float(limit), now))
            tokens = min(float(limit), tokens + max(0.0, now - last) * refill_rate)
            if tokens >= cost:
                tokens -= cost
                self._buckets[key] = (tokens, now)
                return True, int(tokens), 0
            return False, int(tokens), int((cost - tokens) / refill_rate)


class Runtime:
    """Process-wide wiring of the store, cache and services."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = _build_store(self.settings)
        self.cache = _build_cache(self.settings)
        self.hasher = PasswordHasher(time_cost=self.settings.password_hash_time_cost)
        self.credentials = CredentialService(self.store, self.hasher)
        self.tokens = TokenService(self.store, self.cache, self.settings)
        self.auth = AuthService(self.credentials, self.tokens, self.settings)
        self.franchises = FranchiseService(self.store)
        self.local_rate_limiter = LocalRateLimiter()
        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
            redis_enabled=self.cache is not None,
            test_mode=self.settings.test_mode,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the singleton from the current environment; refused outside TEST_MODE."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            asyncio.run(runtime.cache.close())
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> RateLimitResult:
    """Spend ``cost`` tokens from the bucket for ``key``.

    Returns a bool, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set. A non-positive ``limit`` disables the check.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    allowed, remaining, reset_seconds = runtime.local_rate_limiter.hit(
        key, limit, window_seconds, cost
    )
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
