from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for session markers and rate limits.

    The relational store stays the source of truth for markers; entries here
    are a read-through cache with a bounded TTL.
    """

    DEFAULT_MARKER_TTL = 300

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        marker_ttl: int = DEFAULT_MARKER_TTL,
    ):
        self.redis_url = redis_url
        self.marker_ttl = marker_ttl
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _marker_key(fragment: str) -> str:
        return f"auth:marker:{fragment}"

    @staticmethod
    def _user_markers_key(user_id: int) -> str:
        return f"auth:user_markers:{user_id}"

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so user-supplied values cannot collide on delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _rate_result(
        allowed, tokens, reset_after, return_remaining: bool
    ) -> Union[bool, Tuple[bool, int, int]]:
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(float(tokens))), int(reset_after or 0))
        return allowed_bool

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off the startup event loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def cache_marker(self, fragment: str, user_id: int) -> None:
        pipe = self.client.pipeline()
        pipe.set(self._marker_key(fragment), str(user_id), ex=self.marker_ttl)
        pipe.sadd(self._user_markers_key(user_id), fragment)
        pipe.expire(self._user_markers_key(user_id), self.marker_ttl)
        await pipe.execute()

    async def get_marker_user(self, fragment: str) -> Optional[int]:
        value = await self.client.get(self._marker_key(fragment))
        return int(value) if value is not None else None

    async def evict_marker(self, fragment: str) -> None:
        await self.client.delete(self._marker_key(fragment))

    async def evict_user_markers(self, user_id: int) -> int:
        """Drop every cached marker belonging to ``user_id``; returns how many were cached."""
        user_key = self._user_markers_key(user_id)
        fragments = await self.client.smembers(user_key)
        pipe = self.client.pipeline()
        for fragment in fragments:
            pipe.delete(self._marker_key(fragment))
        pipe.delete(user_key)
        await pipe.execute()
        return len(fragments)

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token-bucket rate limit evaluated atomically inside Redis."""
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[self._normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return self._rate_result(allowed, tokens, reset_after, return_remaining)

    async def close(self) -> None:
        """Close the connection pool when shutting down or resetting the runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, but exposes the same async methods as ``RedisCache``.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        marker_ttl: int = RedisCache.DEFAULT_MARKER_TTL,
    ):
        self.redis_url = redis_url
        self.marker_ttl = marker_ttl
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def cache_marker(self, fragment: str, user_id: int) -> None:
        pipe = self._sync_client.pipeline()
        pipe.set(RedisCache._marker_key(fragment), str(user_id), ex=self.marker_ttl)
        pipe.sadd(RedisCache._user_markers_key(user_id), fragment)
        pipe.expire(RedisCache._user_markers_key(user_id), self.marker_ttl)
        pipe.execute()

    async def get_marker_user(self, fragment: str) -> Optional[int]:
        value = self._sync_client.get(RedisCache._marker_key(fragment))
        return int(value) if value is not None else None

    async def evict_marker(self, fragment: str) -> None:
        self._sync_client.delete(RedisCache._marker_key(fragment))

    async def evict_user_markers(self, user_id: int) -> int:
        user_key = RedisCache._user_markers_key(user_id)
        fragments = self._sync_client.smembers(user_key)
        pipe = self._sync_client.pipeline()
        for fragment in fragments:
            pipe.delete(RedisCache._marker_key(fragment))
        pipe.delete(user_key)
        pipe.execute()
        return len(fragments)

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[RedisCache._normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return RedisCache._rate_result(allowed, tokens, reset_after, return_remaining)

    async def close(self) -> None:
        self._sync_client.close()
