from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate-limit counters."""

    # Atomic fixed-window counter: INCR, arm the expiry on first hit
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])

local count = redis.call('INCR', key)
if count == 1 then
  redis.call('PEXPIRE', key, window_ms)
end
local ttl = redis.call('PTTL', key)
if ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
local allowed = 0
if count <= limit then
  allowed = 1
end
return {allowed, count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so client-supplied parts cannot collide on delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _to_result(raw) -> Tuple[bool, int, int]:
        allowed, count, ttl_ms = raw
        reset_seconds = max(1, -(-int(ttl_ms) // 1000))
        return bool(int(allowed)), int(count), reset_seconds

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def hit_fixed_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Count one hit against ``key``; returns ``(allowed, count, reset_seconds)``."""

        raw = await self._fixed_window(
            keys=[self._normalize_rate_key(key)],
            args=[limit, int(window_seconds * 1000)],
        )
        return self._to_result(raw)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis client behind the async ``RedisCache`` interface.

    Used under TEST_MODE so pytest event loops never own a connection.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self._sync_client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def hit_fixed_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        raw = self._fixed_window(
            keys=[RedisCache._normalize_rate_key(key)],
            args=[limit, int(window_seconds * 1000)],
        )
        return RedisCache._to_result(raw)

    async def close(self) -> None:
        self._sync_client.close()
