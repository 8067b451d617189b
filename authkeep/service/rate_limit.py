from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from fastapi import Response

from authkeep.config import Settings
from authkeep.logging import get_logger
from authkeep.service.errors import RateLimitedError

logger = get_logger(__name__)

CLEANUP_INTERVAL_SECONDS = 60

AUTH_LIMIT_MESSAGE = "Too many authentication attempts. Please try again later."
GENERAL_LIMIT_MESSAGE = "Too many requests. Please try again later."


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    limit: int
    window_seconds: int
    message: str

    @classmethod
    def auth(cls, settings: Settings) -> "RateLimitPolicy":
        return cls(
            "auth",
            settings.auth_rate_limit,
            settings.auth_rate_limit_window_seconds,
            AUTH_LIMIT_MESSAGE,
        )

    @classmethod
    def general(cls, settings: Settings) -> "RateLimitPolicy":
        return cls(
            "general",
            settings.general_rate_limit,
            settings.general_rate_limit_window_seconds,
            GENERAL_LIMIT_MESSAGE,
        )


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def headers(self, *, rejected: bool = False) -> Dict[str, str]:
        values = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(max(0, self.remaining)),
            "RateLimit-Reset": str(self.reset_seconds),
        }
        if rejected:
            values["Retry-After"] = str(self.reset_seconds)
        return values

    def apply_headers(self, response: Response) -> None:
        """Standard ``RateLimit-*`` headers (draft-ietf-httpapi-ratelimit-headers)."""
        for name, value in self.headers().items():
            response.headers[name] = value


class RateLimitGate:
    """Per-client fixed-window admission control.

    Counters live in Redis when a cache is configured; otherwise an in-process
    table guarded by an ``asyncio.Lock`` is used, which is only correct for a
    single worker.
    """

    def __init__(
        self, cache=None, *, clock: Optional[Callable[[], float]] = None
    ) -> None:
        self.cache = cache
        self._clock = clock or time.monotonic
        # key -> (count, window start, window end)
        self._local_windows: Dict[str, Tuple[int, float, float]] = {}
        self._local_lock = asyncio.Lock()
        self._last_cleanup = self._clock()

    def _cleanup_expired(self, now: float) -> int:
        """Drop windows that have ended. Caller holds ``_local_lock``."""
        expired = [key for key, (_, _, ends) in self._local_windows.items() if ends <= now]
        for key in expired:
            self._local_windows.pop(key, None)
        if expired:
            logger.debug(
                "rate_limit_cleanup", cleaned=len(expired), remaining=len(self._local_windows)
            )
        self._last_cleanup = now
        return len(expired)

    async def _hit(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int, int]:
        if self.cache is not None:
            return await self.cache.hit_fixed_window(key, limit, window_seconds)
        now = self._clock()
        async with self._local_lock:
            if now - self._last_cleanup >= CLEANUP_INTERVAL_SECONDS:
                self._cleanup_expired(now)
            count, started, _ = self._local_windows.get(key, (0, now, now))
            if now - started >= window_seconds:
                count, started = 0, now
            count += 1
            self._local_windows[key] = (count, started, started + window_seconds)
        reset_seconds = max(1, math.ceil(started + window_seconds - now))
        return count <= limit, count, reset_seconds

    async def check(self, policy: RateLimitPolicy, client_key: str) -> RateLimitInfo:
        """Count one request; raise ``RateLimitedError`` once the window is full."""

        allowed, count, reset_seconds = await self._hit(
            f"{policy.name}:{client_key}", policy.limit, policy.window_seconds
        )
        info = RateLimitInfo(policy.limit, policy.limit - count, reset_seconds)
        if not allowed:
            logger.warning(
                "rate_limit_rejected",
                policy=policy.name,
                client=client_key,
                limit=policy.limit,
                retry_after=reset_seconds,
            )
            raise RateLimitedError(
                policy.message,
                limit=policy.limit,
                retry_after=reset_seconds,
                detail={"policy": policy.name},
            )
        return info

    def reset(self) -> None:
        self._local_windows.clear()
