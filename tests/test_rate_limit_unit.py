"""Tests for fixed-window admission control."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import Response

from authkeep.service.errors import RateLimitedError
from authkeep.service.rate_limit import (
    AUTH_LIMIT_MESSAGE,
    GENERAL_LIMIT_MESSAGE,
    RateLimitGate,
    RateLimitInfo,
    RateLimitPolicy,
)
from authkeep.storage.redis_cache import RedisCache


class Ticker:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


def _auth_policy():
    return RateLimitPolicy("auth", 5, 60, AUTH_LIMIT_MESSAGE)


class TestPolicies:
    def test_defaults_from_settings(self, settings):
        auth = RateLimitPolicy.auth(settings)
        general = RateLimitPolicy.general(settings)

        assert (auth.limit, auth.window_seconds, auth.message) == (5, 60, AUTH_LIMIT_MESSAGE)
        assert (general.limit, general.window_seconds, general.message) == (
            100,
            900,
            GENERAL_LIMIT_MESSAGE,
        )


class TestInMemoryGate:
    async def test_sixth_request_in_window_is_rejected(self):
        gate = RateLimitGate(clock=Ticker())
        policy = _auth_policy()

        remaining = [(await gate.check(policy, "1.2.3.4")).remaining for _ in range(5)]
        assert remaining == [4, 3, 2, 1, 0]

        with pytest.raises(RateLimitedError) as exc_info:
            await gate.check(policy, "1.2.3.4")
        assert exc_info.value.message == AUTH_LIMIT_MESSAGE
        assert exc_info.value.limit == 5
        assert exc_info.value.retry_after == 60

    async def test_clients_are_counted_separately(self):
        gate = RateLimitGate(clock=Ticker())
        policy = _auth_policy()
        for _ in range(5):
            await gate.check(policy, "1.1.1.1")

        info = await gate.check(policy, "2.2.2.2")

        assert info.remaining == 4

    async def test_policies_are_counted_separately(self):
        gate = RateLimitGate(clock=Ticker())
        for _ in range(5):
            await gate.check(_auth_policy(), "1.1.1.1")

        general = RateLimitPolicy("general", 100, 900, GENERAL_LIMIT_MESSAGE)
        assert (await gate.check(general, "1.1.1.1")).remaining == 99

    async def test_window_resets(self):
        ticker = Ticker()
        gate = RateLimitGate(clock=ticker)
        policy = _auth_policy()
        for _ in range(5):
            await gate.check(policy, "1.2.3.4")

        ticker.value += 30
        with pytest.raises(RateLimitedError) as exc_info:
            await gate.check(policy, "1.2.3.4")
        assert exc_info.value.retry_after == 30

        ticker.value += 30
        assert (await gate.check(policy, "1.2.3.4")).remaining == 4

    async def test_expired_windows_are_evicted(self):
        ticker = Ticker()
        gate = RateLimitGate(clock=ticker)
        general = RateLimitPolicy("general", 100, 900, GENERAL_LIMIT_MESSAGE)
        await gate.check(_auth_policy(), "10.0.0.1")
        await gate.check(_auth_policy(), "10.0.0.2")
        await gate.check(general, "10.0.0.1")

        ticker.value += 61
        await gate.check(_auth_policy(), "10.0.0.3")

        assert set(gate._local_windows) == {"general:10.0.0.1", "auth:10.0.0.3"}

    async def test_cleanup_waits_for_interval(self):
        ticker = Ticker()
        gate = RateLimitGate(clock=ticker)
        short = RateLimitPolicy("short", 5, 1, AUTH_LIMIT_MESSAGE)
        await gate.check(short, "10.0.0.1")

        ticker.value += 2
        await gate.check(short, "10.0.0.2")
        assert set(gate._local_windows) == {"short:10.0.0.1", "short:10.0.0.2"}

        ticker.value += 60
        await gate.check(short, "10.0.0.3")
        assert set(gate._local_windows) == {"short:10.0.0.3"}


class TestRedisBackedGate:
    async def test_uses_cache_counters(self):
        cache = MagicMock()
        cache.hit_fixed_window = AsyncMock(return_value=(True, 2, 58))
        gate = RateLimitGate(cache)

        info = await gate.check(_auth_policy(), "1.2.3.4")

        cache.hit_fixed_window.assert_awaited_once_with("auth:1.2.3.4", 5, 60)
        assert (info.limit, info.remaining, info.reset_seconds) == (5, 3, 58)

    async def test_rejection_from_cache(self):
        cache = MagicMock()
        cache.hit_fixed_window = AsyncMock(return_value=(False, 6, 42))
        gate = RateLimitGate(cache)

        with pytest.raises(RateLimitedError) as exc_info:
            await gate.check(_auth_policy(), "1.2.3.4")
        assert exc_info.value.retry_after == 42

    def test_rate_keys_are_hashed(self):
        key = RedisCache._normalize_rate_key("auth:1.2.3.4")

        assert key.startswith("rate:")
        assert "1.2.3.4" not in key
        assert key == RedisCache._normalize_rate_key("auth:1.2.3.4")

    def test_script_result_rounds_reset_up(self):
        assert RedisCache._to_result([1, 3, 1500]) == (True, 3, 2)
        assert RedisCache._to_result([0, 6, 0]) == (False, 6, 1)


class TestHeaders:
    def test_standard_headers_only(self):
        response = Response()
        RateLimitInfo(5, 3, 60).apply_headers(response)

        assert response.headers["RateLimit-Limit"] == "5"
        assert response.headers["RateLimit-Remaining"] == "3"
        assert response.headers["RateLimit-Reset"] == "60"
        assert "X-RateLimit-Limit" not in response.headers
        assert "Retry-After" not in response.headers

    def test_rejected_headers_include_retry_after(self):
        headers = RateLimitInfo(5, -1, 12).headers(rejected=True)

        assert headers["RateLimit-Remaining"] == "0"
        assert headers["Retry-After"] == "12"
