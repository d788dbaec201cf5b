"""Tests for the fixed-window rate limiter."""

from unittest.mock import AsyncMock

import pytest

from adminguard.service.errors import RateLimitExceeded
from adminguard.service.rate_limit import (
    POLICY_API,
    POLICY_AUTH,
    RateLimiter,
    RatePolicy,
    client_origin,
    policy_for_path,
)


def _limiter(clock, limit=3, window=60, cache=None):
    return RateLimiter(
        {
            POLICY_AUTH: RatePolicy(POLICY_AUTH, limit, window),
            POLICY_API: RatePolicy(POLICY_API, 100, 60),
        },
        cache=cache,
        sweep_probability=0.0,
        clock=clock,
    )


class TestPolicyRouting:
    @pytest.mark.parametrize(
        "path,expected",
        [
            ("/auth/login", POLICY_AUTH),
            ("/auth/register", POLICY_AUTH),
            ("/auth/refresh/", POLICY_AUTH),
            ("/auth/logout", POLICY_API),
            ("/admin/users", POLICY_API),
            ("/healthz", None),
        ],
    )
    def test_policy_for_path(self, path, expected):
        """Credential endpoints use the auth policy and health checks are exempt."""
        assert policy_for_path(path) == expected

    def test_client_origin_prefers_forwarded_for(self):
        """The first X-Forwarded-For entry identifies the client."""
        headers = {"x-forwarded-for": "203.0.113.5, 10.0.0.1", "x-real-ip": "10.0.0.2"}
        assert client_origin(headers, "127.0.0.1") == "203.0.113.5"

    def test_client_origin_falls_back(self):
        """X-Real-IP, then the peer, then a fixed placeholder."""
        assert client_origin({"x-real-ip": "10.0.0.2"}, "127.0.0.1") == "10.0.0.2"
        assert client_origin({}, "127.0.0.1") == "127.0.0.1"
        assert client_origin({}, None) == "unknown"

    def test_client_origin_ignores_proxy_headers_when_untrusted(self):
        """Forwarding headers are ignored unless trusted."""
        headers = {"x-forwarded-for": "203.0.113.5"}
        assert client_origin(headers, "127.0.0.1", trust_proxy_headers=False) == "127.0.0.1"


class TestInProcessWindows:
    @pytest.mark.asyncio
    async def test_rejects_after_limit(self, clock):
        """The request after the limit is rejected with retry metadata."""
        limiter = _limiter(clock)
        for expected in (1, 2, 3):
            decision = await limiter.check_and_increment("10.0.0.1", POLICY_AUTH)
            assert decision.allowed
            assert decision.count == expected
        with pytest.raises(RateLimitExceeded) as excinfo:
            await limiter.check_and_increment("10.0.0.1", POLICY_AUTH)
        err = excinfo.value
        assert err.status_code == 429
        assert err.retry_after_seconds == 30
        assert err.headers["Retry-After"] == "30"
        assert err.headers["X-RateLimit-Limit"] == "3"
        assert err.message == "Maximum 3 requests per 60 seconds allowed"

    @pytest.mark.asyncio
    async def test_next_window_resets(self, clock):
        """Crossing the window boundary starts a fresh count."""
        limiter = _limiter(clock)
        for _ in range(3):
            await limiter.check_and_increment("10.0.0.1", POLICY_AUTH)
        clock.advance(seconds=30)
        decision = await limiter.check_and_increment("10.0.0.1", POLICY_AUTH)
        assert decision.count == 1

    @pytest.mark.asyncio
    async def test_origins_and_policies_are_independent(self, clock):
        """Each (origin, policy) pair has its own counter."""
        limiter = _limiter(clock, limit=1)
        await limiter.check_and_increment("10.0.0.1", POLICY_AUTH)
        await limiter.check_and_increment("10.0.0.2", POLICY_AUTH)
        await limiter.check_and_increment("10.0.0.1", POLICY_API)

    @pytest.mark.asyncio
    async def test_rejected_requests_are_not_counted(self, clock):
        """A rejected request does not push the count further."""
        limiter = _limiter(clock, limit=1)
        await limiter.check_and_increment("10.0.0.1", POLICY_AUTH)
        for _ in range(3):
            with pytest.raises(RateLimitExceeded):
                await limiter.check_and_increment("10.0.0.1", POLICY_AUTH)
        assert max(limiter._windows.values()) == 1

    @pytest.mark.asyncio
    async def test_non_positive_limit_disables(self, clock):
        """A limit of zero lets everything through."""
        limiter = _limiter(clock, limit=0)
        for _ in range(10):
            assert (await limiter.check_and_increment("10.0.0.1", POLICY_AUTH)).allowed

    @pytest.mark.asyncio
    async def test_invalid_window_defaults_to_sixty(self, clock):
        """A non-positive window falls back to sixty seconds."""
        limiter = _limiter(clock, window=0)
        decision = await limiter.check_and_increment("10.0.0.1", POLICY_AUTH)
        assert decision.window_seconds == 60

    @pytest.mark.asyncio
    async def test_sweep_drops_past_windows(self, clock):
        """Buckets from earlier windows are swept."""
        limiter = _limiter(clock)
        await limiter.check_and_increment("10.0.0.1", POLICY_AUTH)
        clock.advance(minutes=2)
        await limiter.check_and_increment("10.0.0.1", POLICY_AUTH)
        assert limiter.sweep() == 1
        assert len(limiter._windows) == 1


class TestCachedWindows:
    @pytest.mark.asyncio
    async def test_cache_counts_are_authoritative(self, clock):
        """With a cache the returned count decides, and the bucket key carries the window index."""
        cache = AsyncMock()
        cache.increment_window.side_effect = [1, 2, 3, 4]
        limiter = _limiter(clock, cache=cache)
        for _ in range(3):
            await limiter.check_and_increment("10.0.0.1", POLICY_AUTH)
        with pytest.raises(RateLimitExceeded):
            await limiter.check_and_increment("10.0.0.1", POLICY_AUTH)
        index = int(clock().timestamp() // 60)
        cache.increment_window.assert_awaited_with(f"10.0.0.1|auth|{index}", 60)
