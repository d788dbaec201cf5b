"""Unit tests for the Redis cache wrapper with the client mocked out."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from adminguard.storage.redis_cache import RedisCache, SyncRedisCache


@pytest.fixture
def cache():
    instance = RedisCache.__new__(RedisCache)
    instance.redis_url = "redis://localhost:6379/0"
    instance.client = MagicMock()
    instance.client.get = AsyncMock()
    instance.client.set = AsyncMock()
    instance._window_incr = AsyncMock()
    return instance


class TestRedisCache:
    def test_rate_keys_are_hashed(self):
        """Bucket keys are digested under a fixed prefix."""
        key = RedisCache._normalize_rate_key("10.0.0.1|auth|123")
        prefix, digest = key.rsplit(":", 1)
        assert prefix == "admin:rate"
        assert len(digest) == 64
        assert key != RedisCache._normalize_rate_key("10.0.0.1|auth|124")

    @pytest.mark.asyncio
    async def test_increment_window_runs_script(self, cache):
        """The atomic script gets the hashed key and a positive TTL."""
        cache._window_incr.return_value = 4
        assert await cache.increment_window("10.0.0.1|auth|123", 0) == 4
        cache._window_incr.assert_awaited_once_with(
            keys=[RedisCache._normalize_rate_key("10.0.0.1|auth|123")], args=[1]
        )

    @pytest.mark.asyncio
    async def test_csrf_set_if_absent(self, cache):
        """CSRF leases use SET NX with an expiry."""
        cache.client.set.return_value = None
        assert await cache.set_csrf_token_if_absent("p-1", "tok", 3600) is False
        cache.client.set.assert_awaited_once_with("admin:csrf:p-1", "tok", ex=3600, nx=True)

    @pytest.mark.asyncio
    async def test_csrf_get(self, cache):
        """Leases are read from the per-principal key."""
        cache.client.get.return_value = "tok"
        assert await cache.get_csrf_token("p-1") == "tok"
        cache.client.get.assert_awaited_once_with("admin:csrf:p-1")


class TestSyncRedisCache:
    @pytest.fixture
    def sync_cache(self):
        instance = SyncRedisCache.__new__(SyncRedisCache)
        instance.redis_url = "redis://localhost:6379/0"
        instance._sync_client = MagicMock()
        instance._window_incr = MagicMock(return_value=2)
        return instance

    @pytest.mark.asyncio
    async def test_same_keys_as_async_cache(self, sync_cache):
        """The blocking wrapper writes the same keys as the async one."""
        assert await sync_cache.increment_window("10.0.0.1|api|7", 60) == 2
        sync_cache._window_incr.assert_called_once_with(
            keys=[RedisCache._normalize_rate_key("10.0.0.1|api|7")], args=[60]
        )
        sync_cache._sync_client.set.return_value = True
        assert await sync_cache.set_csrf_token_if_absent("p-1", "tok", 0) is True
        sync_cache._sync_client.set.assert_called_once_with(
            "admin:csrf:p-1", "tok", ex=1, nx=True
        )
