from __future__ import annotations

import hashlib
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate windows and CSRF leases."""

    # Atomic fixed-window counter: the first hit in a window sets its TTL
    _WINDOW_INCR_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window_incr = self.client.register_script(self._WINDOW_INCR_SCRIPT)

    @staticmethod
    def _normalize_rate_key(bucket_key: str) -> str:
        """Hash bucket components so origins cannot inject key delimiters."""

        digest = hashlib.sha256(bucket_key.encode()).hexdigest()
        return f"admin:rate:{digest}"

    @staticmethod
    def _csrf_key(owner_id: str) -> str:
        return f"admin:csrf:{owner_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def increment_window(self, bucket_key: str, ttl_seconds: int) -> int:
        count = await self._window_incr(
            keys=[self._normalize_rate_key(bucket_key)], args=[max(1, ttl_seconds)]
        )
        return int(count)

    async def get_csrf_token(self, owner_id: str) -> Optional[str]:
        return await self.client.get(self._csrf_key(owner_id))

    async def set_csrf_token_if_absent(
        self, owner_id: str, token: str, ttl_seconds: int
    ) -> bool:
        return bool(
            await self.client.set(
                self._csrf_key(owner_id), token, ex=max(1, ttl_seconds), nx=True
            )
        )

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Exposes the same awaitable surface as ``RedisCache`` but talks to Redis
    through a blocking client, which keeps the connection free of event loop
    binding when pytest runs each coroutine in a fresh loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window_incr = self._sync_client.register_script(
            RedisCache._WINDOW_INCR_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def increment_window(self, bucket_key: str, ttl_seconds: int) -> int:
        count = self._window_incr(
            keys=[RedisCache._normalize_rate_key(bucket_key)],
            args=[max(1, ttl_seconds)],
        )
        return int(count)

    async def get_csrf_token(self, owner_id: str) -> Optional[str]:
        return self._sync_client.get(RedisCache._csrf_key(owner_id))

    async def set_csrf_token_if_absent(
        self, owner_id: str, token: str, ttl_seconds: int
    ) -> bool:
        return bool(
            self._sync_client.set(
                RedisCache._csrf_key(owner_id), token, ex=max(1, ttl_seconds), nx=True
            )
        )

    async def close(self) -> None:
        self._sync_client.close()
