from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from adminguard.config import get_settings, reset_settings_cache
from adminguard.logging import get_logger
from adminguard.service.auth import Authenticator
from adminguard.service.csrf import CsrfManager
from adminguard.service.gatekeeper import Gatekeeper
from adminguard.service.lockout import LockoutGuard
from adminguard.service.passwords import SecretHasher
from adminguard.service.rate_limit import (
    POLICY_API,
    POLICY_AUTH,
    RateLimiter,
    RatePolicy,
)
from adminguard.service.rotation import RotationProtocol
from adminguard.service.sessions import SessionRegistry
from adminguard.service.tokens import TokenCodec
from adminguard.storage.memory import MemoryStore
from adminguard.storage.postgres import PostgresStore
from adminguard.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to per-test event loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.store_timeout_seconds,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.store_timeout_seconds,
                    )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for rate limits and CSRF leases; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate windows and "
                    "CSRF leases are in-memory only."
                ),
                mode=fallback_mode,
            )

        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            leeway=timedelta(seconds=self.settings.token_clock_skew_seconds),
        )
        self.sessions = SessionRegistry(self.store)
        self.lockout = LockoutGuard(
            self.store,
            threshold=self.settings.lockout_threshold,
            duration=timedelta(minutes=self.settings.lockout_duration_minutes),
        )
        self.auth = Authenticator(
            self.store,
            self.codec,
            self.sessions,
            self.lockout,
            hasher=SecretHasher(),
        )
        self.rotation = RotationProtocol(self.codec, self.sessions, self.store)
        self.gatekeeper = Gatekeeper(self.codec, self.sessions, self.store)
        self.csrf = CsrfManager(
            self.cache,
            token_length=self.settings.csrf_token_length,
            ttl_seconds=self.settings.csrf_token_ttl_seconds,
            sweep_probability=self.settings.rate_limit_sweep_probability,
        )
        self.rate_limiter = RateLimiter(
            {
                POLICY_AUTH: RatePolicy(
                    POLICY_AUTH,
                    self.settings.rate_limit_auth_max,
                    self.settings.rate_limit_auth_window,
                ),
                POLICY_API: RatePolicy(
                    POLICY_API,
                    self.settings.rate_limit_api_max,
                    self.settings.rate_limit_api_window,
                ),
            },
            cache=self.cache,
            sweep_probability=self.settings.rate_limit_sweep_probability,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            rate_limit_enabled=self.settings.rate_limit_enabled,
            csrf_enabled=self.settings.csrf_enabled,
            lockout_threshold=self.settings.lockout_threshold,
        )

    async def aclose(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache._sync_client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.debug("runtime_reset_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
