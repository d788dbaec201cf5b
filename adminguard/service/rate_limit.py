from __future__ import annotations

import math
import random
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional, Protocol, Tuple

from adminguard.logging import get_logger
from adminguard.service.errors import RateLimitExceeded

logger = get_logger(__name__)

POLICY_AUTH = "auth"
POLICY_API = "api"

AUTH_PATHS = frozenset({"/auth/login", "/auth/register", "/auth/refresh"})
EXEMPT_PATHS = frozenset({"/healthz"})

DEFAULT_WINDOW_SECONDS = 60


class WindowCache(Protocol):
    async def increment_window(self, bucket_key: str, ttl_seconds: int) -> int: ...


@dataclass(frozen=True)
class RatePolicy:
    name: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    policy: str
    limit: int
    window_seconds: int
    count: int
    retry_after_seconds: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def policy_for_path(path: str) -> Optional[str]:
    """Map a request path to its policy name; ``None`` means not limited."""
    if path in EXEMPT_PATHS:
        return None
    normalized = path.rstrip("/") or "/"
    if normalized in AUTH_PATHS:
        return POLICY_AUTH
    return POLICY_API


def client_origin(
    headers: Mapping[str, str], peer: Optional[str], *, trust_proxy_headers: bool = True
) -> str:
    if trust_proxy_headers:
        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    return peer or "unknown"


class RateLimiter:
    """Fixed-window counters keyed by (origin, policy, window index).

    With a cache configured the count lives in Redis and is incremented
    atomically there; otherwise a lock-guarded in-process map is used and
    buckets from past windows are swept on a small fraction of calls.
    """

    def __init__(
        self,
        policies: Mapping[str, RatePolicy],
        *,
        cache: Optional[WindowCache] = None,
        sweep_probability: float = 0.01,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.policies = dict(policies)
        self.cache = cache
        self.sweep_probability = sweep_probability
        self._clock = clock
        self._windows: Dict[Tuple[str, str, int], int] = {}
        self._lock = threading.Lock()

    def _window(self, policy: RatePolicy) -> int:
        if policy.window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                policy=policy.name,
                window_seconds=policy.window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            return DEFAULT_WINDOW_SECONDS
        return policy.window_seconds

    async def check_and_increment(self, origin: str, policy_name: str) -> RateDecision:
        """Count one request against the current window.

        Raises:
            RateLimitExceeded: the window already holds ``limit`` requests
        """
        policy = self.policies[policy_name]
        window = self._window(policy)
        now_ts = self._clock().timestamp()
        index = math.floor(now_ts / window)
        retry_after = max(1, math.ceil((index + 1) * window - now_ts))
        if policy.limit <= 0:
            return RateDecision(True, policy.name, policy.limit, window, 0, 0)

        if self.cache is not None:
            count = await self.cache.increment_window(
                f"{origin}|{policy.name}|{index}", window
            )
            allowed = count <= policy.limit
        else:
            with self._lock:
                key = (origin, policy.name, index)
                count = self._windows.get(key, 0)
                allowed = count < policy.limit
                if allowed:
                    count += 1
                    self._windows[key] = count
                if random.random() < self.sweep_probability:
                    self._sweep_locked(now_ts)

        decision = RateDecision(allowed, policy.name, policy.limit, window, count, retry_after)
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                origin=origin,
                policy=policy.name,
                limit=policy.limit,
                window_seconds=window,
                retry_after_seconds=retry_after,
            )
            raise RateLimitExceeded(policy.limit, window, retry_after)
        return decision

    def _sweep_locked(self, now_ts: float) -> int:
        stale = []
        for key in self._windows:
            policy = self.policies.get(key[1])
            window = policy.window_seconds if policy and policy.window_seconds > 0 else DEFAULT_WINDOW_SECONDS
            if key[2] < math.floor(now_ts / window):
                stale.append(key)
        for key in stale:
            del self._windows[key]
        if stale:
            logger.debug("rate_limit_windows_swept", removed=len(stale))
        return len(stale)

    def sweep(self) -> int:
        with self._lock:
            return self._sweep_locked(self._clock().timestamp())
