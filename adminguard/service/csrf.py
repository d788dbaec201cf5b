from __future__ import annotations

import hmac
import random
import secrets
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol

from adminguard.logging import get_logger
from adminguard.storage.models import CsrfLease

logger = get_logger(__name__)


class CsrfCache(Protocol):
    async def get_csrf_token(self, owner_id: str) -> Optional[str]: ...

    async def set_csrf_token_if_absent(
        self, owner_id: str, token: str, ttl_seconds: int
    ) -> bool: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CsrfManager:
    """One anti-forgery lease per principal, reused until it expires.

    Leases live in Redis when a cache is configured, otherwise in a
    lock-guarded map that is swept of expired entries now and then. Two
    leases minted in the same instant are both accepted until expiry.
    """

    def __init__(
        self,
        cache: Optional[CsrfCache] = None,
        *,
        token_length: int = 32,
        ttl_seconds: int = 3600,
        sweep_probability: float = 0.01,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.cache = cache
        self.token_length = token_length
        self.ttl_seconds = ttl_seconds
        self.sweep_probability = sweep_probability
        self._clock = clock
        self._leases: Dict[str, CsrfLease] = {}
        self._lock = threading.Lock()

    def _new_token(self) -> str:
        return secrets.token_hex(max(8, self.token_length // 2))

    async def issue_or_reuse(self, owner_id: str) -> str:
        if self.cache is not None:
            existing = await self.cache.get_csrf_token(owner_id)
            if existing:
                return existing
            token = self._new_token()
            if await self.cache.set_csrf_token_if_absent(owner_id, token, self.ttl_seconds):
                return token
            # Lost the race to a concurrent issue; the winner's lease is current
            return await self.cache.get_csrf_token(owner_id) or token

        now = self._clock()
        with self._lock:
            lease = self._leases.get(owner_id)
            if lease is not None and lease.is_live(now):
                return lease.token
            lease = CsrfLease(
                owner_id=owner_id,
                token=self._new_token(),
                expires_at=now + timedelta(seconds=self.ttl_seconds),
            )
            self._leases[owner_id] = lease
            if random.random() < self.sweep_probability:
                self._sweep_locked(now)
            return lease.token

    async def current(self, owner_id: str) -> Optional[str]:
        """The live lease for ``owner_id`` without minting a new one."""
        if self.cache is not None:
            return await self.cache.get_csrf_token(owner_id)
        now = self._clock()
        with self._lock:
            lease = self._leases.get(owner_id)
            if lease is None:
                return None
            if not lease.is_live(now):
                self._leases.pop(owner_id, None)
                return None
            return lease.token

    async def validate(self, owner_id: str, presented: Optional[str]) -> bool:
        if not presented:
            return False
        expected = await self.current(owner_id)
        if not expected:
            return False
        return hmac.compare_digest(expected.encode(), presented.encode())

    def _sweep_locked(self, now: datetime) -> int:
        stale = [owner for owner, lease in self._leases.items() if not lease.is_live(now)]
        for owner in stale:
            del self._leases[owner]
        if stale:
            logger.debug("csrf_leases_swept", removed=len(stale))
        return len(stale)
