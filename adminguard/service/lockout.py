from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Protocol, Tuple, Union

from adminguard.logging import get_logger
from adminguard.service.errors import AccountLocked
from adminguard.storage.models import (
    LOCKOUT_KEY_IDENTITY,
    LOCKOUT_KEY_ORIGIN,
    LockoutRecord,
)

logger = get_logger(__name__)

UNKNOWN_ORIGIN = "unknown"


class LockoutStore(Protocol):
    def get_lockout(self, key_kind: str, identity_key: str) -> Optional[LockoutRecord]: ...

    def increment_lockout(
        self,
        key_kind: str,
        identity_key: str,
        *,
        now: datetime,
        threshold: int,
        lock_until: datetime,
    ) -> LockoutRecord: ...

    def delete_lockout(self, key_kind: str, identity_key: str) -> bool: ...


@dataclass(frozen=True)
class Allowed:
    pass


@dataclass(frozen=True)
class Locked:
    key_kind: str
    locked_until: datetime
    retry_after_minutes: int


LockoutDecision = Union[Allowed, Locked]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LockoutGuard:
    """Brute-force lockout keyed independently by identity and by origin.

    A failed attempt counts against both keys. The gate consults the identity
    record first and falls back to the origin record, so probing many
    identities from one address and one identity from many addresses are both
    throttled.
    """

    def __init__(
        self,
        store: LockoutStore,
        *,
        threshold: int = 5,
        duration: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.duration = duration
        self._clock = clock

    @staticmethod
    def _keys(identity: str, origin: Optional[str]) -> Tuple[Tuple[str, str], Tuple[str, str]]:
        return (
            (LOCKOUT_KEY_IDENTITY, identity.strip().lower()),
            (LOCKOUT_KEY_ORIGIN, origin or UNKNOWN_ORIGIN),
        )

    def check_allowed(self, identity: str, origin: Optional[str]) -> LockoutDecision:
        now = self._clock()
        identity_key, origin_key = self._keys(identity, origin)
        record = self.store.get_lockout(*identity_key)
        if record is None:
            record = self.store.get_lockout(*origin_key)
        if record is None or record.locked_until is None:
            return Allowed()
        if record.is_locked(now):
            remaining = (record.locked_until - now).total_seconds()
            return Locked(
                key_kind=record.key_kind,
                locked_until=record.locked_until,
                retry_after_minutes=max(1, math.ceil(remaining / 60)),
            )
        # Lock has lapsed: the next attempt starts from a clean slate
        self.store.delete_lockout(record.key_kind, record.identity_key)
        logger.info(
            "lockout_expired_cleared",
            key_kind=record.key_kind,
            identity_key=record.identity_key,
        )
        return Allowed()

    def ensure_allowed(self, identity: str, origin: Optional[str]) -> None:
        decision = self.check_allowed(identity, origin)
        if isinstance(decision, Locked):
            logger.warning(
                "login_rejected_locked",
                key_kind=decision.key_kind,
                origin=origin,
                locked_until=decision.locked_until.isoformat(),
            )
            raise AccountLocked(decision.locked_until, decision.retry_after_minutes)

    @staticmethod
    def _alias_keys(identity: str, aliases: Iterable[str]) -> List[str]:
        typed = identity.strip().lower()
        keys: List[str] = []
        for alias in aliases:
            lowered = alias.strip().lower()
            if lowered and lowered != typed and lowered not in keys:
                keys.append(lowered)
        return keys

    def record_failure(
        self, identity: str, origin: Optional[str], *, aliases: Iterable[str] = ()
    ) -> Tuple[LockoutRecord, LockoutRecord]:
        """Count a failed attempt against the typed identity and the origin.

        ``aliases`` are the other names of a known principal; they are charged
        too so the email and identity name share one budget. Returns the typed
        identity record and the origin record.
        """
        now = self._clock()
        lock_until = now + self.duration
        keys = list(self._keys(identity, origin))
        keys.extend((LOCKOUT_KEY_IDENTITY, key) for key in self._alias_keys(identity, aliases))
        records = [
            self.store.increment_lockout(
                kind,
                key,
                now=now,
                threshold=self.threshold,
                lock_until=lock_until,
            )
            for kind, key in keys
        ]
        for record in records:
            if record.failure_count == self.threshold:
                logger.warning(
                    "lockout_engaged",
                    key_kind=record.key_kind,
                    identity_key=record.identity_key,
                    failure_count=record.failure_count,
                    locked_until=record.locked_until.isoformat() if record.locked_until else None,
                )
        return records[0], records[1]

    def record_success(
        self, identity: str, origin: Optional[str], *, aliases: Iterable[str] = ()
    ) -> None:
        """Clear the identity and origin records; ``aliases`` are other names for the same principal."""
        for kind, key in self._keys(identity, origin):
            self.store.delete_lockout(kind, key)
        for key in self._alias_keys(identity, aliases):
            self.store.delete_lockout(LOCKOUT_KEY_IDENTITY, key)
