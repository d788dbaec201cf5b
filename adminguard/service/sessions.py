from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

from adminguard.logging import get_logger
from adminguard.service.tokens import TokenPair, hash_token
from adminguard.storage.models import Session

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_access_hash(self, access_token_hash: str) -> Optional[Session]: ...

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]: ...

    def rotate_session_tokens(
        self,
        old_refresh_hash: str,
        *,
        new_access_hash: str,
        new_refresh_hash: str,
        expires_at: datetime,
        refresh_expires_at: Optional[datetime],
        now: datetime,
    ) -> Optional[Session]: ...

    def touch_session(self, session_id: str, now: datetime) -> None: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_sessions_for_owner(
        self, owner_id: str, *, except_session_id: Optional[str] = None
    ) -> int: ...

    def list_sessions(self, owner_id: Optional[str] = None) -> List[Session]: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionRegistry:
    """Revocation source of truth for stateless tokens.

    Only SHA-256 digests of issued tokens are stored. A token authorizes a
    request only while a live row carries its digest, so revoking is a row
    deletion and rotating is an in-place swap of both digests.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        clock: Callable[[], datetime] = _utcnow,
        cleanup_interval: timedelta = timedelta(minutes=5),
    ) -> None:
        self.store = store
        self._clock = clock
        self._cleanup_interval = cleanup_interval
        self._cleanup_lock = threading.Lock()
        self._last_cleanup = clock()

    @staticmethod
    def new_session_id() -> str:
        return str(uuid.uuid4())

    def register(
        self,
        owner_id: str,
        pair: TokenPair,
        *,
        session_id: Optional[str] = None,
        origin: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        session = Session.new(
            owner_id,
            hash_token(pair.access_token),
            hash_token(pair.refresh_token),
            expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
            session_id=session_id,
            origin_address=origin,
            user_agent=user_agent,
            now=self._clock(),
        )
        created = self.store.create_session(session)
        self.maybe_cleanup()
        return created

    def get(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def find_by_access_token(self, access_token: str) -> Optional[Session]:
        return self.store.get_session_by_access_hash(hash_token(access_token))

    def find_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        return self.store.get_session_by_refresh_hash(hash_token(refresh_token))

    def is_live(self, session: Session) -> bool:
        return not session.is_expired(self._clock())

    def rotate(self, old_refresh_token: str, pair: TokenPair) -> Optional[Session]:
        """Swap both digests on the row holding ``old_refresh_token``.

        Returns ``None`` when no row holds it any more, which is how a
        concurrent or replayed rotation loses.
        """
        return self.store.rotate_session_tokens(
            hash_token(old_refresh_token),
            new_access_hash=hash_token(pair.access_token),
            new_refresh_hash=hash_token(pair.refresh_token),
            expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
            now=self._clock(),
        )

    def touch(self, session_id: str) -> None:
        self.store.touch_session(session_id, self._clock())

    def revoke(self, session_id: str) -> bool:
        removed = self.store.delete_session(session_id)
        if removed:
            logger.info("session_revoked", session_id=session_id)
        return removed

    def revoke_all(self, owner_id: str, *, except_session_id: Optional[str] = None) -> int:
        revoked = self.store.delete_sessions_for_owner(
            owner_id, except_session_id=except_session_id
        )
        logger.info(
            "sessions_revoked_for_owner",
            owner_id=owner_id,
            kept_session_id=except_session_id,
            revoked=revoked,
        )
        return revoked

    def list_live(self, owner_id: Optional[str] = None) -> List[Session]:
        now = self._clock()
        return [s for s in self.store.list_sessions(owner_id) if not s.is_expired(now)]

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_sessions(self._clock())
        if removed:
            logger.info("expired_sessions_cleaned", removed=removed)
        self._last_cleanup = self._clock()
        return removed

    def maybe_cleanup(self) -> int:
        """Run ``cleanup_expired`` if the interval has elapsed since the last run."""
        if not self._cleanup_lock.acquire(blocking=False):
            return 0
        try:
            if self._clock() - self._last_cleanup < self._cleanup_interval:
                return 0
            return self.cleanup_expired()
        finally:
            self._cleanup_lock.release()
