from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

ROLES = ("super_admin", "admin", "editor", "viewer")

LOCKOUT_KEY_IDENTITY = "identity"
LOCKOUT_KEY_ORIGIN = "origin"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AdminPrincipal:
    id: str
    identity_name: str
    email: str
    password_hash: str
    role: str = "admin"
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls, identity_name: str, email: str, password_hash: str, role: str = "admin"
    ) -> "AdminPrincipal":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            identity_name=identity_name,
            email=email,
            password_hash=password_hash,
            role=role,
            created_at=now,
            updated_at=now,
        )


@dataclass
class Session:
    """One live row per issued token pair.

    ``expires_at`` bounds the access token; ``refresh_expires_at`` bounds the
    refresh token and therefore the lifetime of the row itself.
    """

    id: str
    owner_id: str
    access_token_hash: str
    refresh_token_hash: Optional[str]
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    refresh_expires_at: Optional[datetime] = None
    origin_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        owner_id: str,
        access_token_hash: str,
        refresh_token_hash: Optional[str],
        *,
        expires_at: datetime,
        refresh_expires_at: Optional[datetime] = None,
        session_id: Optional[str] = None,
        origin_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or _utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            owner_id=owner_id,
            access_token_hash=access_token_hash,
            refresh_token_hash=refresh_token_hash,
            created_at=now,
            last_activity_at=now,
            expires_at=expires_at,
            refresh_expires_at=refresh_expires_at,
            origin_address=origin_address,
            user_agent=user_agent,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def retention_deadline(self) -> datetime:
        """Instant after which the row is useless to both tokens."""
        if self.refresh_expires_at and self.refresh_expires_at > self.expires_at:
            return self.refresh_expires_at
        return self.expires_at


@dataclass
class LockoutRecord:
    key_kind: str
    identity_key: str
    failure_count: int = 0
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class CsrfLease:
    owner_id: str
    token: str
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now
