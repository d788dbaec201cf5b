from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from adminguard.logging import get_logger
from adminguard.storage.errors import ConstraintViolation
from adminguard.storage.models import AdminPrincipal, LockoutRecord, Session


class MemoryStore:
    """In-process backing store with a JSON snapshot under ``fs_root/state``.

    Every public method takes ``_data_lock`` so read-modify-write sequences
    (lockout increments, refresh rotation) are atomic for concurrent requests
    handled by the same process. Returned records are copies.
    """

    def __init__(self, fs_root: str = "/tmp/adminguard") -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, AdminPrincipal] = {}
        self.sessions: Dict[str, Session] = {}
        self.lockouts: Dict[Tuple[str, str], LockoutRecord] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- principals -------------------------------------------------------

    def count_principals(self) -> int:
        with self._data_lock:
            return len(self.principals)

    def _check_unique(
        self, identity_name: str, email: str, *, exclude_id: Optional[str] = None
    ) -> None:
        for existing in self.principals.values():
            if existing.id == exclude_id:
                continue
            if existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing.identity_name.lower() == identity_name.lower():
                raise ConstraintViolation(
                    "identity already exists", {"field": "identity_name"}
                )

    def create_principal(
        self,
        identity_name: str,
        email: str,
        password_hash: str,
        role: str = "admin",
        *,
        only_if_empty: bool = False,
    ) -> Optional[AdminPrincipal]:
        """Insert a principal; with ``only_if_empty`` return None once any principal exists."""
        with self._data_lock:
            if only_if_empty and self.principals:
                return None
            self._check_unique(identity_name, email)
            principal = AdminPrincipal.new(identity_name, email, password_hash, role)
            self.principals[principal.id] = principal
            self._persist_state()
            return replace(principal)

    def get_principal(self, principal_id: str) -> Optional[AdminPrincipal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return replace(principal) if principal else None

    def get_principal_by_email(self, email: str) -> Optional[AdminPrincipal]:
        with self._data_lock:
            principal = next(
                (p for p in self.principals.values() if p.email == email), None
            )
            return replace(principal) if principal else None

    def get_principal_by_identity(self, identity_name: str) -> Optional[AdminPrincipal]:
        lowered = identity_name.lower()
        with self._data_lock:
            principal = next(
                (
                    p
                    for p in self.principals.values()
                    if p.identity_name.lower() == lowered
                ),
                None,
            )
            return replace(principal) if principal else None

    def list_principals(self, *, offset: int = 0, limit: int = 20) -> List[AdminPrincipal]:
        with self._data_lock:
            ordered = sorted(
                self.principals.values(), key=lambda p: p.created_at, reverse=True
            )
            return [replace(p) for p in ordered[offset : offset + limit]]

    def update_principal(
        self,
        principal_id: str,
        *,
        identity_name: Optional[str] = None,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        role: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[AdminPrincipal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            self._check_unique(
                identity_name or principal.identity_name,
                email or principal.email,
                exclude_id=principal_id,
            )
            updated = replace(
                principal,
                identity_name=identity_name or principal.identity_name,
                email=email or principal.email,
                password_hash=password_hash or principal.password_hash,
                role=role or principal.role,
                updated_at=now or principal.updated_at,
            )
            self.principals[principal_id] = updated
            self._persist_state()
            return replace(updated)

    def delete_principal(self, principal_id: str) -> bool:
        with self._data_lock:
            removed = self.principals.pop(principal_id, None)
            if not removed:
                return False
            for sid in [s.id for s in self.sessions.values() if s.owner_id == principal_id]:
                self.sessions.pop(sid, None)
            self._persist_state()
            return True

    # -- sessions ---------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.owner_id not in self.principals:
                raise ConstraintViolation(
                    "principal does not exist", {"owner_id": session.owner_id}
                )
            if any(
                s.access_token_hash == session.access_token_hash
                for s in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "access token already registered", {"field": "access_token_hash"}
                )
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_access_hash(self, access_token_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.access_token_hash == access_token_hash
                ),
                None,
            )
            return replace(sess) if sess else None

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token_hash == refresh_token_hash
                ),
                None,
            )
            return replace(sess) if sess else None

    def rotate_session_tokens(
        self,
        old_refresh_hash: str,
        *,
        new_access_hash: str,
        new_refresh_hash: str,
        expires_at: datetime,
        refresh_expires_at: Optional[datetime],
        now: datetime,
    ) -> Optional[Session]:
        """Swap both token hashes iff the row still holds ``old_refresh_hash``."""
        with self._data_lock:
            sess = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token_hash == old_refresh_hash
                ),
                None,
            )
            if sess is None:
                return None
            rotated = replace(
                sess,
                access_token_hash=new_access_hash,
                refresh_token_hash=new_refresh_hash,
                expires_at=expires_at,
                refresh_expires_at=refresh_expires_at,
                last_activity_at=now,
            )
            self.sessions[sess.id] = rotated
            self._persist_state()
            return replace(rotated)

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            self.sessions[session_id] = replace(sess, last_activity_at=now)
            self._persist_state()

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_sessions_for_owner(
        self, owner_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.owner_id == owner_id and sid != except_session_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_sessions(self, owner_id: Optional[str] = None) -> List[Session]:
        with self._data_lock:
            results = [
                replace(s)
                for s in self.sessions.values()
                if owner_id is None or s.owner_id == owner_id
            ]
            return sorted(results, key=lambda s: s.last_activity_at, reverse=True)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.retention_deadline() < now
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- lockout records --------------------------------------------------

    def get_lockout(self, key_kind: str, identity_key: str) -> Optional[LockoutRecord]:
        with self._data_lock:
            record = self.lockouts.get((key_kind, identity_key))
            return replace(record) if record else None

    def increment_lockout(
        self,
        key_kind: str,
        identity_key: str,
        *,
        now: datetime,
        threshold: int,
        lock_until: datetime,
    ) -> LockoutRecord:
        """Atomically count one failure; engages the lock at ``threshold``.

        A record whose previous lock has already lapsed starts over at one.
        """
        with self._data_lock:
            key = (key_kind, identity_key)
            record = self.lockouts.get(key)
            if record is None or (
                record.locked_until is not None and record.locked_until <= now
            ):
                record = LockoutRecord(
                    key_kind=key_kind,
                    identity_key=identity_key,
                    failure_count=0,
                    created_at=now,
                    updated_at=now,
                )
            count = record.failure_count + 1
            record = replace(
                record,
                failure_count=count,
                locked_until=lock_until if count >= threshold else None,
                updated_at=now,
            )
            self.lockouts[key] = record
            self._persist_state()
            return replace(record)

    def delete_lockout(self, key_kind: str, identity_key: str) -> bool:
        with self._data_lock:
            removed = self.lockouts.pop((key_kind, identity_key), None)
            if removed:
                self._persist_state()
            return removed is not None

    # -- persistence ------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "principals": [self._serialize_principal(p) for p in self.principals.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "lockouts": [self._serialize_lockout(r) for r in self.lockouts.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: self._deserialize_principal(p) for p in data.get("principals", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.lockouts = {}
        for raw in data.get("lockouts", []):
            record = self._deserialize_lockout(raw)
            self.lockouts[(record.key_kind, record.identity_key)] = record
        self.logger.info(
            "memory_store_loaded",
            principals=len(self.principals),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_principal(self, principal: AdminPrincipal) -> dict:
        return {
            "id": principal.id,
            "identity_name": principal.identity_name,
            "email": principal.email,
            "password_hash": principal.password_hash,
            "role": principal.role,
            "created_at": self._serialize_datetime(principal.created_at),
            "updated_at": self._serialize_datetime(principal.updated_at),
        }

    def _deserialize_principal(self, data: dict) -> AdminPrincipal:
        return AdminPrincipal(
            id=data["id"],
            identity_name=data["identity_name"],
            email=data["email"],
            password_hash=data["password_hash"],
            role=data.get("role", "admin"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "owner_id": session.owner_id,
            "access_token_hash": session.access_token_hash,
            "refresh_token_hash": session.refresh_token_hash,
            "origin_address": session.origin_address,
            "user_agent": session.user_agent,
            "created_at": self._serialize_datetime(session.created_at),
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "refresh_expires_at": self._serialize_datetime(session.refresh_expires_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            owner_id=data["owner_id"],
            access_token_hash=data["access_token_hash"],
            refresh_token_hash=data.get("refresh_token_hash"),
            origin_address=data.get("origin_address"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_activity_at=self._deserialize_datetime(data["last_activity_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            refresh_expires_at=self._deserialize_datetime(data.get("refresh_expires_at")),
        )

    def _serialize_lockout(self, record: LockoutRecord) -> dict:
        return {
            "key_kind": record.key_kind,
            "identity_key": record.identity_key,
            "failure_count": record.failure_count,
            "locked_until": self._serialize_datetime(record.locked_until),
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
        }

    def _deserialize_lockout(self, data: dict) -> LockoutRecord:
        return LockoutRecord(
            key_kind=data["key_kind"],
            identity_key=data["identity_key"],
            failure_count=int(data.get("failure_count", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )
