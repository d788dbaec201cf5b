from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from adminguard.logging import get_logger
from adminguard.storage.errors import ConstraintViolation
from adminguard.storage.models import AdminPrincipal, LockoutRecord, Session

# pg_advisory_xact_lock key serializing bootstrap registration
_BOOTSTRAP_LOCK_KEY = 0x61646D6E

_REQUIRED_TABLES = ("admin_principal", "admin_session", "admin_login_attempt")

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS admin_principal (
        id TEXT PRIMARY KEY,
        identity_name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'admin',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS admin_principal_identity_name_idx
        ON admin_principal (lower(identity_name))
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_session (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL REFERENCES admin_principal(id) ON DELETE CASCADE,
        access_token_hash TEXT NOT NULL UNIQUE,
        refresh_token_hash TEXT UNIQUE,
        origin_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_activity_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        refresh_expires_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS admin_session_owner_idx ON admin_session (owner_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_login_attempt (
        key_kind TEXT NOT NULL,
        identity_key TEXT NOT NULL,
        failure_count INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (key_kind, identity_key)
    )
    """,
)


def _constraint_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    if "email" in constraint:
        return "email"
    if "identity" in constraint:
        return "identity_name"
    if "access_token" in constraint or "refresh_token" in constraint:
        return "token_hash"
    return "unknown"


class PostgresStore:
    """Postgres-backed credential store, session registry and lockout table.

    Connections come from a bounded ``psycopg_pool`` pool; acquiring a
    connection and every statement are capped by ``timeout_seconds`` so a
    slow database surfaces as an error instead of a hung request.
    """

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            },
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the admin tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing)))
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ------------------------------------------------------

    @staticmethod
    def _principal_from_row(row: Dict[str, Any]) -> AdminPrincipal:
        return AdminPrincipal(
            id=row["id"],
            identity_name=row["identity_name"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=row["role"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            owner_id=row["owner_id"],
            access_token_hash=row["access_token_hash"],
            refresh_token_hash=row.get("refresh_token_hash"),
            origin_address=row.get("origin_address"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
            last_activity_at=row["last_activity_at"],
            expires_at=row["expires_at"],
            refresh_expires_at=row.get("refresh_expires_at"),
        )

    @staticmethod
    def _lockout_from_row(row: Dict[str, Any]) -> LockoutRecord:
        return LockoutRecord(
            key_kind=row["key_kind"],
            identity_key=row["identity_key"],
            failure_count=int(row["failure_count"]),
            locked_until=row.get("locked_until"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # -- principals -------------------------------------------------------

    def count_principals(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM admin_principal").fetchone()
        return int(row["total"]) if row else 0

    def create_principal(
        self,
        identity_name: str,
        email: str,
        password_hash: str,
        role: str = "admin",
        *,
        only_if_empty: bool = False,
    ) -> Optional[AdminPrincipal]:
        """Insert a principal; with ``only_if_empty`` return None once any principal exists.

        The empty check and the insert share one transaction serialized on an
        advisory lock, so concurrent bootstrap registrations yield one row.
        """
        params = (str(uuid.uuid4()), identity_name, email, password_hash, role)
        try:
            with self._connect() as conn:
                if only_if_empty:
                    conn.execute(
                        "SELECT pg_advisory_xact_lock(%s)", (_BOOTSTRAP_LOCK_KEY,)
                    )
                    row = conn.execute(
                        """
                        INSERT INTO admin_principal (id, identity_name, email, password_hash, role)
                        SELECT %s, %s, %s, %s, %s
                        WHERE NOT EXISTS (SELECT 1 FROM admin_principal)
                        RETURNING *
                        """,
                        params,
                    ).fetchone()
                else:
                    row = conn.execute(
                        """
                        INSERT INTO admin_principal (id, identity_name, email, password_hash, role)
                        VALUES (%s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        params,
                    ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._principal_from_row(row) if row else None

    def get_principal(self, principal_id: str) -> Optional[AdminPrincipal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_principal WHERE id = %s", (principal_id,)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def get_principal_by_email(self, email: str) -> Optional[AdminPrincipal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_principal WHERE email = %s", (email,)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def get_principal_by_identity(self, identity_name: str) -> Optional[AdminPrincipal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_principal WHERE lower(identity_name) = lower(%s)",
                (identity_name,),
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def list_principals(self, *, offset: int = 0, limit: int = 20) -> List[AdminPrincipal]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM admin_principal ORDER BY created_at DESC OFFSET %s LIMIT %s",
                (offset, limit),
            ).fetchall()
        return [self._principal_from_row(row) for row in rows]

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE admin_principal
                    SET identity_name = COALESCE(%s, identity_name),
                        email = COALESCE(%s, email),
                        password_hash = COALESCE(%s, password_hash),
                        role = COALESCE(%s, role),
                        updated_at = COALESCE(%s, now())
                    WHERE id = %s
                    RETURNING *
                    """,
                    (identity_name, email, password_hash, role, now, principal_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._principal_from_row(row) if row else None

    def delete_principal(self, principal_id: str) -> bool:
        # admin_session rows go with it through ON DELETE CASCADE
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM admin_principal WHERE id = %s", (principal_id,))
            return cur.rowcount > 0

    # -- sessions ---------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO admin_session (
                        id, owner_id, access_token_hash, refresh_token_hash,
                        origin_address, user_agent, created_at, last_activity_at,
                        expires_at, refresh_expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.owner_id,
                        session.access_token_hash,
                        session.refresh_token_hash,
                        session.origin_address,
                        session.user_agent,
                        session.created_at,
                        session.last_activity_at,
                        session.expires_at,
                        session.refresh_expires_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "principal does not exist", {"owner_id": session.owner_id}
            ) from exc
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "access token already registered", {"field": "access_token_hash"}
            ) from exc
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_access_hash(self, access_token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_session WHERE access_token_hash = %s",
                (access_token_hash,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_session WHERE refresh_token_hash = %s",
                (refresh_token_hash,),
            ).fetchone()
        return self._session_from_row(row) if row else None

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
        """Compare-and-swap on ``refresh_token_hash``; the loser gets ``None``."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE admin_session
                SET access_token_hash = %s,
                    refresh_token_hash = %s,
                    expires_at = %s,
                    refresh_expires_at = %s,
                    last_activity_at = %s
                WHERE refresh_token_hash = %s
                RETURNING *
                """,
                (
                    new_access_hash,
                    new_refresh_hash,
                    expires_at,
                    refresh_expires_at,
                    now,
                    old_refresh_hash,
                ),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE admin_session SET last_activity_at = %s WHERE id = %s",
                (now, session_id),
            )

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM admin_session WHERE id = %s", (session_id,))
            return cur.rowcount > 0

    def delete_sessions_for_owner(
        self, owner_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                cur = conn.execute(
                    "DELETE FROM admin_session WHERE owner_id = %s AND id <> %s",
                    (owner_id, except_session_id),
                )
            else:
                cur = conn.execute(
                    "DELETE FROM admin_session WHERE owner_id = %s", (owner_id,)
                )
            return cur.rowcount

    def list_sessions(self, owner_id: Optional[str] = None) -> List[Session]:
        with self._connect() as conn:
            if owner_id is None:
                rows = conn.execute(
                    "SELECT * FROM admin_session ORDER BY last_activity_at DESC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM admin_session WHERE owner_id = %s ORDER BY last_activity_at DESC",
                    (owner_id,),
                ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM admin_session
                WHERE GREATEST(expires_at, COALESCE(refresh_expires_at, expires_at)) < %s
                """,
                (now,),
            )
            return cur.rowcount

    # -- lockout records --------------------------------------------------

    def get_lockout(self, key_kind: str, identity_key: str) -> Optional[LockoutRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_login_attempt WHERE key_kind = %s AND identity_key = %s",
                (key_kind, identity_key),
            ).fetchone()
        return self._lockout_from_row(row) if row else None

    def increment_lockout(
        self,
        key_kind: str,
        identity_key: str,
        *,
        now: datetime,
        threshold: int,
        lock_until: datetime,
    ) -> LockoutRecord:
        """Single-statement upsert so concurrent failures never lose a count."""
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO admin_login_attempt AS a (
                    key_kind, identity_key, failure_count, locked_until, created_at, updated_at
                )
                VALUES (%s, %s, 1, CASE WHEN 1 >= %s THEN %s::timestamptz END, %s, %s)
                ON CONFLICT (key_kind, identity_key) DO UPDATE SET
                    failure_count = CASE
                        WHEN a.locked_until IS NOT NULL AND a.locked_until <= EXCLUDED.updated_at
                            THEN 1
                        ELSE a.failure_count + 1
                    END,
                    locked_until = CASE
                        WHEN (
                            CASE
                                WHEN a.locked_until IS NOT NULL AND a.locked_until <= EXCLUDED.updated_at
                                    THEN 1
                                ELSE a.failure_count + 1
                            END
                        ) >= %s THEN %s::timestamptz
                        ELSE NULL
                    END,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (
                    key_kind,
                    identity_key,
                    threshold,
                    lock_until,
                    now,
                    now,
                    threshold,
                    lock_until,
                ),
            ).fetchone()
        return self._lockout_from_row(row)

    def delete_lockout(self, key_kind: str, identity_key: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM admin_login_attempt WHERE key_kind = %s AND identity_key = %s",
                (key_kind, identity_key),
            )
            return cur.rowcount > 0
