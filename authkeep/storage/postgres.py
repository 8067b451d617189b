from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authkeep.logging import get_logger
from authkeep.storage.errors import ConstraintViolation, StorageUnavailable
from authkeep.storage.models import (
    AuditEvent,
    AuditEventType,
    RefreshTokenRecord,
    User,
    ensure_aware,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id, revoked)",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id UUID PRIMARY KEY,
        user_id UUID,
        event TEXT NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        metadata JSONB,
        timestamp TIMESTAMPTZ NOT NULL DEFAULT now(),
        seq BIGSERIAL
    )
    """,
    # Insert order breaks timestamp ties; tables created before seq existed get it here
    "ALTER TABLE audit_log ADD COLUMN IF NOT EXISTS seq BIGSERIAL",
    "DROP INDEX IF EXISTS audit_log_user_ts_idx",
    "DROP INDEX IF EXISTS audit_log_ts_idx",
    "CREATE INDEX IF NOT EXISTS audit_log_user_event_idx ON audit_log (user_id, event)",
    "CREATE INDEX IF NOT EXISTS audit_log_user_ts_seq_idx ON audit_log (user_id, timestamp DESC, seq DESC)",
    "CREATE INDEX IF NOT EXISTS audit_log_ts_seq_idx ON audit_log (timestamp DESC, seq DESC)",
)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed users, refresh tokens and audit log."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("postgres", exc) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            role=row.get("role", "user"),
            is_active=row.get("is_active", True),
            created_at=ensure_aware(row.get("created_at") or utcnow()),
            meta=row.get("meta"),
        )

    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        role: str = "user",
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized_meta = meta.copy() if meta else {}
        normalized_meta.setdefault("email_verified", False)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, role, is_active, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        first_name,
                        last_name,
                        role,
                        is_active,
                        json.dumps(normalized_meta),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET meta = COALESCE(meta, '{}'::jsonb) || '{"email_verified": true}'::jsonb,
                    is_active = TRUE
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # refresh tokens
    @staticmethod
    def _token_from_row(row: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            token=row["token"],
            user_id=str(row["user_id"]),
            expires_at=ensure_aware(row["expires_at"]),
            created_at=ensure_aware(row.get("created_at") or utcnow()),
            revoked=bool(row.get("revoked", False)),
        )

    def create_refresh_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        record = RefreshTokenRecord.new(token, user_id, expires_at)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, token, user_id, expires_at, created_at, revoked)
                    VALUES (%s, %s, %s, %s, %s, FALSE)
                    """,
                    (
                        record.id,
                        record.token,
                        record.user_id,
                        record.expires_at,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already stored", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": user_id})
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def get_refresh_token_by_id(self, token_id: str) -> Optional[RefreshTokenRecord]:
        if not _is_uuid(token_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def _flip_revoked(self, token: str) -> bool:
        # Row-level write lock makes this a single compare-and-set
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE token = %s AND revoked = FALSE RETURNING id",
                (token,),
            ).fetchone()
        return row is not None

    def claim_refresh_token(self, token: str) -> bool:
        return self._flip_revoked(token)

    def revoke_refresh_token(self, token: str) -> bool:
        return self._flip_revoked(token)

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE user_id = %s AND revoked = FALSE",
                (user_id,),
            )
            return cur.rowcount or 0

    def list_user_refresh_tokens(
        self, user_id: str, *, active_only: bool = True
    ) -> List[RefreshTokenRecord]:
        query = "SELECT * FROM refresh_token WHERE user_id = %s"
        if active_only:
            query += " AND revoked = FALSE AND expires_at > now()"
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._token_from_row(row) for row in rows]

    # audit log
    @staticmethod
    def _audit_from_row(row: dict) -> AuditEvent:
        return AuditEvent(
            id=str(row["id"]),
            event=AuditEventType(row["event"]),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            metadata=row.get("metadata"),
            timestamp=ensure_aware(row["timestamp"]),
        )

    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO audit_log (id, user_id, event, ip_address, user_agent, metadata)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING timestamp
                """,
                (
                    event.id,
                    event.user_id,
                    event.event.value,
                    event.ip_address,
                    event.user_agent,
                    json.dumps(event.metadata) if event.metadata else None,
                ),
            ).fetchone()
        if row and row.get("timestamp"):
            event.timestamp = ensure_aware(row["timestamp"])
        return event

    def list_audit_events(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._connect() as conn:
            if user_id is None:
                rows = conn.execute(
                    "SELECT * FROM audit_log ORDER BY timestamp DESC, seq DESC LIMIT %s",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    (
                        "SELECT * FROM audit_log WHERE user_id = %s"
                        " ORDER BY timestamp DESC, seq DESC LIMIT %s"
                    ),
                    (user_id, limit),
                ).fetchall()
        return [self._audit_from_row(row) for row in rows]
