from __future__ import annotations

import json
import os
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from authkeep.logging import get_logger
from authkeep.storage.errors import ConstraintViolation
from authkeep.storage.models import (
    AuditEvent,
    AuditEventType,
    RefreshTokenRecord,
    User,
    ensure_aware,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and local development.

    Every operation runs under one re-entrant lock, which is what makes the
    conditional refresh-token flips atomic. When ``fs_root`` is given the
    state is mirrored to ``<fs_root>/state/memory_store.json`` after each write.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # token string -> record id
        self._token_index: Dict[str, str] = {}
        self.audit_events: List[AuditEvent] = []
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # users
    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        role: str = "user",
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            normalized_meta = meta.copy() if meta else {}
            normalized_meta.setdefault("email_verified", False)
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=role,
                is_active=is_active,
                meta=normalized_meta,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            meta = user.meta or {}
            meta["email_verified"] = True
            user.meta = meta
            user.is_active = True
            self._persist_state()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh tokens
    def create_refresh_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if token in self._token_index:
                raise ConstraintViolation("refresh token already stored", {"field": "token"})
            record = RefreshTokenRecord.new(token, user_id, expires_at)
            self.refresh_tokens[record.id] = record
            self._token_index[token] = record.id
            self._persist_state()
            return record

    def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record_id = self._token_index.get(token)
            return self.refresh_tokens.get(record_id) if record_id else None

    def get_refresh_token_by_id(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            return self.refresh_tokens.get(token_id)

    def _flip_revoked(self, token: str) -> bool:
        with self._data_lock:
            record = self.get_refresh_token(token)
            if record is None or record.revoked:
                return False
            record.revoked = True
            self._persist_state()
            return True

    def claim_refresh_token(self, token: str) -> bool:
        """Compare-and-set ``revoked`` false -> true; False when already flipped."""
        return self._flip_revoked(token)

    def revoke_refresh_token(self, token: str) -> bool:
        return self._flip_revoked(token)

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            flipped = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.revoked:
                    record.revoked = True
                    flipped += 1
            if flipped:
                self._persist_state()
            return flipped

    def list_user_refresh_tokens(
        self, user_id: str, *, active_only: bool = True
    ) -> List[RefreshTokenRecord]:
        now = utcnow()
        with self._data_lock:
            records = [
                r
                for r in self.refresh_tokens.values()
                if r.user_id == user_id and (not active_only or r.is_active(now))
            ]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    # audit log (append-only)
    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._data_lock:
            event.timestamp = utcnow()
            self.audit_events.append(event)
            self._persist_state()
            return event

    def list_audit_events(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            results: List[AuditEvent] = []
            # Newest first; append order breaks timestamp ties
            for event in reversed(self.audit_events):
                if user_id is not None and event.user_id != user_id:
                    continue
                results.append(event)
                if len(results) >= limit:
                    break
            return results

    # state persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        with self._data_lock:
            state = {
                "users": [self._serialize_user(u) for u in self.users.values()],
                "credentials": {
                    uid: list(record) for uid, record in self.credentials.items()
                },
                "refresh_tokens": [
                    self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
                ],
                "audit_events": [
                    self._serialize_audit_event(e) for e in self.audit_events
                ],
            }
            path = self._state_path()
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(state))
            os.replace(tmp_path, path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            state = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            self.logger.warning("memory_state_load_failed", error=str(exc), path=str(path))
            return False
        with self._data_lock:
            for raw in state.get("users", []):
                user = self._deserialize_user(raw)
                self.users[user.id] = user
            for uid, record in state.get("credentials", {}).items():
                self.credentials[uid] = (record[0], record[1])
            for raw in state.get("refresh_tokens", []):
                token_record = self._deserialize_refresh_token(raw)
                self.refresh_tokens[token_record.id] = token_record
                self._token_index[token_record.token] = token_record.id
            for raw in state.get("audit_events", []):
                self.audit_events.append(self._deserialize_audit_event(raw))
        return True

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return ensure_aware(datetime.fromisoformat(raw))

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "role": user.role,
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            role=data.get("role", "user"),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
            meta=data.get("meta"),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "token": record.token,
            "user_id": record.user_id,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
            "revoked": record.revoked,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=data["id"],
            token=data["token"],
            user_id=data["user_id"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            revoked=bool(data.get("revoked", False)),
        )

    def _serialize_audit_event(self, event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "user_id": event.user_id,
            "event": event.event.value,
            "ip_address": event.ip_address,
            "user_agent": event.user_agent,
            "metadata": event.metadata,
            "timestamp": self._serialize_datetime(event.timestamp),
        }

    def _deserialize_audit_event(self, data: dict) -> AuditEvent:
        raw: Dict[str, Any] = data
        return AuditEvent(
            id=raw["id"],
            event=AuditEventType(raw["event"]),
            user_id=raw.get("user_id"),
            ip_address=raw.get("ip_address"),
            user_agent=raw.get("user_agent"),
            metadata=raw.get("metadata"),
            timestamp=self._deserialize_datetime(raw["timestamp"]),
        )
