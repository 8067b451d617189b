from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive timestamps (older rows, JSON state) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AuditEventType(str, Enum):
    LOGIN = "login"
    FAILED_LOGIN = "failed_login"
    LOGOUT = "logout"
    REFRESH_TOKEN = "refresh_token"
    FAILED_REFRESH = "failed_refresh"
    REGISTER = "register"


@dataclass
class User:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    role: str = "user"
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email


@dataclass
class RefreshTokenRecord:
    id: str
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked: bool = False

    @classmethod
    def new(cls, token: str, user_id: str, expires_at: datetime) -> "RefreshTokenRecord":
        return cls(
            id=str(uuid.uuid4()),
            token=token,
            user_id=user_id,
            expires_at=ensure_aware(expires_at),
            created_at=utcnow(),
            revoked=False,
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        current = now or utcnow()
        return not self.revoked and ensure_aware(self.expires_at) > current


@dataclass
class AuditEvent:
    id: str
    event: AuditEventType
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        event: AuditEventType | str,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "AuditEvent":
        return cls(
            id=str(uuid.uuid4()),
            event=AuditEventType(event),
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=dict(metadata) if metadata else None,
            timestamp=utcnow(),
        )
