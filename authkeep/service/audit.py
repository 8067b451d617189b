from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional, Protocol

from authkeep.logging import get_logger
from authkeep.service.errors import AuditWriteFailure
from authkeep.storage.models import AuditEvent, AuditEventType

logger = get_logger(__name__)


class AuditStore(Protocol):
    def append_audit_event(self, event: AuditEvent) -> AuditEvent: ...

    def list_audit_events(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]: ...


class AuditLogger:
    """Append-only security event trail.

    ``record`` is called inline on every authentication path and must never
    turn a successful login or refresh into a failure, so storage errors are
    reported to the application log and swallowed here.
    """

    def __init__(self, store: AuditStore, *, console_echo: bool = False) -> None:
        self.store = store
        self.console_echo = console_echo

    def record(
        self,
        user_id: Optional[str],
        event: AuditEventType | str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        try:
            entry = AuditEvent.new(
                event,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata=metadata,
            )
            stored = self.store.append_audit_event(entry)
        except Exception as exc:  # noqa: BLE001
            failure = AuditWriteFailure(str(getattr(event, "value", event)), exc)
            logger.error(
                "audit_write_failed",
                audit_event=failure.event,
                user_id=user_id,
                error=str(failure.cause),
                error_type=type(failure.cause).__name__,
            )
            return None
        if self.console_echo:
            logger.info(
                "audit_event",
                audit_event=stored.event.value,
                user_id=stored.user_id,
                ip_address=stored.ip_address,
            )
        return stored

    def list_for_user(self, user_id: str, limit: int = 100) -> Iterator[AuditEvent]:
        yield from self.store.list_audit_events(user_id=user_id, limit=limit)

    def list_all(self, limit: int = 100) -> Iterator[AuditEvent]:
        yield from self.store.list_audit_events(limit=limit)
