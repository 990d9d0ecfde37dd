from __future__ import annotations

from typing import Any, List, Optional, Protocol

from showauth.logging import get_logger
from showauth.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditStore(Protocol):
    def record_audit_event(self, event: AuditEvent) -> None: ...

    def list_audit_events(self, account_id: Optional[int] = None) -> List[AuditEvent]: ...


class AuditLog:
    """Best-effort sink for security-relevant account actions.

    Writes never raise into the caller: a failed write is logged at error
    level and the authentication decision proceeds.
    """

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def record(self, action: str, account_id: Optional[int] = None, **metadata: Any) -> None:
        event = AuditEvent(action=action, account_id=account_id, metadata=metadata or None)
        try:
            self.store.record_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=action,
                account_id=account_id,
                error=str(exc),
            )
