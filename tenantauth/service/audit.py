from __future__ import annotations

from typing import Any, List, Optional

from tenantauth.logging import get_logger
from tenantauth.service.clock import Clock, SystemClock
from tenantauth.storage.models import AuditAction, AuditEvent
from tenantauth.storage.repository import Repository

logger = get_logger(__name__)


class AuditRecorder:
    """Append-only audit trail.

    Recording is fire-and-forget: a failing sink is logged and never turns a
    successful authentication into an error.
    """

    def __init__(self, store: Repository, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()

    def record(
        self, action: AuditAction, user_id: Optional[str] = None, **metadata: Any
    ) -> Optional[AuditEvent]:
        try:
            return self.store.append_audit_event(
                action, user_id, metadata, created_at=self.clock.now()
            )
        except Exception as exc:
            logger.error(
                "audit_record_failed",
                action=action.value,
                user_id=user_id,
                error=str(exc),
            )
            return None

    def list_events(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        return self.store.list_audit_events(user_id=user_id, action=action, limit=limit)
