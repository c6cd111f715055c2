from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from wukongid.logging import get_logger
from wukongid.storage.models import AuditEvent

logger = get_logger(__name__)

SEVERITIES = frozenset({"info", "warning", "critical"})


class AuditStore(Protocol):
    def append_audit_event(self, event: AuditEvent) -> AuditEvent: ...

    def list_audit_events(
        self, subject_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]: ...


class AuditLog:
    """Best-effort append-only audit trail.

    A failed write is logged and dropped; it never fails the operation
    being audited.
    """

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def record(
        self,
        event_type: str,
        description: str,
        *,
        subject_id: Optional[str] = None,
        severity: str = "info",
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        if severity not in SEVERITIES:
            severity = "info"
        event = AuditEvent(
            event_type=event_type,
            description=description,
            severity=severity,
            subject_id=subject_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=metadata,
        )
        try:
            stored = self.store.append_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                event_type=event_type,
                subject_id=subject_id,
                error=str(exc),
            )
            return None
        logger.info(
            "audit_event",
            event_type=event_type,
            subject_id=subject_id,
            severity=severity,
        )
        return stored

    def recent(self, subject_id: Optional[str] = None, limit: int = 100) -> List[AuditEvent]:
        return self.store.list_audit_events(subject_id, limit=limit)
