from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from verigate.logging import get_logger, redact_details
from verigate.storage.models import AuditAction, AuditLogEntry, AuditOrigin

if TYPE_CHECKING:
    from verigate.service.identity import IdentityStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class RequestOrigin:
    """Where a call came from; used only to annotate audit entries."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AuditEvent:
    """A security-relevant fact produced by an operation.

    ``details`` is redacted on construction so secrets never travel any
    further than the call that produced them.
    """

    action: AuditAction
    description: str
    actor_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.details = redact_details(dict(self.details))


class AuditLog:
    """Best-effort, append-only writer for audit events."""

    def __init__(self, store: "IdentityStore") -> None:
        self.store = store

    def record(
        self, event: AuditEvent, origin: Optional[RequestOrigin] = None
    ) -> Optional[AuditLogEntry]:
        """Persist ``event``; a failed write is logged and never propagates."""
        origin = origin or RequestOrigin()
        entry = AuditLogEntry(
            action=event.action.value,
            description=event.description,
            actor_id=event.actor_id,
            origin=AuditOrigin(ip=origin.ip, user_agent=origin.user_agent),
            details=event.details,
        )
        try:
            self.store.append_audit_entry(entry)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=entry.action,
                actor_id=entry.actor_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        return entry

    def record_all(
        self, events: List[AuditEvent], origin: Optional[RequestOrigin] = None
    ) -> List[AuditLogEntry]:
        written = []
        for event in events:
            entry = self.record(event, origin)
            if entry is not None:
                written.append(entry)
        return written
