from __future__ import annotations

from typing import List

from subterm.isolation.audit import AuditEvent, AuditEventType, AuditLogger


class RecordingAudit(AuditLogger):
    """Audit logger that keeps events in memory instead of writing them."""

    def __init__(self) -> None:
        super().__init__()
        self.events: List[AuditEvent] = []

    def log(self, event: AuditEvent) -> None:
        self.events.append(event)

    @property
    def event_types(self) -> List[AuditEventType]:
        return [e.event_type for e in self.events]
