"""
Lifecycle audit trail.

One JSON object per line, appended to a file or written to stdout.
Events carry identifiers, timings and outcome categories only; terminal
traffic and request bodies never reach the audit log.

Usage:
    from subterm.isolation.audit import get_audit_logger

    audit = get_audit_logger()
    audit.log_sandbox_evicted(session_id, sandbox_name, idle_ms=612_000)

At startup, configure_audit_logger(output_path=...) replaces the
process-wide logger (None keeps stdout).
"""

from __future__ import annotations

import json
import logging
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, Optional, TextIO

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    REQUEST_SUBMITTED = "request_submitted"
    REQUEST_COMPLETED = "request_completed"
    REQUEST_FAILED = "request_failed"

    ADMISSION_ACCEPTED = "admission_accepted"
    ADMISSION_REJECTED = "admission_rejected"

    SANDBOX_PROVISIONED = "sandbox_provisioned"
    SANDBOX_QUOTA_FALLBACK = "sandbox_quota_fallback"
    SANDBOX_PROVISION_FAILED = "sandbox_provision_failed"
    SANDBOX_EXITED = "sandbox_exited"
    SANDBOX_EVICTED = "sandbox_evicted"
    SANDBOX_DESTROYED = "sandbox_destroyed"
    SHUTDOWN_DRAINED = "shutdown_drained"


def _iso(ts: float) -> str:
    return (
        datetime.fromtimestamp(ts, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


@dataclass
class AuditEvent:
    event_type: AuditEventType
    session_id: Optional[str] = None
    sandbox_name: Optional[str] = None
    request_id: Optional[str] = None
    duration_ms: Optional[float] = None
    exit_code: Optional[int] = None
    # Outcome category such as "capacity_exceeded" or "api_delete"
    reason: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    created: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ts": _iso(self.created), "event": self.event_type.value}
        for key in ("session_id", "sandbox_name", "request_id", "duration_ms", "exit_code", "reason"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        data.update(self.extra)
        return data


class AuditLogger:
    """
    Buffered JSON-lines writer.

    Lines are held until flush_every of them accumulate or
    max_delay_seconds pass since the last write. A failed write is
    logged and its lines are counted as dropped; auditing never fails
    the operation being audited.
    """

    def __init__(
        self,
        output_path: Optional[str] = None,
        flush_every: int = 100,
        max_delay_seconds: float = 1.0,
    ) -> None:
        self._path = Path(output_path) if output_path else None
        self._flush_every = max(flush_every, 1)
        self._max_delay = max_delay_seconds

        self._pending: Deque[str] = deque()
        self._lock = threading.Lock()
        self._last_write = time.monotonic()
        self._stream: Optional[TextIO] = None

        self._written = 0
        self._dropped = 0

    def _open(self) -> TextIO:
        if self._stream is None:
            if self._path is None:
                self._stream = sys.stdout
            else:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._stream = self._path.open("a", encoding="utf-8")
        return self._stream

    def log(self, event: AuditEvent) -> None:
        line = json.dumps(event.to_dict(), separators=(",", ":"), default=str)
        with self._lock:
            self._pending.append(line)
            due = (
                len(self._pending) >= self._flush_every
                or time.monotonic() - self._last_write >= self._max_delay
            )
        if due:
            self.flush()

    def flush(self) -> None:
        with self._lock:
            if not self._pending:
                return
            lines = list(self._pending)
            self._pending.clear()
            self._last_write = time.monotonic()

        try:
            stream = self._open()
            stream.write("".join(f"{line}\n" for line in lines))
            stream.flush()
        except OSError as e:
            logger.error("Audit write failed, %d events lost: %s", len(lines), e)
            with self._lock:
                self._dropped += len(lines)
            return

        with self._lock:
            self._written += len(lines)

    def close(self) -> None:
        self.flush()
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is not None and self._path is not None:
            try:
                stream.close()
            except OSError as e:
                logger.error("Could not close audit log %s: %s", self._path, e)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "written": self._written,
                "dropped": self._dropped,
                "pending": len(self._pending),
            }

    def _emit(self, event_type: AuditEventType, **fields: Any) -> None:
        self.log(AuditEvent(event_type, **fields))

    # Request lifecycle (RequestTrackingMiddleware)

    def log_request_submitted(self, request_id: str) -> None:
        self._emit(AuditEventType.REQUEST_SUBMITTED, request_id=request_id)

    def log_request_completed(self, request_id: str, duration_ms: float) -> None:
        self._emit(AuditEventType.REQUEST_COMPLETED, request_id=request_id, duration_ms=duration_ms)

    def log_request_failed(
        self, request_id: str, reason: str, duration_ms: Optional[float] = None
    ) -> None:
        self._emit(
            AuditEventType.REQUEST_FAILED,
            request_id=request_id,
            reason=reason,
            duration_ms=duration_ms,
        )

    # Sandbox lifecycle

    def log_admission(self, accepted: bool, max_sandboxes: int) -> None:
        if accepted:
            self._emit(AuditEventType.ADMISSION_ACCEPTED, extra={"max_sandboxes": max_sandboxes})
        else:
            self._emit(
                AuditEventType.ADMISSION_REJECTED,
                reason="capacity_exceeded",
                extra={"max_sandboxes": max_sandboxes},
            )

    def log_sandbox_provisioned(
        self,
        session_id: str,
        sandbox_name: str,
        disk_quota: bool,
        duration_ms: Optional[float] = None,
    ) -> None:
        self._emit(
            AuditEventType.SANDBOX_PROVISIONED,
            session_id=session_id,
            sandbox_name=sandbox_name,
            duration_ms=duration_ms,
            extra={"disk_quota": disk_quota},
        )

    def log_quota_fallback(self, session_id: str, sandbox_name: str) -> None:
        self._emit(
            AuditEventType.SANDBOX_QUOTA_FALLBACK,
            session_id=session_id,
            sandbox_name=sandbox_name,
            reason="feature_unsupported",
        )

    def log_provision_failed(self, session_id: str, sandbox_name: str, reason: str) -> None:
        self._emit(
            AuditEventType.SANDBOX_PROVISION_FAILED,
            session_id=session_id,
            sandbox_name=sandbox_name,
            reason=reason,
        )

    def log_sandbox_exited(
        self, session_id: str, sandbox_name: str, exit_code: Optional[int]
    ) -> None:
        self._emit(
            AuditEventType.SANDBOX_EXITED,
            session_id=session_id,
            sandbox_name=sandbox_name,
            exit_code=exit_code,
        )

    def log_sandbox_evicted(self, session_id: str, sandbox_name: str, idle_ms: int) -> None:
        self._emit(
            AuditEventType.SANDBOX_EVICTED,
            session_id=session_id,
            sandbox_name=sandbox_name,
            reason="inactivity",
            extra={"idle_ms": idle_ms},
        )

    def log_sandbox_destroyed(
        self,
        session_id: str,
        sandbox_name: str,
        reason: str,
        request_id: Optional[str] = None,
    ) -> None:
        self._emit(
            AuditEventType.SANDBOX_DESTROYED,
            session_id=session_id,
            sandbox_name=sandbox_name,
            request_id=request_id,
            reason=reason,
        )

    def log_shutdown_drained(self, total: int, failed: int) -> None:
        self._emit(AuditEventType.SHUTDOWN_DRAINED, extra={"total": total, "failed": failed})


_audit_logger: Optional[AuditLogger] = None
_audit_lock = threading.Lock()


def get_audit_logger() -> AuditLogger:
    """Process-wide audit logger; writes to stdout until configured."""
    global _audit_logger
    with _audit_lock:
        if _audit_logger is None:
            _audit_logger = AuditLogger()
        return _audit_logger


def configure_audit_logger(output_path: Optional[str] = None, **options: Any) -> AuditLogger:
    """Replace the process-wide audit logger, closing the previous one."""
    global _audit_logger
    replacement = AuditLogger(output_path, **options)
    with _audit_lock:
        previous, _audit_logger = _audit_logger, replacement
    if previous is not None:
        previous.close()
    return replacement


def reset_audit_logger() -> None:
    """Close and forget the process-wide logger. For testing only."""
    global _audit_logger
    with _audit_lock:
        previous, _audit_logger = _audit_logger, None
    if previous is not None:
        previous.close()
