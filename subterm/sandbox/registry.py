"""
Session registry: the single source of truth for which sandbox exists.

Layout in the state store:
    <prefix>:sessions        set of active session ids
    <prefix>:session:<id>    JSON SessionRecord
    <prefix>:capacity        capacity counter (owned by AdmissionController)

Three independent triggers may delete the same session concurrently
(explicit API delete, sandbox self-exit, eviction sweep). delete() is
idempotent, and only the caller whose set removal actually took the id
out of the active set releases the capacity slot.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from subterm.exceptions import SessionNotFound
from subterm.sandbox.admission import AdmissionController
from subterm.store.base import StateStore

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class SessionRecord:
    """
    Lifecycle record for one sandbox.

    Everything except last_active is immutable once created.
    """

    session_id: str
    sandbox_name: str
    workspace_path: str
    created_at: int
    last_active: int

    def idle_ms(self, now: Optional[int] = None) -> int:
        """Milliseconds since last activity."""
        return (now if now is not None else now_ms()) - self.last_active

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "sandboxName": self.sandbox_name,
            "workspacePath": self.workspace_path,
            "createdAt": self.created_at,
            "lastActive": self.last_active,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> SessionRecord:
        data = json.loads(raw)
        return cls(
            session_id=data["sessionId"],
            sandbox_name=data["sandboxName"],
            workspace_path=data["workspacePath"],
            created_at=int(data["createdAt"]),
            last_active=int(data["lastActive"]),
        )


class SessionRegistry:
    """
    CRUD over session records layered on a StateStore.

    put() is reserved for the provisioner, which calls it only after a
    slot has been granted and the sandbox has started.
    """

    def __init__(
        self,
        store: StateStore,
        admission: AdmissionController,
        key_prefix: str = "subterm",
    ) -> None:
        self._store = store
        self._admission = admission
        self._prefix = key_prefix

    @property
    def active_key(self) -> str:
        return f"{self._prefix}:sessions"

    def record_key(self, session_id: str) -> str:
        return f"{self._prefix}:session:{session_id}"

    async def put(self, record: SessionRecord) -> None:
        """Write the record, then add its id to the active set."""
        await self._store.set(self.record_key(record.session_id), record.to_json())
        await self._store.sadd(self.active_key, record.session_id)

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        """Return the record, or None if the session is not registered."""
        raw = await self._store.get(self.record_key(session_id))
        if raw is None:
            return None
        return SessionRecord.from_json(raw)

    async def delete(self, session_id: str) -> bool:
        """
        Deregister a session and release its slot.

        Idempotent: a second (or concurrent) call finds the id already
        gone from the active set, skips the release and returns False.

        Returns:
            True if this call removed the session.
        """
        removed = await self._store.srem(self.active_key, session_id)
        await self._store.delete(self.record_key(session_id))
        if removed:
            await self._admission.release_slot()
            logger.debug("Session %s deregistered", session_id)
        return bool(removed)

    async def list_all(self) -> List[SessionRecord]:
        """
        Snapshot of all active sessions.

        Reads the active set, then fetches every record in one batched
        call. Records deleted between the two reads are dropped.
        """
        ids = sorted(await self._store.smembers(self.active_key))
        if not ids:
            return []

        raws = await self._store.mget([self.record_key(sid) for sid in ids])
        records: List[SessionRecord] = []
        for sid, raw in zip(ids, raws):
            if raw is None:
                continue
            try:
                records.append(SessionRecord.from_json(raw))
            except (ValueError, KeyError, TypeError) as e:
                logger.error("Unreadable session record %s: %s", sid, e)
        return records

    async def touch(self, session_id: str, at: Optional[int] = None) -> SessionRecord:
        """
        Advance last_active for a registered session.

        Writes only if the record still exists, so a touch racing a
        delete never resurrects the session.

        Raises:
            SessionNotFound: If the session is not registered.
        """
        record = await self.get(session_id)
        if record is None:
            raise SessionNotFound(f"Session not found: {session_id}")

        record.last_active = at if at is not None else now_ms()
        written = await self._store.set(
            self.record_key(session_id), record.to_json(), only_if_exists=True
        )
        if not written:
            raise SessionNotFound(f"Session not found: {session_id}")
        return record
