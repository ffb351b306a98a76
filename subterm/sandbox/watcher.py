"""
Exit watcher: deregisters sessions whose sandbox exits on its own.

One waiter task per sandbox blocks on the runtime's wait(). When it
returns, the waiter posts an ExitNotice on a queue; a single consumer
task drains the queue and calls SessionRegistry.delete(). Explicit
deletes and eviction may already have removed the session by then,
which delete() absorbs as a no-op.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from subterm.exceptions import RuntimeCommandError, SandboxMissing, SubtermError
from subterm.isolation.audit import AuditLogger
from subterm.isolation.protocol import SandboxRuntime
from subterm.sandbox.registry import SessionRegistry

logger = logging.getLogger(__name__)


@dataclass
class ExitNotice:
    session_id: str
    sandbox_name: str
    exit_code: Optional[int]


class ExitWatcher:
    """Turns sandbox exits into registry deletions."""

    def __init__(
        self,
        runtime: SandboxRuntime,
        registry: SessionRegistry,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._runtime = runtime
        self._registry = registry
        self._audit = audit
        self._notices: asyncio.Queue[ExitNotice] = asyncio.Queue()
        self._waiters: Dict[str, asyncio.Task] = {}
        self._consumer: Optional[asyncio.Task] = None

    @property
    def watching(self) -> int:
        return len(self._waiters)

    def start(self) -> None:
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._consume())

    async def stop(self) -> None:
        """Cancel all waiters and the consumer. Pending notices are dropped."""
        tasks = list(self._waiters.values())
        if self._consumer is not None:
            tasks.append(self._consumer)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._waiters.clear()
        self._consumer = None

    def watch(self, session_id: str, sandbox_name: str) -> None:
        """Start waiting for the sandbox of session_id to exit."""
        if session_id in self._waiters:
            return
        task = asyncio.create_task(self._wait_for_exit(session_id, sandbox_name))
        self._waiters[session_id] = task
        task.add_done_callback(lambda _t, sid=session_id: self._waiters.pop(sid, None))

    async def join(self) -> None:
        """Wait until every posted notice has been handled."""
        await self._notices.join()

    async def _wait_for_exit(self, session_id: str, sandbox_name: str) -> None:
        try:
            exit_code: Optional[int] = await self._runtime.wait(sandbox_name)
        except SandboxMissing:
            # Auto-removed before the wait attached
            exit_code = None
        except RuntimeCommandError as e:
            logger.warning("Could not watch sandbox %s: %s", sandbox_name, e.message)
            return
        await self._notices.put(ExitNotice(session_id, sandbox_name, exit_code))

    async def _consume(self) -> None:
        while True:
            notice = await self._notices.get()
            try:
                removed = await self._registry.delete(notice.session_id)
                if removed:
                    logger.info(
                        "Sandbox %s exited on its own (code=%s), session %s released",
                        notice.sandbox_name,
                        notice.exit_code,
                        notice.session_id,
                    )
                    if self._audit is not None:
                        self._audit.log_sandbox_exited(
                            notice.session_id, notice.sandbox_name, notice.exit_code
                        )
            except SubtermError as e:
                logger.error(
                    "Failed to deregister exited session %s: %s",
                    notice.session_id,
                    e.message,
                )
            finally:
                self._notices.task_done()
