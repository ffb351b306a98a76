"""
Sandbox lifecycle: inactivity eviction and shutdown reconciliation.

- InactivityEvictor: every cleanup interval, stops and deregisters
  sessions idle for at least the inactivity timeout
- ShutdownReconciler: on termination, stops the evictor, stops every
  tracked sandbox concurrently, waits for all attempts to settle,
  then closes the state store

Both stop sandboxes through stop_sandbox(), which treats "already
stopped" and "already removed" as success and escalates to a forced
kill when the runtime does not finish within the grace period.

Usage:
    evictor = InactivityEvictor(registry, runtime, LifecycleConfig())
    evictor.start()

    reconciler = ShutdownReconciler(registry, runtime, store, evictor=evictor)
    await reconciler.drain()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from subterm.exceptions import (
    RuntimeCommandError,
    SandboxMissing,
    SandboxNotRunning,
    SubtermError,
)
from subterm.isolation.audit import AuditLogger
from subterm.isolation.protocol import SandboxRuntime
from subterm.sandbox.registry import SessionRecord, SessionRegistry, now_ms
from subterm.sandbox.watcher import ExitWatcher
from subterm.store.base import StateStore

logger = logging.getLogger(__name__)

# Extra time on top of the grace period for the runtime CLI itself.
STOP_MARGIN_SECONDS = 5.0


@dataclass
class LifecycleConfig:
    """
    Configuration for sandbox lifecycle management.

    Timeouts follow the environment surface: milliseconds for
    inactivity and sweep period, seconds for the stop grace period.
    """

    # Idle time before eviction (default: 10 minutes)
    inactivity_timeout_ms: int = 10 * 60 * 1000

    # Interval between eviction sweeps (default: 1 minute)
    cleanup_interval_ms: int = 60 * 1000

    # SIGTERM-to-SIGKILL window for stop requests
    stop_grace_seconds: float = 5.0


async def stop_sandbox(runtime: SandboxRuntime, name: str, grace_seconds: float) -> bool:
    """
    Stop a sandbox, tolerating one that is already gone.

    The stop is bounded by grace_seconds plus a margin; past that the
    sandbox is killed outright.

    Returns:
        True if a running sandbox was stopped, False if it was already
        stopped or removed.

    Raises:
        RuntimeCommandError: For any other runtime failure.
    """
    try:
        await asyncio.wait_for(
            runtime.stop(name, grace_seconds),
            timeout=grace_seconds + STOP_MARGIN_SECONDS,
        )
        return True
    except (SandboxMissing, SandboxNotRunning) as e:
        logger.debug("Sandbox %s already stopped: %s", name, e.message)
        return False
    except asyncio.TimeoutError:
        logger.warning("Sandbox %s did not stop within %.0fs, killing", name, grace_seconds)

    try:
        await runtime.kill(name)
    except (SandboxMissing, SandboxNotRunning):
        return False
    return True


class InactivityEvictor:
    """
    Periodic sweep that evicts idle sessions.

    A registry read failure aborts the tick (the next tick retries). A
    stop failure for one session is logged and its record is still
    deleted; the orphaned sandbox exits on its own later.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        runtime: SandboxRuntime,
        config: Optional[LifecycleConfig] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._registry = registry
        self._runtime = runtime
        self._config = config or LifecycleConfig()
        self._audit = audit
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Inactivity watcher started - timeout %.1f min, interval %.1f min",
            self._config.inactivity_timeout_ms / 60_000,
            self._config.cleanup_interval_ms / 60_000,
        )

    async def stop(self) -> None:
        """Cancel the sweep timer. An in-flight sweep is cancelled too."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Inactivity watcher stopped")

    async def _loop(self) -> None:
        interval = self._config.cleanup_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Inactivity sweep crashed")

    def is_idle(self, record: SessionRecord, now: int) -> bool:
        return now - record.last_active >= self._config.inactivity_timeout_ms

    async def sweep(self, now: Optional[int] = None) -> List[str]:
        """
        Run one eviction tick.

        Returns:
            Session ids evicted by this tick.
        """
        now = now if now is not None else self._clock()
        try:
            sessions = await self._registry.list_all()
        except SubtermError as e:
            logger.error("Eviction sweep skipped, registry unavailable: %s", e.message)
            return []

        evicted: List[str] = []
        for record in sessions:
            if not self.is_idle(record, now):
                continue

            idle_ms = record.idle_ms(now)
            logger.info(
                "Session %s idle %d min - evicting sandbox %s",
                record.session_id,
                round(idle_ms / 60_000),
                record.sandbox_name,
            )

            try:
                await stop_sandbox(
                    self._runtime, record.sandbox_name, self._config.stop_grace_seconds
                )
            except RuntimeCommandError as e:
                logger.error("Could not stop sandbox %s: %s", record.sandbox_name, e.message)

            try:
                await self._registry.delete(record.session_id)
            except SubtermError as e:
                logger.error("Could not deregister session %s: %s", record.session_id, e.message)
                continue

            evicted.append(record.session_id)
            if self._audit is not None:
                self._audit.log_sandbox_evicted(record.session_id, record.sandbox_name, idle_ms)

        return evicted


@dataclass
class DrainReport:
    """Outcome of a shutdown drain."""

    total: int
    stopped: int
    already_gone: int
    failed: int


class ShutdownReconciler:
    """
    Best-effort cleanup of every tracked sandbox at process termination.

    Individual stop failures are collected, never abort the batch. Each
    stop is bounded by the grace period, so one stuck sandbox cannot
    hang the drain.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        runtime: SandboxRuntime,
        store: StateStore,
        evictor: Optional[InactivityEvictor] = None,
        watcher: Optional[ExitWatcher] = None,
        grace_seconds: float = 5.0,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._registry = registry
        self._runtime = runtime
        self._store = store
        self._evictor = evictor
        self._watcher = watcher
        self._grace = grace_seconds
        self._audit = audit

    async def drain(self) -> DrainReport:
        logger.info("Shutting down - stopping all sandboxes...")

        # No new eviction or exit-driven work during the drain
        if self._evictor is not None:
            await self._evictor.stop()
        if self._watcher is not None:
            await self._watcher.stop()

        try:
            sessions = await self._registry.list_all()
        except SubtermError as e:
            logger.error("Could not read sessions during shutdown: %s", e.message)
            sessions = []

        results = await asyncio.gather(
            *(stop_sandbox(self._runtime, s.sandbox_name, self._grace) for s in sessions),
            return_exceptions=True,
        )

        stopped = already_gone = failed = 0
        for record, result in zip(sessions, results):
            if isinstance(result, BaseException):
                failed += 1
                logger.warning("Could not stop sandbox %s: %s", record.sandbox_name, result)
            elif result:
                stopped += 1
            else:
                already_gone += 1

        report = DrainReport(
            total=len(sessions), stopped=stopped, already_gone=already_gone, failed=failed
        )
        if self._audit is not None:
            self._audit.log_shutdown_drained(report.total, report.failed)

        try:
            await self._store.close()
        except SubtermError as e:
            logger.error("State store close failed: %s", e.message)

        logger.info(
            "All sandboxes settled (%d stopped, %d already gone, %d failed)",
            stopped,
            already_gone,
            failed,
        )
        return report
