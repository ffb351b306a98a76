"""
Gateway service: wires the sandbox lifecycle core behind the HTTP API.

One Gateway per process owns the state store, the runtime and every
lifecycle component built on them. Routers reach it via get_gateway().
"""
from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from subterm.exceptions import (
    RuntimeCommandError,
    SandboxGone,
    SandboxMissing,
    SessionNotFound,
    SubtermError,
)
from subterm.isolation.audit import AuditLogger, get_audit_logger
from subterm.isolation.container import CliSandboxRuntime
from subterm.isolation.protocol import SandboxRuntime, SandboxState
from subterm.isolation.runtime import detect_runtime
from subterm.sandbox.admission import AdmissionController
from subterm.sandbox.lifecycle import (
    DrainReport,
    InactivityEvictor,
    LifecycleConfig,
    ShutdownReconciler,
    stop_sandbox,
)
from subterm.sandbox.provisioner import SandboxLimits, SandboxProvisioner
from subterm.sandbox.registry import SessionRecord, SessionRegistry
from subterm.sandbox.watcher import ExitWatcher
from subterm.server.config import Settings, get_settings
from subterm.store.base import StateStore
from subterm.store.memory import InMemoryStateStore
from subterm.store.redis import RedisStateStore

logger = logging.getLogger(__name__)


def create_state_store(settings: Settings) -> StateStore:
    """Build the configured state store backend."""
    if settings.state_store == "redis":
        return RedisStateStore.from_url(settings.redis_url)
    return InMemoryStateStore()


class Gateway:
    """
    Sandbox lifecycle operations exposed to the API layer.
    """

    def __init__(
        self,
        store: StateStore,
        runtime: SandboxRuntime,
        *,
        max_sandboxes: int = 10,
        limits: Optional[SandboxLimits] = None,
        lifecycle: Optional[LifecycleConfig] = None,
        key_prefix: str = "subterm",
        store_backend: str = "memory",
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self.store = store
        self.runtime = runtime
        self.store_backend = store_backend
        self.lifecycle = lifecycle or LifecycleConfig()
        self.audit = audit

        self.admission = AdmissionController(
            store, max_sandboxes, counter_key=f"{key_prefix}:capacity"
        )
        self.registry = SessionRegistry(store, self.admission, key_prefix=key_prefix)
        self.watcher = ExitWatcher(runtime, self.registry, audit=audit)
        self.provisioner = SandboxProvisioner(
            self.admission,
            self.registry,
            runtime,
            limits=limits,
            watcher=self.watcher,
            audit=audit,
        )
        self.evictor = InactivityEvictor(self.registry, runtime, self.lifecycle, audit=audit)
        self.reconciler = ShutdownReconciler(
            self.registry,
            runtime,
            store,
            evictor=self.evictor,
            watcher=self.watcher,
            grace_seconds=self.lifecycle.stop_grace_seconds,
            audit=audit,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        runtime: Optional[SandboxRuntime] = None,
        store: Optional[StateStore] = None,
    ) -> Gateway:
        if runtime is None:
            runtime = CliSandboxRuntime(detect_runtime(settings.container_runtime))
        if store is None:
            store = create_state_store(settings)
        return cls(
            store,
            runtime,
            max_sandboxes=settings.max_sandboxes,
            limits=SandboxLimits(
                image=settings.sandbox_image,
                network=settings.sandbox_network,
                memory_bytes=settings.sandbox_memory_bytes,
                cpus=settings.sandbox_cpus,
                pids_limit=settings.sandbox_pids_limit,
                workspace_size_bytes=settings.workspace_size_bytes,
                workspace_path=settings.workspace_path,
                disk_quota=settings.disk_quota,
            ),
            lifecycle=LifecycleConfig(
                inactivity_timeout_ms=settings.inactivity_timeout_ms,
                cleanup_interval_ms=settings.cleanup_interval_ms,
                stop_grace_seconds=settings.stop_grace_seconds,
            ),
            key_prefix=settings.key_prefix,
            store_backend=settings.state_store,
            audit=get_audit_logger(),
        )

    @property
    def max_sandboxes(self) -> int:
        return self.admission.max_sandboxes

    async def start(self) -> None:
        """Start background work: exit watching, recovery, eviction."""
        if not await self.store.ping():
            logger.warning("State store (%s) not reachable at startup", self.store_backend)
        self.watcher.start()
        await self.recover()
        self.evictor.start()

    async def shutdown(self) -> DrainReport:
        return await self.reconciler.drain()

    async def recover(self) -> int:
        """
        Reconcile sessions left by a previous process.

        Sessions whose sandbox no longer runs are deregistered; live
        ones get an exit watcher.

        Returns:
            Number of stale sessions removed.
        """
        try:
            sessions = await self.registry.list_all()
        except SubtermError as e:
            logger.error("Startup recovery skipped: %s", e.message)
            return 0

        removed = 0
        for record in sessions:
            try:
                state = await self.runtime.inspect(record.sandbox_name)
            except SandboxMissing:
                state = None
            except RuntimeCommandError as e:
                logger.warning("Could not inspect %s: %s", record.sandbox_name, e.message)
                continue

            if state is not None and state.running:
                self.watcher.watch(record.session_id, record.sandbox_name)
                continue

            if state is not None:
                # Stopped but not auto-removed (e.g. never started)
                try:
                    await self.runtime.remove(record.sandbox_name)
                except RuntimeCommandError as e:
                    logger.debug("Could not remove %s: %s", record.sandbox_name, e.message)

            if await self.registry.delete(record.session_id):
                removed += 1
                logger.info(
                    "Removed stale session %s (sandbox %s not running)",
                    record.session_id,
                    record.sandbox_name,
                )
        return removed

    async def create_container(self) -> SessionRecord:
        return await self.provisioner.provision()

    async def list_sessions(self) -> List[SessionRecord]:
        return await self.registry.list_all()

    async def _require(self, session_id: str) -> SessionRecord:
        record = await self.registry.get(session_id)
        if record is None:
            raise SessionNotFound(f"Session not found: {session_id}")
        return record

    async def describe(self, session_id: str) -> Tuple[SessionRecord, SandboxState]:
        """
        Session record plus live sandbox status.

        Raises:
            SessionNotFound: Unknown session.
            SandboxGone: Session is registered but its sandbox is gone;
                the stale session is deregistered before raising.
        """
        record = await self._require(session_id)
        try:
            state = await self.runtime.inspect(record.sandbox_name)
        except SandboxMissing:
            await self.registry.delete(session_id)
            raise SandboxGone(
                f"Sandbox for session {session_id} no longer exists",
                details={"sandbox_name": record.sandbox_name},
            )
        return record, state

    async def destroy(
        self, session_id: str, request_id: Optional[str] = None
    ) -> SessionRecord:
        """
        Stop a session's sandbox and deregister it.

        A sandbox that is already stopped or removed is fine; any other
        stop failure propagates and leaves the session registered.
        """
        record = await self._require(session_id)
        await stop_sandbox(
            self.runtime, record.sandbox_name, self.lifecycle.stop_grace_seconds
        )
        await self.registry.delete(session_id)
        logger.info("Destroyed sandbox %s for session %s", record.sandbox_name, session_id)
        if self.audit is not None:
            self.audit.log_sandbox_destroyed(
                session_id, record.sandbox_name, "api_delete", request_id=request_id
            )
        return record

    async def touch(self, session_id: str) -> SessionRecord:
        return await self.registry.touch(session_id)

    async def healthy(self) -> bool:
        return await self.store.ping()


# Global gateway singleton
_gateway: Optional[Gateway] = None


def get_gateway() -> Gateway:
    """Get the global gateway, building it from settings on first use."""
    global _gateway
    if _gateway is None:
        _gateway = Gateway.from_settings(get_settings())
    return _gateway


def set_gateway(gateway: Optional[Gateway]) -> None:
    """Install a preconfigured gateway (custom runtime or store)."""
    global _gateway
    _gateway = gateway


def reset_gateway() -> None:
    """Reset global gateway. For testing only."""
    global _gateway
    _gateway = None
