"""
Sandbox provisioning: turns a granted capacity slot into a running sandbox.

Steps:
1. Reserve a slot (CapacityExceeded if none, nothing else happens)
2. Generate an unguessable session id and derive the sandbox name
3. Create the sandbox with the base limits plus the optional disk quota
4. If the runtime rejects the quota as unsupported, create again with
   the base limits only (logged, not surfaced)
5. Start it and register the session (createdAt = lastActive = now)
6. Hand it to the exit watcher

Any failure after step 1 removes what was created and releases the slot
before ProvisionFailed reaches the caller.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Optional

from subterm.exceptions import (
    CapacityExceeded,
    FeatureUnsupported,
    ProvisionFailed,
    RuntimeCommandError,
    SubtermError,
)
from subterm.isolation.audit import AuditLogger
from subterm.isolation.protocol import LaunchSpec, SandboxRuntime
from subterm.sandbox.admission import AdmissionController
from subterm.sandbox.registry import SessionRecord, SessionRegistry, now_ms
from subterm.sandbox.watcher import ExitWatcher

logger = logging.getLogger(__name__)

SANDBOX_NAME_PREFIX = "subterm-"


@dataclass
class SandboxLimits:
    """Resource limits and isolation settings applied to every sandbox."""

    image: str = "subterm-server"
    network: str = "subterm-net"
    memory_bytes: int = 512 * 1024 * 1024
    cpus: float = 1.0
    pids_limit: int = 100
    workspace_size_bytes: int = 1024 * 1024 * 1024
    workspace_path: str = "/workspace"
    # Try the storage-driver quota on top of the tmpfs workspace cap
    disk_quota: bool = True


def new_session_id() -> str:
    """128 bits of randomness, hex encoded."""
    return secrets.token_hex(16)


def sandbox_name_for(session_id: str) -> str:
    return f"{SANDBOX_NAME_PREFIX}{session_id}"


class SandboxProvisioner:
    """
    Creates sandboxes under admission control.

    The only component allowed to call SessionRegistry.put().
    """

    def __init__(
        self,
        admission: AdmissionController,
        registry: SessionRegistry,
        runtime: SandboxRuntime,
        limits: Optional[SandboxLimits] = None,
        watcher: Optional[ExitWatcher] = None,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._admission = admission
        self._registry = registry
        self._runtime = runtime
        self._limits = limits or SandboxLimits()
        self._watcher = watcher
        self._audit = audit

    @property
    def limits(self) -> SandboxLimits:
        return self._limits

    def build_launch_spec(self, session_id: str) -> LaunchSpec:
        """Launch spec with base limits, plus the disk quota when enabled."""
        limits = self._limits
        return LaunchSpec(
            name=sandbox_name_for(session_id),
            image=limits.image,
            memory_bytes=limits.memory_bytes,
            cpus=limits.cpus,
            pids_limit=limits.pids_limit,
            network=limits.network,
            workspace_path=limits.workspace_path,
            workspace_size_bytes=limits.workspace_size_bytes,
            disk_quota_bytes=limits.workspace_size_bytes if limits.disk_quota else None,
            labels={
                "subterm.managed": "true",
                "subterm.session": session_id,
            },
        )

    async def provision(self) -> SessionRecord:
        """
        Provision one sandbox and register its session.

        Raises:
            CapacityExceeded: No slot available; nothing was created.
            ProvisionFailed: Runtime or registry failure after the slot
                was granted; the slot has been released.
            StoreUnavailable: The slot reservation itself failed.
        """
        granted = await self._admission.reserve_slot()
        if self._audit is not None:
            self._audit.log_admission(granted, self._admission.max_sandboxes)
        if not granted:
            raise CapacityExceeded(
                "Server at capacity, try again later",
                details={"max_sandboxes": self._admission.max_sandboxes},
            )

        started = time.monotonic()
        session_id = new_session_id()
        spec = self.build_launch_spec(session_id)

        try:
            used_quota = await self._create(spec, session_id)
            await self._runtime.start(spec.name)
        except RuntimeCommandError as e:
            await self._compensate(spec.name, session_id, e.code)
            raise ProvisionFailed(
                f"Could not start sandbox: {e.message}",
                details={"sandbox_name": spec.name},
            ) from e
        except asyncio.CancelledError:
            await self._compensate(spec.name, session_id, "cancelled")
            raise

        now = now_ms()
        record = SessionRecord(
            session_id=session_id,
            sandbox_name=spec.name,
            workspace_path=spec.workspace_path,
            created_at=now,
            last_active=now,
        )

        try:
            await self._registry.put(record)
        except SubtermError as e:
            await self._compensate(spec.name, session_id, e.code, record_written=True)
            raise ProvisionFailed(
                f"Could not register session: {e.message}",
                details={"sandbox_name": spec.name},
            ) from e
        except asyncio.CancelledError:
            await self._compensate(spec.name, session_id, "cancelled", record_written=True)
            raise

        if self._watcher is not None:
            self._watcher.watch(session_id, spec.name)

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(
            "Started sandbox %s for session %s (disk quota: %s)",
            spec.name,
            session_id,
            "on" if used_quota else "off",
        )
        if self._audit is not None:
            self._audit.log_sandbox_provisioned(
                session_id, spec.name, disk_quota=used_quota, duration_ms=elapsed_ms
            )
        return record

    async def _create(self, spec: LaunchSpec, session_id: str) -> bool:
        """
        Create the sandbox, falling back to base limits if the quota is unsupported.

        Only FeatureUnsupported triggers the fallback; every other error
        propagates so real provisioning problems are not masked.

        Returns:
            True if the disk quota is in effect.
        """
        if spec.disk_quota_bytes is None:
            await self._runtime.create(spec)
            return False

        try:
            await self._runtime.create(spec)
            return True
        except FeatureUnsupported as e:
            logger.warning(
                "Disk quota unsupported on this host, launching %s without it: %s",
                spec.name,
                e.stderr or e.message,
            )
            if self._audit is not None:
                self._audit.log_quota_fallback(session_id, spec.name)

        await self._discard(spec.name)
        await self._runtime.create(spec.without_disk_quota())
        return False

    async def _discard(self, name: str) -> None:
        """Force-remove a sandbox that may or may not exist."""
        try:
            await self._runtime.remove(name)
        except RuntimeCommandError as e:
            logger.debug("Nothing to remove for %s: %s", name, e.message)

    async def _compensate(
        self,
        name: str,
        session_id: str,
        reason: str,
        record_written: bool = False,
    ) -> None:
        """
        Undo a partial provisioning: remove the sandbox, release the slot.

        With record_written, a registration that may have partly landed
        is deleted first. If the id already reached the active set,
        registry.delete releases the slot and no second release follows.
        """
        logger.error("Provisioning of %s failed (%s), releasing slot", name, reason)
        await self._discard(name)
        released = False
        if record_written:
            try:
                released = await self._registry.delete(session_id)
            except SubtermError as e:
                logger.error("Session %s could not be removed: %s", session_id, e.message)
        if not released:
            try:
                await self._admission.release_slot()
            except SubtermError as e:
                logger.error("Slot for %s could not be released: %s", name, e.message)
        if self._audit is not None:
            self._audit.log_provision_failed(session_id, name, reason)
