from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol


@dataclass
class LaunchSpec:
    """Everything the runtime needs to create one sandbox."""

    name: str
    image: str
    memory_bytes: int
    cpus: float
    pids_limit: int
    network: str
    workspace_path: str
    workspace_size_bytes: int
    # Optional stronger disk quota on the writable layer; None = not requested.
    disk_quota_bytes: Optional[int] = None
    labels: Dict[str, str] = field(default_factory=dict)
    auto_remove: bool = True

    def without_disk_quota(self) -> LaunchSpec:
        """Copy of this spec with only the always-available limits."""
        return LaunchSpec(
            name=self.name,
            image=self.image,
            memory_bytes=self.memory_bytes,
            cpus=self.cpus,
            pids_limit=self.pids_limit,
            network=self.network,
            workspace_path=self.workspace_path,
            workspace_size_bytes=self.workspace_size_bytes,
            disk_quota_bytes=None,
            labels=dict(self.labels),
            auto_remove=self.auto_remove,
        )


@dataclass
class SandboxState:
    """Live runtime view of a sandbox."""

    name: str
    status: str
    running: bool
    exit_code: Optional[int] = None


class SandboxRuntime(Protocol):
    """
    Runtime interface: create, start, inspect and stop sandbox processes.

    Raises subterm.exceptions.RuntimeCommandError (or a subclass) on
    failure. SandboxMissing and SandboxNotRunning mark the statuses that
    lifecycle code treats as "already stopped".
    """

    async def create(self, spec: LaunchSpec) -> str:
        ...

    async def start(self, name: str) -> None:
        ...

    async def inspect(self, name: str) -> SandboxState:
        ...

    async def stop(self, name: str, grace_seconds: float) -> None:
        ...

    async def kill(self, name: str) -> None:
        ...

    async def remove(self, name: str) -> None:
        ...

    async def wait(self, name: str) -> int:
        ...
