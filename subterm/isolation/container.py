"""
Container-backed sandbox runtime.

Drives Podman or Docker through their CLIs. Each sandbox is one
long-running container with:
- cgroups resource limits (memory without swap, CPU share, pids)
- a size-capped tmpfs mounted at the workspace path
- the isolation network, no published ports
- no-new-privileges
- auto-remove on exit
- an optional --storage-opt size=... disk quota, which only some
  storage backends support (overlay2 on xfs with pquota, btrfs, zfs)

Failures are classified from the CLI's stderr:

    "no such container" / "no container with name or id"  -> SandboxMissing
    "is not running" / "removal ... already in progress"   -> SandboxNotRunning
    storage-opt rejected by the storage driver             -> FeatureUnsupported
    anything else                                          -> RuntimeCommandError

Usage:
    from subterm.isolation.container import CliSandboxRuntime
    from subterm.isolation.runtime import detect_runtime

    runtime = CliSandboxRuntime(detect_runtime())
    await runtime.create(spec)
    await runtime.start(spec.name)
"""
from __future__ import annotations

import asyncio
import json
import logging
import math
from typing import List, Optional, Tuple

from subterm.exceptions import (
    FeatureUnsupported,
    RuntimeCommandError,
    SandboxMissing,
    SandboxNotRunning,
)
from subterm.isolation.protocol import LaunchSpec, SandboxState
from subterm.isolation.runtime import ContainerRuntime

logger = logging.getLogger(__name__)

_MISSING_MARKERS = (
    "no such container",
    "no container with name or id",
    "no such object",
)
_NOT_RUNNING_MARKERS = (
    "is not running",
    "already stopped",
    "is already in progress",
    "container state improper",
)
_STORAGE_OPT_MARKERS = (
    "storage-opt",
    "storage option",
    "storage_opt",
    "size option",
)
_UNSUPPORTED_MARKERS = (
    "not supported",
    "supported only",
    "only supported",
    "invalid storage option",
    "unsupported",
    "unknown option",
    "requires",
)


def classify_failure(action: str, name: str, returncode: Optional[int], stderr: str) -> RuntimeCommandError:
    """Map a failed CLI invocation to the matching exception type."""
    text = stderr.strip()
    lowered = text.lower()
    message = f"{action} {name} failed: {text or f'exit {returncode}'}"
    kwargs = {"returncode": returncode, "stderr": text[:500]}

    if any(marker in lowered for marker in _MISSING_MARKERS):
        return SandboxMissing(message, **kwargs)
    if any(marker in lowered for marker in _NOT_RUNNING_MARKERS):
        return SandboxNotRunning(message, **kwargs)
    if any(marker in lowered for marker in _STORAGE_OPT_MARKERS) and any(
        marker in lowered for marker in _UNSUPPORTED_MARKERS
    ):
        return FeatureUnsupported(message, feature="storage_quota", **kwargs)
    return RuntimeCommandError(message, **kwargs)


def build_create_args(runtime_cmd: str, spec: LaunchSpec) -> List[str]:
    """Build the `<runtime> create ...` argument vector for a launch spec."""
    args = [
        runtime_cmd, "create",
        "--name", spec.name,

        # Resource limits (cgroups)
        f"--memory={spec.memory_bytes}b",
        f"--memory-swap={spec.memory_bytes}b",  # No swap
        f"--cpus={spec.cpus}",
        f"--pids-limit={spec.pids_limit}",

        # Network isolation; routing happens on the runtime network
        f"--network={spec.network}",

        # Workspace size cap, available on every storage backend
        f"--tmpfs={spec.workspace_path}:rw,size={spec.workspace_size_bytes},mode=1777",

        "--security-opt=no-new-privileges",
    ]

    if spec.auto_remove:
        args.append("--rm")

    if spec.disk_quota_bytes is not None:
        args.append(f"--storage-opt=size={spec.disk_quota_bytes}")

    for key, value in sorted(spec.labels.items()):
        args.append(f"--label={key}={value}")

    args.append(spec.image)
    return args


async def _reap(proc: asyncio.subprocess.Process) -> None:
    """Kill a CLI child that is still running and collect its exit status."""
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            logger.debug("Runtime CLI %s already exited", proc.pid)
    await proc.wait()


class CliSandboxRuntime:
    """
    SandboxRuntime implementation over the podman/docker CLI.

    Every command except wait() is bounded by command_timeout; a hung
    CLI process is killed and reported as RuntimeCommandError.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        command_timeout: float = 30.0,
    ) -> None:
        self._runtime = runtime
        self._cmd = runtime.command
        self._command_timeout = command_timeout

    @property
    def runtime(self) -> ContainerRuntime:
        return self._runtime

    async def _exec(
        self,
        args: List[str],
        timeout: Optional[float],
    ) -> Tuple[int, str, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RuntimeCommandError(f"Could not run {args[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.CancelledError:
            # A cancelled call (bounded stop, watcher shutdown) must not leave the CLI running
            await _reap(proc)
            raise
        except asyncio.TimeoutError:
            await _reap(proc)
            raise RuntimeCommandError(
                f"{' '.join(args[:2])} timed out after {timeout}s"
            )

        return (
            proc.returncode if proc.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def _run(
        self,
        action: str,
        name: str,
        *args: str,
        timeout: Optional[float] = None,
        use_default_timeout: bool = True,
    ) -> str:
        if timeout is None and use_default_timeout:
            timeout = self._command_timeout
        returncode, stdout, stderr = await self._exec([self._cmd, *args], timeout)
        if returncode != 0:
            raise classify_failure(action, name, returncode, stderr)
        return stdout

    async def create(self, spec: LaunchSpec) -> str:
        args = build_create_args(self._cmd, spec)
        returncode, stdout, stderr = await self._exec(args, self._command_timeout)
        if returncode != 0:
            raise classify_failure("create", spec.name, returncode, stderr)
        container_id = stdout.strip()
        logger.debug("Created sandbox %s (%s)", spec.name, container_id[:12])
        return container_id

    async def start(self, name: str) -> None:
        await self._run("start", name, "start", name)

    async def inspect(self, name: str) -> SandboxState:
        output = await self._run(
            "inspect", name,
            "inspect", "--type", "container", "--format", "{{json .State}}", name,
        )
        try:
            state = json.loads(output.strip().splitlines()[0])
        except (ValueError, IndexError) as e:
            raise RuntimeCommandError(f"Unparseable inspect output for {name}: {e}")

        status = str(state.get("Status") or "unknown").lower()
        exit_code = state.get("ExitCode")
        return SandboxState(
            name=name,
            status=status,
            running=bool(state.get("Running", status == "running")),
            exit_code=int(exit_code) if exit_code is not None else None,
        )

    async def stop(self, name: str, grace_seconds: float) -> None:
        # The runtime sends SIGTERM, then SIGKILL once the grace period ends.
        # -t takes whole seconds; a fractional grace rounds up.
        await self._run(
            "stop", name,
            "stop", "-t", str(math.ceil(max(grace_seconds, 0))), name,
            timeout=self._command_timeout + grace_seconds,
        )

    async def kill(self, name: str) -> None:
        await self._run("kill", name, "kill", name)

    async def remove(self, name: str) -> None:
        await self._run("remove", name, "rm", "-f", name)

    async def wait(self, name: str) -> int:
        output = await self._run("wait", name, "wait", name, use_default_timeout=False)
        try:
            return int(output.strip().splitlines()[-1])
        except (ValueError, IndexError):
            return -1
