"""
Locating the container engine CLI.

Podman is tried first (rootless, daemonless), then Docker.
SUBTERM_CONTAINER_RUNTIME pins one of them instead.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from enum import Enum
from typing import List, Optional

from subterm.exceptions import RuntimeUnavailable

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SECONDS = 5


class ContainerRuntime(Enum):
    PODMAN = "podman"
    DOCKER = "docker"

    @property
    def command(self) -> str:
        return self.value


def _check_runtime_works(command: str) -> bool:
    """True if `<command> info` succeeds, i.e. the CLI can reach its engine."""
    try:
        subprocess.run(
            [command, "info"],
            capture_output=True,
            check=True,
            timeout=PROBE_TIMEOUT_SECONDS,
        )
    except (subprocess.SubprocessError, OSError) as e:
        logger.debug("%s info failed: %s", command, e)
        return False
    return True


def _candidates(preferred: Optional[str]) -> List[ContainerRuntime]:
    if not preferred or preferred == "auto":
        return [ContainerRuntime.PODMAN, ContainerRuntime.DOCKER]
    try:
        return [ContainerRuntime(preferred)]
    except ValueError:
        raise RuntimeUnavailable(
            f"Unknown container runtime: {preferred}",
            details={"supported": [r.command for r in ContainerRuntime]},
        ) from None


def detect_runtime(preferred: Optional[str] = None) -> ContainerRuntime:
    """
    Pick the container runtime to drive.

    Args:
        preferred: "podman", "docker", or "auto"/None to probe both.

    Raises:
        RuntimeUnavailable: No candidate is installed and reachable.
    """
    candidates = _candidates(preferred)
    for runtime in candidates:
        if shutil.which(runtime.command) and _check_runtime_works(runtime.command):
            logger.info("Using container runtime: %s", runtime.command)
            return runtime

    tried = ", ".join(r.command for r in candidates)
    raise RuntimeUnavailable(
        f"No usable container runtime (tried: {tried}). Install Podman or Docker."
    )
