"""
Typed exceptions for subterm.

Provides structured error handling with:
- SubtermError: Base exception for all subterm errors
- CapacityExceeded / ProvisionFailed: Provisioning outcomes
- SessionNotFound / SandboxGone: Session lookup outcomes
- StoreUnavailable: Shared state store failures
- RuntimeUnavailable: No usable podman/docker CLI
- RuntimeCommandError and subclasses: Container runtime failures

All exceptions include structured attributes for programmatic handling.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SubtermError(Exception):
    """Base exception for all subterm errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context as key-value pairs
    """

    default_code = "subterm_error"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging or API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigError(SubtermError):
    """Invalid configuration value.

    Raised at startup when an environment variable cannot be parsed
    or is out of range.
    """

    default_code = "config_error"


class CapacityExceeded(SubtermError):
    """No capacity slot available.

    Recoverable: the caller should retry later. Nothing was created.
    """

    default_code = "capacity_exceeded"


class ProvisionFailed(SubtermError):
    """Sandbox could not be provisioned after a slot was granted.

    The slot has already been released when this is raised.
    """

    default_code = "provision_failed"


class SessionNotFound(SubtermError):
    """Session id is not registered."""

    default_code = "session_not_found"


class SandboxGone(SubtermError):
    """Session is registered but its sandbox no longer exists."""

    default_code = "sandbox_gone"


class StoreUnavailable(SubtermError):
    """Shared state store is unreachable or returned an error.

    Never treated as "not found" by callers.
    """

    default_code = "store_unavailable"


class RuntimeUnavailable(SubtermError):
    """No container runtime is installed and reachable on this host."""

    default_code = "runtime_unavailable"


class RuntimeCommandError(SubtermError):
    """Container runtime command failed.

    Attributes:
        returncode: Exit status of the runtime CLI (None if it never ran)
        stderr: Captured error output, truncated
    """

    default_code = "runtime_error"

    def __init__(
        self,
        message: str,
        *,
        returncode: Optional[int] = None,
        stderr: str = "",
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.returncode = returncode
        self.stderr = stderr
        merged = dict(details or {})
        if returncode is not None:
            merged.setdefault("returncode", returncode)
        super().__init__(message, code=code, details=merged)


class SandboxMissing(RuntimeCommandError):
    """Sandbox does not exist (never created or already removed)."""

    default_code = "sandbox_missing"


class SandboxNotRunning(RuntimeCommandError):
    """Sandbox exists but is already stopped or being removed."""

    default_code = "sandbox_not_running"


class FeatureUnsupported(RuntimeCommandError):
    """Runtime rejected an optional launch feature on this host.

    Attributes:
        feature: Name of the rejected feature (e.g. "storage_quota")
    """

    default_code = "feature_unsupported"

    def __init__(self, message: str, *, feature: str, **kwargs: Any) -> None:
        self.feature = feature
        super().__init__(message, **kwargs)
        self.details.setdefault("feature", feature)


__all__ = [
    "SubtermError",
    "ConfigError",
    "CapacityExceeded",
    "ProvisionFailed",
    "SessionNotFound",
    "SandboxGone",
    "StoreUnavailable",
    "RuntimeUnavailable",
    "RuntimeCommandError",
    "SandboxMissing",
    "SandboxNotRunning",
    "FeatureUnsupported",
]
