"""
Isolation module: the container runtime behind each sandbox.

Provides:
- Runtime detection (Podman preferred, Docker fallback)
- SandboxRuntime protocol and its CLI implementation
- Launch specs carrying resource limits and isolation settings
- Audit logging for sandbox lifecycle events
"""
from subterm.isolation.runtime import (
    ContainerRuntime,
    detect_runtime,
)
from subterm.isolation.protocol import (
    LaunchSpec,
    SandboxRuntime,
    SandboxState,
)
from subterm.isolation.container import (
    CliSandboxRuntime,
    build_create_args,
    classify_failure,
)
from subterm.isolation.audit import (
    AuditLogger,
    AuditEvent,
    AuditEventType,
    get_audit_logger,
    configure_audit_logger,
)

__all__ = [
    "ContainerRuntime",
    "detect_runtime",
    "LaunchSpec",
    "SandboxRuntime",
    "SandboxState",
    "CliSandboxRuntime",
    "build_create_args",
    "classify_failure",
    "AuditLogger",
    "AuditEvent",
    "AuditEventType",
    "get_audit_logger",
    "configure_audit_logger",
]
