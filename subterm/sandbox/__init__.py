"""
Sandbox lifecycle core.

Provides:
- AdmissionController: Global capacity cap (reserve/release)
- SessionRegistry / SessionRecord: Which sandbox exists, last activity
- SandboxProvisioner / SandboxLimits: Slot -> running sandbox
- ExitWatcher: Deregisters sandboxes that exit on their own
- InactivityEvictor / ShutdownReconciler: Idle eviction and shutdown drain

Usage:
    from subterm.sandbox import AdmissionController, SessionRegistry, SandboxProvisioner

    admission = AdmissionController(store, max_sandboxes=10)
    registry = SessionRegistry(store, admission)
    provisioner = SandboxProvisioner(admission, registry, runtime)
    record = await provisioner.provision()
"""
from subterm.sandbox.admission import AdmissionController
from subterm.sandbox.registry import SessionRecord, SessionRegistry, now_ms
from subterm.sandbox.provisioner import (
    SandboxLimits,
    SandboxProvisioner,
    new_session_id,
    sandbox_name_for,
)
from subterm.sandbox.watcher import ExitNotice, ExitWatcher
from subterm.sandbox.lifecycle import (
    DrainReport,
    InactivityEvictor,
    LifecycleConfig,
    ShutdownReconciler,
    stop_sandbox,
)

__all__ = [
    "AdmissionController",
    "SessionRecord",
    "SessionRegistry",
    "now_ms",
    "SandboxLimits",
    "SandboxProvisioner",
    "new_session_id",
    "sandbox_name_for",
    "ExitNotice",
    "ExitWatcher",
    "DrainReport",
    "InactivityEvictor",
    "LifecycleConfig",
    "ShutdownReconciler",
    "stop_sandbox",
]
