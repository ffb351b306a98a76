"""
Lifecycle tests: stop semantics, inactivity eviction, shutdown drain.
"""
from __future__ import annotations

import pytest

from subterm.exceptions import RuntimeCommandError, StoreUnavailable
from subterm.isolation.audit import AuditEventType
from subterm.sandbox import (
    AdmissionController,
    InactivityEvictor,
    LifecycleConfig,
    SandboxProvisioner,
    SessionRecord,
    SessionRegistry,
    ShutdownReconciler,
    stop_sandbox,
)
from subterm.sandbox import lifecycle
from subterm.store import InMemoryStateStore
from tests.runtimes.fake_runtime import FakeSandboxRuntime
from tests.runtimes.recording_audit import RecordingAudit

TIMEOUT_MS = 10 * 60 * 1000


class Harness:
    def __init__(self, runtime: FakeSandboxRuntime, max_sandboxes: int = 5) -> None:
        self.runtime = runtime
        self.store = InMemoryStateStore()
        self.admission = AdmissionController(self.store, max_sandboxes)
        self.registry = SessionRegistry(self.store, self.admission)
        self.provisioner = SandboxProvisioner(self.admission, self.registry, runtime)
        self.audit = RecordingAudit()

    async def provision(self, last_active: int) -> SessionRecord:
        record = await self.provisioner.provision()
        await self.registry.touch(record.session_id, at=last_active)
        record.last_active = last_active
        return record

    async def in_use(self) -> int:
        return int(await self.store.get("subterm:capacity") or "0")

    def evictor(self) -> InactivityEvictor:
        return InactivityEvictor(
            self.registry,
            self.runtime,
            LifecycleConfig(inactivity_timeout_ms=TIMEOUT_MS, stop_grace_seconds=0.1),
            audit=self.audit,
        )


# =============================================================================
# STOP
# =============================================================================


class TestStopSandbox:
    @pytest.mark.asyncio
    async def test_stops_running_sandbox(self) -> None:
        h = Harness(FakeSandboxRuntime())
        record = await h.provisioner.provision()

        assert await stop_sandbox(h.runtime, record.sandbox_name, 1.0) is True
        assert h.runtime.running_names == []

    @pytest.mark.asyncio
    async def test_already_stopped_is_not_an_error(self) -> None:
        h = Harness(FakeSandboxRuntime())
        record = await h.provisioner.provision()
        await stop_sandbox(h.runtime, record.sandbox_name, 1.0)

        # Auto-removed after the first stop
        assert await stop_sandbox(h.runtime, record.sandbox_name, 1.0) is False

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self) -> None:
        runtime = FakeSandboxRuntime()
        runtime.stop_errors["subterm-x"] = RuntimeCommandError("permission denied")

        with pytest.raises(RuntimeCommandError):
            await stop_sandbox(runtime, "subterm-x", 1.0)

    @pytest.mark.asyncio
    async def test_stuck_stop_escalates_to_kill(self, monkeypatch) -> None:
        monkeypatch.setattr(lifecycle, "STOP_MARGIN_SECONDS", 0.05)
        h = Harness(FakeSandboxRuntime())
        record = await h.provisioner.provision()
        h.runtime.stop_delay = 5.0

        assert await stop_sandbox(h.runtime, record.sandbox_name, 0.0) is True
        assert ("kill", record.sandbox_name) in h.runtime.calls
        assert h.runtime.running_names == []


# =============================================================================
# EVICTION
# =============================================================================


class TestInactivityEvictor:
    @pytest.mark.asyncio
    async def test_idle_threshold_is_inclusive(self) -> None:
        h = Harness(FakeSandboxRuntime())
        now = 100 * TIMEOUT_MS
        at_threshold = await h.provision(last_active=now - TIMEOUT_MS)
        just_below = await h.provision(last_active=now - TIMEOUT_MS + 1)
        fresh = await h.provision(last_active=now)

        evicted = await h.evictor().sweep(now=now)

        assert evicted == [at_threshold.session_id]
        remaining = {r.session_id for r in await h.registry.list_all()}
        assert remaining == {just_below.session_id, fresh.session_id}
        assert at_threshold.sandbox_name not in h.runtime.running_names
        assert await h.in_use() == 2
        assert h.audit.event_types == [AuditEventType.SANDBOX_EVICTED]

    @pytest.mark.asyncio
    async def test_touch_postpones_eviction(self) -> None:
        h = Harness(FakeSandboxRuntime())
        now = 100 * TIMEOUT_MS
        record = await h.provision(last_active=now - 2 * TIMEOUT_MS)
        await h.registry.touch(record.session_id, at=now - 1)

        assert await h.evictor().sweep(now=now) == []

    @pytest.mark.asyncio
    async def test_sandbox_already_gone_is_still_deregistered(self) -> None:
        h = Harness(FakeSandboxRuntime())
        now = 100 * TIMEOUT_MS
        record = await h.provision(last_active=0)
        h.runtime.vanish(record.sandbox_name)

        assert await h.evictor().sweep(now=now) == [record.session_id]
        assert await h.in_use() == 0

    @pytest.mark.asyncio
    async def test_stop_failure_does_not_block_other_sessions(self) -> None:
        h = Harness(FakeSandboxRuntime())
        now = 100 * TIMEOUT_MS
        broken = await h.provision(last_active=0)
        healthy = await h.provision(last_active=0)
        h.runtime.stop_errors[broken.sandbox_name] = RuntimeCommandError("engine hiccup")

        evicted = await h.evictor().sweep(now=now)

        assert sorted(evicted) == sorted([broken.session_id, healthy.session_id])
        assert await h.registry.list_all() == []
        assert await h.in_use() == 0

    @pytest.mark.asyncio
    async def test_registry_failure_skips_tick(self) -> None:
        h = Harness(FakeSandboxRuntime())
        await h.provision(last_active=0)

        async def unavailable():
            raise StoreUnavailable("State store unavailable during smembers")

        h.registry.list_all = unavailable  # type: ignore[method-assign]

        assert await h.evictor().sweep(now=100 * TIMEOUT_MS) == []
        assert len(h.runtime.running_names) == 1

    @pytest.mark.asyncio
    async def test_start_and_stop_timer(self) -> None:
        h = Harness(FakeSandboxRuntime())
        evictor = h.evictor()

        evictor.start()
        assert evictor.running is True
        await evictor.stop()
        assert evictor.running is False


# =============================================================================
# SHUTDOWN
# =============================================================================


class TestShutdownReconciler:
    @pytest.mark.asyncio
    async def test_drain_stops_every_sandbox(self) -> None:
        h = Harness(FakeSandboxRuntime())
        for _ in range(3):
            await h.provisioner.provision()
        evictor = h.evictor()
        evictor.start()

        report = await ShutdownReconciler(
            h.registry, h.runtime, h.store, evictor=evictor, grace_seconds=0.1, audit=h.audit
        ).drain()

        assert (report.total, report.stopped, report.already_gone, report.failed) == (3, 3, 0, 0)
        assert h.runtime.running_names == []
        assert evictor.running is False
        assert await h.store.ping() is False
        assert AuditEventType.SHUTDOWN_DRAINED in h.audit.event_types

    @pytest.mark.asyncio
    async def test_drain_settles_every_attempt_despite_failures(self) -> None:
        h = Harness(FakeSandboxRuntime())
        records = [await h.provisioner.provision() for _ in range(3)]
        h.runtime.stop_errors[records[0].sandbox_name] = RuntimeCommandError("engine hiccup")
        h.runtime.vanish(records[1].sandbox_name)

        report = await ShutdownReconciler(h.registry, h.runtime, h.store, grace_seconds=0.1).drain()

        assert (report.total, report.stopped, report.already_gone, report.failed) == (3, 1, 1, 1)
        stop_calls = [name for action, name in h.runtime.calls if action == "stop"]
        assert sorted(stop_calls) == sorted(r.sandbox_name for r in records)

    @pytest.mark.asyncio
    async def test_drain_with_no_sessions(self) -> None:
        h = Harness(FakeSandboxRuntime())
        report = await ShutdownReconciler(h.registry, h.runtime, h.store).drain()
        assert report.total == 0
        assert await h.store.ping() is False
