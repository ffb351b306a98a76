"""
Gateway service tests: startup recovery, status lookups, destroy.
"""
from __future__ import annotations

import pytest

from subterm.exceptions import RuntimeCommandError, SandboxGone, SessionNotFound
from subterm.isolation.audit import AuditEventType
from subterm.server.services.gateway import Gateway
from subterm.store import InMemoryStateStore
from tests.runtimes.fake_runtime import FakeSandboxRuntime
from tests.runtimes.recording_audit import RecordingAudit


def _gateway(runtime: FakeSandboxRuntime, store=None, max_sandboxes: int = 3) -> Gateway:
    return Gateway(store or InMemoryStateStore(), runtime, max_sandboxes=max_sandboxes)


async def _in_use(gateway: Gateway) -> int:
    return int(await gateway.store.get("subterm:capacity") or "0")


@pytest.mark.asyncio
async def test_recover_drops_sessions_without_sandbox() -> None:
    runtime = FakeSandboxRuntime()
    store = InMemoryStateStore()
    previous = _gateway(runtime, store)
    alive = await previous.create_container()
    gone = await previous.create_container()
    runtime.vanish(gone.sandbox_name)
    await previous.watcher.stop()

    # Same shared store, new process
    gateway = _gateway(runtime, store)
    gateway.watcher.start()
    try:
        assert await gateway.recover() == 1
        assert [r.session_id for r in await gateway.list_sessions()] == [alive.session_id]
        assert gateway.watcher.watching == 1
        assert await _in_use(gateway) == 1
    finally:
        await gateway.watcher.stop()


@pytest.mark.asyncio
async def test_describe_returns_live_status() -> None:
    gateway = _gateway(FakeSandboxRuntime())
    record = await gateway.create_container()

    found, state = await gateway.describe(record.session_id)

    assert found == record
    assert state.status == "running"


@pytest.mark.asyncio
async def test_describe_gone_sandbox_removes_session() -> None:
    runtime = FakeSandboxRuntime()
    gateway = _gateway(runtime)
    record = await gateway.create_container()
    runtime.vanish(record.sandbox_name)

    with pytest.raises(SandboxGone):
        await gateway.describe(record.session_id)

    assert await gateway.list_sessions() == []
    assert await _in_use(gateway) == 0
    with pytest.raises(SessionNotFound):
        await gateway.describe(record.session_id)


@pytest.mark.asyncio
async def test_destroy_stops_and_deregisters() -> None:
    runtime = FakeSandboxRuntime()
    gateway = _gateway(runtime)
    record = await gateway.create_container()

    await gateway.destroy(record.session_id)

    assert runtime.running_names == []
    assert await gateway.list_sessions() == []
    assert await _in_use(gateway) == 0


@pytest.mark.asyncio
async def test_destroy_tolerates_missing_sandbox() -> None:
    runtime = FakeSandboxRuntime()
    gateway = _gateway(runtime)
    record = await gateway.create_container()
    runtime.vanish(record.sandbox_name)

    await gateway.destroy(record.session_id)

    assert await gateway.list_sessions() == []


@pytest.mark.asyncio
async def test_destroy_failure_keeps_session() -> None:
    runtime = FakeSandboxRuntime()
    gateway = _gateway(runtime)
    record = await gateway.create_container()
    runtime.stop_errors[record.sandbox_name] = RuntimeCommandError("permission denied")

    with pytest.raises(RuntimeCommandError):
        await gateway.destroy(record.session_id)

    assert await gateway.registry.get(record.session_id) is not None
    assert await _in_use(gateway) == 1


@pytest.mark.asyncio
async def test_destroy_unknown_session() -> None:
    gateway = _gateway(FakeSandboxRuntime())
    with pytest.raises(SessionNotFound):
        await gateway.destroy("nope")


@pytest.mark.asyncio
async def test_start_and_shutdown() -> None:
    runtime = FakeSandboxRuntime()
    gateway = _gateway(runtime)
    await gateway.start()
    for _ in range(2):
        await gateway.create_container()

    report = await gateway.shutdown()

    assert report.total == 2
    assert report.stopped == 2
    assert runtime.running_names == []
    assert gateway.evictor.running is False
    assert await gateway.healthy() is False


@pytest.mark.asyncio
async def test_destroy_is_audited_with_request_id() -> None:
    runtime = FakeSandboxRuntime()
    audit = RecordingAudit()
    gateway = Gateway(InMemoryStateStore(), runtime, max_sandboxes=3, audit=audit)
    record = await gateway.create_container()

    await gateway.destroy(record.session_id, request_id="req-1")

    destroyed = [e for e in audit.events if e.event_type is AuditEventType.SANDBOX_DESTROYED]
    assert len(destroyed) == 1
    assert destroyed[0].request_id == "req-1"
    assert destroyed[0].reason == "api_delete"
