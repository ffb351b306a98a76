"""
Admission control and session registry tests.

Validates:
- The capacity counter never exceeds the cap under concurrent reserves
- Releases never push the counter below zero
- delete() is idempotent and releases the slot exactly once, even when
  several deleters race
- touch() never resurrects a deleted session
"""
from __future__ import annotations

import asyncio

import pytest

from subterm.exceptions import SessionNotFound
from subterm.sandbox import AdmissionController, SessionRecord, SessionRegistry
from subterm.store import InMemoryStateStore


def _record(session_id: str, last_active: int = 1_000) -> SessionRecord:
    return SessionRecord(
        session_id=session_id,
        sandbox_name=f"subterm-{session_id}",
        workspace_path="/workspace",
        created_at=last_active,
        last_active=last_active,
    )


async def _in_use(store: InMemoryStateStore) -> int:
    return int(await store.get("subterm:capacity") or "0")


# =============================================================================
# ADMISSION
# =============================================================================


class TestAdmissionController:
    def test_rejects_zero_cap(self) -> None:
        with pytest.raises(ValueError):
            AdmissionController(InMemoryStateStore(), 0)

    @pytest.mark.asyncio
    async def test_concurrent_reserves_respect_cap(self) -> None:
        store = InMemoryStateStore()
        admission = AdmissionController(store, max_sandboxes=3)

        granted = await asyncio.gather(*(admission.reserve_slot() for _ in range(20)))

        assert granted.count(True) == 3
        assert await _in_use(store) == 3

    @pytest.mark.asyncio
    async def test_release_frees_a_slot(self) -> None:
        store = InMemoryStateStore()
        admission = AdmissionController(store, max_sandboxes=1)

        assert await admission.reserve_slot() is True
        assert await admission.reserve_slot() is False
        await admission.release_slot()
        assert await admission.reserve_slot() is True

    @pytest.mark.asyncio
    async def test_unmatched_release_does_not_go_negative(self) -> None:
        store = InMemoryStateStore()
        admission = AdmissionController(store, max_sandboxes=1)

        await admission.release_slot()
        await admission.release_slot()
        assert await _in_use(store) == 0

        # Still exactly one slot, not three
        assert await admission.reserve_slot() is True
        assert await admission.reserve_slot() is False


# =============================================================================
# REGISTRY
# =============================================================================


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def registry(store: InMemoryStateStore) -> SessionRegistry:
    return SessionRegistry(store, AdmissionController(store, max_sandboxes=10))


class TestSessionRecord:
    def test_json_uses_camel_case(self) -> None:
        record = _record("abc")
        assert '"sessionId":"abc"' in record.to_json()
        assert '"lastActive":1000' in record.to_json()
        assert SessionRecord.from_json(record.to_json()) == record

    def test_idle_ms(self) -> None:
        assert _record("abc", last_active=1_000).idle_ms(4_000) == 3_000


class TestSessionRegistry:
    @pytest.mark.asyncio
    async def test_put_get_list(self, registry: SessionRegistry) -> None:
        await registry.put(_record("b"))
        await registry.put(_record("a"))

        assert await registry.get("a") == _record("a")
        assert await registry.get("missing") is None
        assert [r.session_id for r in await registry.list_all()] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(
        self, store: InMemoryStateStore, registry: SessionRegistry
    ) -> None:
        await store.increment_below("subterm:capacity", 10)
        await store.increment_below("subterm:capacity", 10)
        await registry.put(_record("a"))

        assert await registry.delete("a") is True
        assert await registry.delete("a") is False
        assert await registry.get("a") is None
        # Only one of the two slots was released
        assert await _in_use(store) == 1

    @pytest.mark.asyncio
    async def test_concurrent_deletes_release_once(
        self, store: InMemoryStateStore, registry: SessionRegistry
    ) -> None:
        """API delete, exit watcher and evictor racing on one session."""
        await store.increment_below("subterm:capacity", 10)
        await store.increment_below("subterm:capacity", 10)
        await registry.put(_record("a"))

        results = await asyncio.gather(*(registry.delete("a") for _ in range(3)))

        assert results.count(True) == 1
        assert await _in_use(store) == 1

    @pytest.mark.asyncio
    async def test_delete_unknown_session_releases_nothing(
        self, store: InMemoryStateStore, registry: SessionRegistry
    ) -> None:
        await store.increment_below("subterm:capacity", 10)
        assert await registry.delete("never-existed") is False
        assert await _in_use(store) == 1

    @pytest.mark.asyncio
    async def test_list_skips_records_deleted_between_reads(
        self, store: InMemoryStateStore, registry: SessionRegistry
    ) -> None:
        await registry.put(_record("a"))
        await registry.put(_record("b"))
        # Record gone, id still in the active set
        await store.delete(registry.record_key("a"))

        assert [r.session_id for r in await registry.list_all()] == ["b"]

    @pytest.mark.asyncio
    async def test_list_skips_unreadable_records(
        self, store: InMemoryStateStore, registry: SessionRegistry
    ) -> None:
        await registry.put(_record("a"))
        await store.sadd(registry.active_key, "broken")
        await store.set(registry.record_key("broken"), "{not json")

        assert [r.session_id for r in await registry.list_all()] == ["a"]

    @pytest.mark.asyncio
    async def test_touch_advances_last_active(self, registry: SessionRegistry) -> None:
        await registry.put(_record("a", last_active=1_000))

        touched = await registry.touch("a", at=5_000)

        assert touched.last_active == 5_000
        stored = await registry.get("a")
        assert stored is not None
        assert stored.last_active == 5_000
        assert stored.created_at == 1_000

    @pytest.mark.asyncio
    async def test_touch_unknown_session(self, registry: SessionRegistry) -> None:
        with pytest.raises(SessionNotFound):
            await registry.touch("missing")

    @pytest.mark.asyncio
    async def test_touch_racing_delete_does_not_resurrect(
        self, store: InMemoryStateStore, registry: SessionRegistry
    ) -> None:
        await registry.put(_record("a"))
        original_get = registry.get

        async def get_then_delete(session_id: str):
            record = await original_get(session_id)
            await registry.delete(session_id)
            return record

        registry.get = get_then_delete  # type: ignore[method-assign]

        with pytest.raises(SessionNotFound):
            await registry.touch("a")
        assert await store.get(registry.record_key("a")) is None
