"""Cache backends and RunStore: set-if-absent, prefix scans, expiry, slots, durability."""

import asyncio

from core.cache import CacheService
from core.database import Database
from services.playbooks.cache import RunStore
from services.playbooks.models import Cursor, ExecutionContext, RunState, RunStatus


class TestSQLiteBackend:
    def test_database_selects_sqlite(self, cache):
        assert cache.use_sqlite
        assert not cache.is_redis_available()

    async def test_add_only_sets_absent_key(self, cache):
        assert await cache.add("slot", "run-a", ttl=0)
        assert not await cache.add("slot", "run-b", ttl=0)
        assert await cache.get("slot") == "run-a"

        assert await cache.delete("slot")
        assert await cache.add("slot", "run-b", ttl=0)

    async def test_concurrent_adds_store_one_value(self, cache):
        results = await asyncio.gather(*(cache.add("slot", f"run-{i}", ttl=0) for i in range(5)))
        assert results.count(True) == 1
        assert await cache.get("slot") == f"run-{results.index(True)}"

    async def test_get_prefix(self, cache):
        await cache.set("runs:a", 1, ttl=0)
        await cache.set("runs:b", {"x": 2}, ttl=0)
        await cache.set("other:c", 3, ttl=0)
        assert await cache.get_prefix("runs:") == {"runs:a": 1, "runs:b": {"x": 2}}

    async def test_prefix_is_not_a_pattern(self, cache):
        await cache.set("runs_a", 1, ttl=0)
        assert await cache.get_prefix("runs%") == {}

    async def test_cleanup_expired(self, cache, database):
        assert await database.set_cache_entry("old", '"gone"', ttl=-1)
        await cache.set("live", True, ttl=0)

        assert await cache.get_prefix("old") == {}
        assert await cache.cleanup_expired() == 1
        assert await cache.get("live") is True
        assert await cache.cleanup_expired() == 0


async def test_memory_backend_without_database(settings):
    cache = CacheService(settings)
    await cache.startup()
    try:
        assert not cache.use_sqlite
        assert await cache.add("slot", "run-a", ttl=0)
        assert not await cache.add("slot", "run-b", ttl=0)
        await cache.set("short", 1, ttl=-1)
        assert await cache.get("short") is None
        assert await cache.get_prefix("sl") == {"slot": "run-a"}
    finally:
        await cache.shutdown()


class TestAdmissionSlots:
    async def test_holder_without_state_keeps_slot(self, run_store):
        assert await run_store.acquire_slot("pb", "contact:c1", "run-a")
        # run-a is still being admitted: no state saved yet
        assert not await run_store.acquire_slot("pb", "contact:c1", "run-b")
        assert await run_store.get_slot_holder("pb", "contact:c1") == "run-a"

    async def test_terminal_holder_is_reclaimed(self, run_store):
        assert await run_store.acquire_slot("pb", "contact:c1", "run-a")
        finished = RunState(execution_id="run-a", playbook_id="pb", entity_key="contact:c1",
                            status=RunStatus.COMPLETED)
        assert await run_store.save_state(finished)

        assert await run_store.acquire_slot("pb", "contact:c1", "run-b")
        assert await run_store.get_slot_holder("pb", "contact:c1") == "run-b"

    async def test_live_holder_keeps_slot(self, run_store):
        running = RunState(execution_id="run-a", playbook_id="pb", entity_key="contact:c1",
                           status=RunStatus.RUNNING)
        assert await run_store.save_state(running)
        assert await run_store.acquire_slot("pb", "contact:c1", "run-a")
        assert not await run_store.acquire_slot("pb", "contact:c1", "run-b")

    async def test_only_holder_releases(self, run_store):
        assert await run_store.acquire_slot("pb", "contact:c1", "run-a")
        assert not await run_store.release_slot("pb", "contact:c1", "run-b")
        assert await run_store.release_slot("pb", "contact:c1", "run-a")
        assert await run_store.get_slot_holder("pb", "contact:c1") is None


async def test_delete_state_clears_indexes(run_store):
    state = RunState(execution_id="run-a", playbook_id="pb", entity_key="contact:c1")
    assert await run_store.save_state(state)
    assert await run_store.get_active_runs() == {"run-a"}

    assert await run_store.delete_state("run-a")
    assert await run_store.load_state("run-a") is None
    assert await run_store.get_active_runs() == set()


async def test_run_indexes_survive_restart(settings, run_store):
    state = RunState(execution_id="run-a", playbook_id="pb", entity_key="contact:c1",
                     status=RunStatus.SUSPENDED)
    state.suspended = [Cursor("pause", ExecutionContext(contact={"id": "c1"}), completed=True,
                              resume_at=2_000_000_000.0)]
    assert await run_store.save_state(state)
    assert await run_store.acquire_slot("pb", "contact:c1", "run-a")

    database = Database(settings)
    await database.startup()
    cache = CacheService(settings, database)
    await cache.startup()
    try:
        restarted = RunStore(cache)
        assert await restarted.get_suspended_runs() == [("run-a", 2_000_000_000.0)]
        assert await restarted.get_active_runs() == {"run-a"}
        assert await restarted.get_slot_holder("pb", "contact:c1") == "run-a"
        loaded = await restarted.load_state("run-a")
        assert loaded.status == RunStatus.SUSPENDED
        assert loaded.suspended[0].node_id == "pause"
    finally:
        await cache.shutdown()
        await database.shutdown()
