from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from printplan.core.events import DecisionLog
from printplan.data.db import Db
from printplan.sync.local_cache import LocalPlanCache
from printplan.sync.plan_version import (
    ORPHAN_ERROR,
    PUBLISH_IN_PROGRESS,
    PlanVersionService,
    StorePublishResponse,
    is_durable_ref,
    resolve_project_ref,
)
from printplan.sync.sqlite_store import SqlitePlanStore

from sample_data import MON_10, MON_NIGHT, REF_A, REF_B, cycle

WS = "factory-1"
REFS = {"proj-1": REF_A, "proj-2": REF_B}


def _cache(tmp_path: Path, name: str) -> LocalPlanCache:
    db = Db(tmp_path / f"{name}.db")
    db.ensure_schema()
    return LocalPlanCache(db, WS)


@pytest.fixture
def store(tmp_path) -> SqlitePlanStore:
    return SqlitePlanStore(tmp_path / "store.db")


def _service(tmp_path: Path, store, name: str = "local", log: DecisionLog | None = None) -> PlanVersionService:
    return PlanVersionService(store, _cache(tmp_path, name), WS, log=log)


class _FailingStore:
    async def get_active_plan_version(self, workspace_id):
        return None

    async def publish_plan(self, request):
        raise RuntimeError("store unreachable")

    async def fetch_cycles(self, workspace_id, plan_version):
        return []


class _RejectingStore(_FailingStore):
    async def publish_plan(self, request):
        return StorePublishResponse(success=False, plan_version=None, error="quota exceeded")


class _SlowStore(_FailingStore):
    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def publish_plan(self, request):
        self.entered.set()
        await self.release.wait()
        return StorePublishResponse(success=True, plan_version="v-slow", cycles_created=len(request.cycles))


def test_durable_refs():
    assert is_durable_ref(REF_A)
    assert not is_durable_ref("proj-1")
    assert not is_durable_ref(None)
    assert resolve_project_ref("proj-1", REFS) == REF_A
    assert resolve_project_ref(REF_B, {}) == REF_B
    assert resolve_project_ref("proj-9", REFS) is None


def test_publish_updates_local_token_and_cycles(tmp_path, store):
    service = _service(tmp_path, store)
    cycles = [cycle("c1", MON_10), cycle("c2", MON_NIGHT, project_id="proj-2")]

    result = asyncio.run(service.publish_plan(cycles, project_refs=REFS))

    assert result.success
    assert result.cycles_created == 2
    assert service.state == "synced"
    assert service.cache.get_plan_version() == result.plan_version
    cached = service.cache.get_cycles()
    assert [c.project_id for c in cached] == [REF_A, REF_B]
    assert {c.plan_version for c in cached} == {result.plan_version}
    assert asyncio.run(store.get_active_plan_version(WS)) == result.plan_version


def test_terminal_cycles_are_not_published(tmp_path, store):
    service = _service(tmp_path, store)
    cycles = [cycle("c1", MON_10), cycle("c2", MON_NIGHT, status="completed")]
    result = asyncio.run(service.publish_plan(cycles, project_refs=REFS))
    assert result.cycles_created == 1


def test_orphan_projects_defer_the_whole_publish(tmp_path, store):
    log = DecisionLog()
    service = _service(tmp_path, store, log=log)
    cycles = [cycle("c1", MON_10), cycle("c2", MON_NIGHT, project_id="draft-7")]

    result = asyncio.run(service.publish_plan(cycles, project_refs=REFS))

    assert not result.success
    assert result.deferred
    assert result.error == ORPHAN_ERROR
    assert result.orphan_project_ids == ["draft-7"]
    assert service.cache.get_plan_version() is None
    assert asyncio.run(store.get_active_plan_version(WS)) is None
    assert log.by_reason("orphan_project_reference")


def test_store_failure_leaves_local_token(tmp_path):
    log = DecisionLog()
    service = _service(tmp_path, _FailingStore(), log=log)
    service.cache.replace_plan([cycle("old", MON_10)], "v1")

    result = asyncio.run(service.publish_plan([cycle("c1", MON_10)], project_refs=REFS))

    assert not result.success
    assert result.error == "store unreachable"
    assert service.cache.get_plan_version() == "v1"
    assert [c.id for c in service.cache.get_cycles()] == ["old"]
    assert log.by_reason("publish_failed")


def test_store_rejection_leaves_local_token(tmp_path):
    service = _service(tmp_path, _RejectingStore())
    service.cache.replace_plan([], "v1")
    result = asyncio.run(service.publish_plan([cycle("c1", MON_10)], project_refs=REFS))
    assert not result.success
    assert result.error == "quota exceeded"
    assert service.cache.get_plan_version() == "v1"


def test_second_publish_is_rejected_while_first_is_outstanding(tmp_path):
    store = _SlowStore()
    service = _service(tmp_path, store)

    async def scenario():
        first = asyncio.create_task(service.publish_plan([cycle("c1", MON_10)], project_refs=REFS))
        await store.entered.wait()
        assert service.busy
        second = await service.publish_plan([cycle("c2", MON_10)], project_refs=REFS)
        update = await service.check_for_plan_update()
        store.release.set()
        return await first, second, update

    first, second, update = asyncio.run(scenario())
    assert first.success
    assert first.plan_version == "v-slow"
    assert not second.success
    assert second.error == PUBLISH_IN_PROGRESS
    assert update.error == PUBLISH_IN_PROGRESS
    assert service.cache.get_plan_version() == "v-slow"


def test_stale_client_converges_to_latest_plan(tmp_path, store):
    writer = _service(tmp_path, store, "writer")
    reader = _service(tmp_path, store, "reader")

    published = asyncio.run(writer.publish_plan([cycle("c1", MON_10), cycle("c2", MON_NIGHT)], project_refs=REFS))
    assert not asyncio.run(writer.check_for_plan_update()).updated
    assert asyncio.run(reader.is_plan_version_current()) is False

    update = asyncio.run(reader.check_for_plan_update())
    assert update.updated
    assert update.version == published.plan_version
    assert update.cycles_loaded == 2
    assert reader.state == "synced"
    assert reader.cache.get_plan_version() == published.plan_version
    assert [c.id for c in reader.cache.get_cycles()] == ["c1", "c2"]

    again = asyncio.run(reader.check_for_plan_update())
    assert not again.updated
    assert asyncio.run(reader.is_plan_version_current())


def test_empty_store_is_current(tmp_path, store):
    service = _service(tmp_path, store)
    assert asyncio.run(service.is_plan_version_current())
    update = asyncio.run(service.check_for_plan_update())
    assert not update.updated
    assert update.version is None


def test_publish_based_on_old_version_is_rejected(tmp_path, store):
    a = _service(tmp_path, store, "a")
    b = _service(tmp_path, store, "b")

    first = asyncio.run(a.publish_plan([cycle("c1", MON_10)], project_refs=REFS))
    asyncio.run(b.check_for_plan_update())
    second = asyncio.run(a.publish_plan([cycle("c2", MON_10)], project_refs=REFS))

    stale = asyncio.run(b.publish_plan([cycle("c3", MON_10)], project_refs=REFS))
    assert not stale.success
    assert "version_conflict" in stale.error
    assert b.cache.get_plan_version() == first.plan_version

    update = asyncio.run(b.check_for_plan_update())
    assert update.version == second.plan_version


def test_failed_publish_rolls_back_store(tmp_path, store):
    service = _service(tmp_path, store)
    first = asyncio.run(service.publish_plan([cycle("c1", MON_10)], project_refs=REFS))

    # Duplicate ids violate the primary key halfway through the insert
    broken = asyncio.run(service.publish_plan([cycle("c2", MON_10), cycle("c2", MON_NIGHT)], project_refs=REFS))

    assert not broken.success
    assert asyncio.run(store.get_active_plan_version(WS)) == first.plan_version
    kept = asyncio.run(store.fetch_cycles(WS, first.plan_version))
    assert [c.id for c in kept] == ["c1"]
    assert service.cache.get_plan_version() == first.plan_version
    assert len(store.plan_history(WS)) == 1


def test_kept_cycles_survive_and_move_to_new_version(tmp_path, store):
    service = _service(tmp_path, store)
    running = cycle("run", MON_10, status="in_progress")
    asyncio.run(service.publish_plan([running, cycle("p1", MON_NIGHT), cycle("p2", MON_NIGHT)], project_refs=REFS))

    result = asyncio.run(
        service.publish_plan([cycle("new", MON_NIGHT)], project_refs=REFS, keep_cycle_ids=["run"], reason="scheduled")
    )

    assert result.success
    assert result.cycles_deleted == 2
    current = asyncio.run(store.fetch_cycles(WS, result.plan_version))
    assert sorted(c.id for c in current) == ["new", "run"]
    history = store.plan_history(WS)
    assert history[-1]["reason"] == "scheduled"
    assert history[-1]["prior_version"] == history[0]["plan_version"]


class _NoReadBackStore(SqlitePlanStore):
    async def fetch_cycles(self, workspace_id, plan_version):
        raise RuntimeError("read replica offline")


def _ids_and_versions(cycles):
    return [(c.id, c.plan_version) for c in cycles]


def test_local_cache_matches_store_after_publish_with_kept_cycles(tmp_path, store):
    service = _service(tmp_path, store)
    running = cycle("run", MON_10, status="in_progress")
    asyncio.run(service.publish_plan([running, cycle("p1", MON_NIGHT)], project_refs=REFS))

    result = asyncio.run(service.publish_plan([cycle("new", MON_NIGHT)], project_refs=REFS, keep_cycle_ids=["run"]))

    remote = asyncio.run(store.fetch_cycles(WS, result.plan_version))
    assert _ids_and_versions(service.cache.get_cycles()) == _ids_and_versions(remote)
    assert [c.id for c in service.cache.get_cycles()] == ["run", "new"]
    assert not asyncio.run(service.check_for_plan_update()).updated


def test_kept_cycles_are_retagged_locally_when_store_cannot_be_read_back(tmp_path):
    service = _service(tmp_path, _NoReadBackStore(tmp_path / "store.db"))
    running = cycle("run", MON_10, status="in_progress")
    asyncio.run(service.publish_plan([running, cycle("p1", MON_NIGHT)], project_refs=REFS))

    result = asyncio.run(service.publish_plan([cycle("new", MON_NIGHT)], project_refs=REFS, keep_cycle_ids=["run"]))

    assert result.success
    cached = service.cache.get_cycles()
    assert [c.id for c in cached] == ["run", "new"]
    assert {c.plan_version for c in cached} == {result.plan_version}


def test_version_check_marks_client_stale(tmp_path, store):
    writer = _service(tmp_path, store, "writer")
    reader = _service(tmp_path, store, "reader")
    assert reader.state == "unknown"

    asyncio.run(writer.publish_plan([cycle("c1", MON_10)], project_refs=REFS))
    assert asyncio.run(reader.is_plan_version_current()) is False
    assert reader.state == "stale"

    asyncio.run(reader.check_for_plan_update())
    assert reader.state == "synced"
    assert asyncio.run(writer.is_plan_version_current())
    assert writer.state == "synced"
