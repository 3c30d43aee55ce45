from __future__ import annotations

import asyncio
from datetime import date
from pathlib import Path

import pytest

import printplan.planner.orchestrator as orch_mod
from printplan.data.db import Db
from printplan.data.repository import Repository
from printplan.data.workbook import WorkbookData
from printplan.planner.orchestrator import PlanningOrchestrator
from printplan.planner.persist import get_latest_run_result
from printplan.planner.preload import NightAllocationCache
from printplan.sync.plan_version import PublishPlanResult

from sample_data import FULL, MON_10, MON_NIGHT, REF_A, cycle, inventory, presets, printers, project


@pytest.fixture
def repo(tmp_path) -> Repository:
    db = Db(Path(tmp_path) / "test.db")
    db.ensure_schema()
    r = Repository(db)
    r.save_factory_settings(FULL)
    return r


def _data(**kwargs) -> WorkbookData:
    values = {
        "projects": [project(ref=REF_A)],
        "presets": presets(),
        "printers": printers(),
        "inventory": inventory(2000.0),
        "cycles": [
            cycle("d1", MON_10),
            cycle("n1", MON_NIGHT, grams=300.0),
            cycle("n2", MON_NIGHT.replace(hour=21), grams=300.0),
            cycle("run", MON_10.replace(hour=9), status="in_progress"),
        ],
    }
    values.update(kwargs)
    return WorkbookData(**values)


class _FakeVersionService:
    def __init__(self):
        self.calls = []

    async def publish_plan(self, cycles, *, project_refs, keep_cycle_ids, reason):
        self.calls.append({"cycles": list(cycles), "refs": project_refs, "keep": list(keep_cycle_ids), "reason": reason})
        return PublishPlanResult(success=True, plan_version="v2", cycles_created=len(cycles), cycles_deleted=0)


def test_run_plan_records_run_and_audit(repo):
    result = PlanningOrchestrator(repo)._run_plan_sync(_data(), now=MON_10, reason="manual_replan")

    assert result["status"] == "success"
    assert result["stats"]["cycles_planned"] == 4
    assert result["stats"]["night_cycles_skipped"] == 0
    assert result["stats"]["plates_allocated"] == 2

    latest = get_latest_run_result(repo.db)
    assert latest["success"] is True
    assert latest["reason"] == "manual_replan"
    assert latest["input_snapshot"]["printers_total"] == 2
    assert latest["allocations"][0]["project_id"] == "proj-1"
    assert repo.get_recent_audit_entries()[0].category == "PLANNER"


def test_validation_failure_is_not_logged_as_run(repo):
    result = PlanningOrchestrator(repo)._run_plan_sync(_data(printers=[]), now=MON_10)
    assert result["status"] == "error"
    assert result["message"] == "Data validation failed: No printers configured"
    assert get_latest_run_result(repo.db) is None

    result = PlanningOrchestrator(repo)._run_plan_sync(_data(projects=[project(preset_id="nope")]), now=MON_10)
    assert result["message"] == "Data validation failed: Unknown preset(s): nope"


def test_planner_exception_is_recorded(repo, monkeypatch):
    def _boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(orch_mod, "run_planner", _boom)
    result = PlanningOrchestrator(repo)._run_plan_sync(_data(), now=MON_10)

    assert result["status"] == "error"
    assert result["message"] == "Planning error: boom"
    latest = get_latest_run_result(repo.db)
    assert latest["success"] is False
    assert latest["errors"] == ["boom"]


def test_cached_allocation_is_reused_unless_forced(repo):
    cache = NightAllocationCache()
    key = NightAllocationCache.key_for(date(2026, 3, 2))
    orchestrator = PlanningOrchestrator(repo, cache=cache)

    first = orchestrator._run_plan_sync(_data(), now=MON_10)
    reused = orchestrator._run_plan_sync(_data(), now=MON_10)
    assert reused["run"].night_allocation is first["run"].night_allocation

    forced = orchestrator._run_plan_sync(_data(), now=MON_10, force=True)
    assert forced["run"].night_allocation is not first["run"].night_allocation
    assert cache.get(key) is forced["run"].night_allocation


def test_run_plan_publishes_with_kept_cycles(repo):
    service = _FakeVersionService()
    orchestrator = PlanningOrchestrator(repo, version_service=service)

    result = asyncio.run(orchestrator.run_plan(_data(), now=MON_10, publish=True, reason="scheduled"))

    assert result["status"] == "success"
    assert result["publish"]["success"] is True
    assert result["publish"]["plan_version"] == "v2"
    call = service.calls[0]
    assert call["keep"] == ["run"]
    assert call["refs"] == {"proj-1": REF_A}
    assert call["reason"] == "scheduled"
    assert [e.category for e in repo.get_recent_audit_entries()][:2] == ["PLAN_SYNC", "PLANNER"]


def test_publish_without_store(repo):
    result = asyncio.run(PlanningOrchestrator(repo).run_plan(_data(), now=MON_10, publish=True))
    assert result["publish"] == {"success": False, "error": "No plan store configured"}
