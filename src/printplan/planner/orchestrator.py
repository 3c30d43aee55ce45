from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from datetime import datetime

from printplan.core.events import DecisionLog
from printplan.data.repository import Repository
from printplan.data.workbook import WorkbookData
from printplan.planner.api import PlanningInputs, PlanRunResult, run_planner
from printplan.planner.persist import delete_old_run_results, save_run_result
from printplan.planner.preload import STRATEGY_DEMAND, AllocationStrategy, NightAllocationCache
from printplan.sync.plan_version import PlanVersionService

logger = logging.getLogger(__name__)


def input_snapshot(data: WorkbookData) -> dict:
    return {
        "projects_total": len(data.projects),
        "projects_active": sum(1 for p in data.projects if p.remaining_units > 0),
        "printers_total": len(data.printers),
        "printers_night_capable": sum(1 for p in data.printers if p.can_run_after_hours),
        "presets_total": len(data.presets),
        "inventory_rows": len(data.inventory),
        "candidate_cycles": len(data.cycles),
    }


class PlanningOrchestrator:
    """Runs a planning pass, records it, and optionally publishes the result."""

    def __init__(
        self,
        repo: Repository,
        *,
        version_service: PlanVersionService | None = None,
        cache: NightAllocationCache | None = None,
    ):
        self.repo = repo
        self.version_service = version_service
        self.cache = cache if cache is not None else NightAllocationCache()

    async def run_plan(
        self,
        data: WorkbookData,
        *,
        now: datetime | None = None,
        reason: str = "manual_replan",
        strategy: AllocationStrategy = STRATEGY_DEMAND,
        force: bool = False,
        publish: bool = False,
    ) -> dict:
        """Plan in a worker thread, then publish if asked.

        Returns:
            dict with keys: status ("success"|"error"), message, stats, and
            "run" (PlanRunResult) / "publish" (dict) when available
        """
        result = await asyncio.to_thread(
            self._run_plan_sync, data, now=now or datetime.now(), reason=reason, strategy=strategy, force=force
        )
        if publish and result["status"] == "success":
            result["publish"] = await self._publish(result["run"], data, reason=reason)
        return result

    def _run_plan_sync(
        self,
        data: WorkbookData,
        *,
        now: datetime,
        reason: str = "manual_replan",
        strategy: AllocationStrategy = STRATEGY_DEMAND,
        force: bool = False,
    ) -> dict:
        snapshot = input_snapshot(data)
        validation = self._validate_data(data)
        if not validation["is_valid"]:
            return {
                "status": "error",
                "message": f"Data validation failed: {validation['message']}",
                "stats": snapshot,
            }

        try:
            settings = self.repo.get_factory_settings()
            if force:
                self.cache.invalidate(NightAllocationCache.key_for(now.date()))
            inputs = PlanningInputs(
                settings=settings,
                projects=data.projects,
                presets=data.presets,
                printers=data.printers,
                inventory=data.inventory,
                cycles=data.cycles,
            )
            run = run_planner(inputs, now=now, strategy=strategy, cache=self.cache, force=force, log=DecisionLog())
        except Exception as e:
            logger.exception("Planner run failed")
            save_run_result(
                self.repo.db,
                reason=reason,
                success=False,
                stats={},
                input_snapshot=snapshot,
                errors=[str(e)],
            )
            return {
                "status": "error",
                "message": f"Planning error: {e}",
                "stats": snapshot,
            }

        stats = run.stats()
        save_run_result(
            self.repo.db,
            reason=reason,
            success=True,
            stats=stats,
            input_snapshot=snapshot,
            allocations=[
                {
                    "project_id": a.project_id,
                    "risk_level": a.risk_level,
                    "min_printers_needed": a.min_printers_needed,
                    "margin_hours": round(a.margin_hours, 2),
                }
                for a in run.phase_a.allocations
            ],
            warnings=run.warnings,
            events=[e.to_dict() for e in run.events],
            duration_ms=run.duration_ms,
        )
        delete_old_run_results(self.repo.db)
        self.repo.log_audit(
            "PLANNER",
            f"Planning run ({reason})",
            f"{stats['cycles_planned']} cycle(s), {stats['night_cycles_skipped']} night cycle(s) skipped",
        )
        return {
            "status": "success",
            "message": "Plan computed",
            "stats": stats,
            "run": run,
        }

    async def _publish(self, run: PlanRunResult, data: WorkbookData, *, reason: str) -> dict:
        if self.version_service is None:
            return {"success": False, "error": "No plan store configured"}

        keep = [c.id for c in run.cycles if c.status == "in_progress" or c.locked]
        outcome = await self.version_service.publish_plan(
            run.cycles,
            project_refs={p.id: p.ref for p in data.projects},
            keep_cycle_ids=keep,
            reason=reason,
        )
        if outcome.success:
            self.repo.log_audit("PLAN_SYNC", f"Published plan {outcome.plan_version}", f"{outcome.cycles_created} cycle(s)")
        else:
            self.repo.log_audit("PLAN_SYNC", "Publish not applied", outcome.error)
        return asdict(outcome)

    def _validate_data(self, data: WorkbookData) -> dict:
        """Check that there is something to plan.

        Returns:
            dict with keys: is_valid (bool), message (str)
        """
        if not data.printers:
            return {"is_valid": False, "message": "No printers configured"}
        if not any(p.remaining_units > 0 for p in data.projects):
            return {"is_valid": False, "message": "No active projects to plan"}
        missing = sorted({p.preset_id for p in data.projects if p.preset_id and p.preset_id not in data.presets})
        if missing:
            return {"is_valid": False, "message": f"Unknown preset(s): {', '.join(missing)}"}
        return {"is_valid": True, "message": "OK"}
