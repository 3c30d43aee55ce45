from __future__ import annotations

from printplan.planner.api import PlanningInputs, PlanRunResult, run_planner

__all__ = ["PlanningInputs", "PlanRunResult", "run_planner"]
