from __future__ import annotations

from printplan.sync.local_cache import LocalPlanCache
from printplan.sync.plan_version import PlanUpdateResult, PlanVersionService, PublishPlanResult

__all__ = ["LocalPlanCache", "PlanUpdateResult", "PlanVersionService", "PublishPlanResult"]
