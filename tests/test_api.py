from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

from printplan.planner.api import PlanningInputs, run_planner
from printplan.planner.preload import NightAllocationCache

from sample_data import FULL, MON_10, MON_NIGHT, cycle, inventory, presets, printers, project


def _inputs(night_cycles: int) -> PlanningInputs:
    return PlanningInputs(
        settings=FULL,
        projects=[project()],
        presets=presets(),
        printers=printers(),
        inventory=inventory(2000.0),
        cycles=[cycle(f"n{i}", MON_NIGHT + timedelta(hours=3 * i)) for i in range(night_cycles)],
    )


def test_shared_cache_follows_demand_changes_within_a_day():
    cache = NightAllocationCache()

    first = run_planner(_inputs(1), now=MON_10, cache=cache)
    assert first.night_allocation.total_allocated == 1

    second = run_planner(_inputs(4), now=MON_10, cache=cache)
    assert second.preload.total_allocated == 4
    assert second.night_allocation.total_allocated == second.preload.total_allocated

    again = run_planner(_inputs(4), now=MON_10, cache=cache)
    assert again.night_allocation is second.night_allocation


def test_shared_cache_follows_inventory_changes():
    cache = NightAllocationCache()
    stocked = run_planner(_inputs(2), now=MON_10, cache=cache)

    low = replace(_inputs(2), inventory=inventory(0.0))
    starved = run_planner(low, now=MON_10, cache=cache)

    assert starved.night_allocation is not stocked.night_allocation
