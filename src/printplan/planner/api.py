from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Sequence

from printplan.core.calendar import WorkCalendar
from printplan.core.colors import inventory_key
from printplan.core.events import DecisionLog, PlanningEvent
from printplan.core.models import ColorInventoryItem, FactorySettings, PlannedCycle, Preset, Printer, Project
from printplan.planner.phase_a import PhaseAResult, calculate_deadline_allocations
from printplan.planner.phase_b import PhaseBInput, PhaseBResult, validate_night_cycles
from printplan.planner.preload import (
    STRATEGY_DEMAND,
    AllocationStrategy,
    NightAllocationCache,
    NightAllocationResult,
    NightDemand,
    NightPreloadSummary,
    calculate_night_allocation,
    calculate_night_preload,
    demand_fingerprint,
    material_by_color,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanningInputs:
    settings: FactorySettings
    projects: Sequence[Project]
    presets: Mapping[str, Preset]
    printers: Sequence[Printer]
    inventory: Sequence[ColorInventoryItem]
    cycles: Sequence[PlannedCycle] = ()


@dataclass(frozen=True)
class PlanRunResult:
    started_at: datetime
    duration_ms: int
    phase_a: PhaseAResult
    phase_b: PhaseBResult
    night_allocation: NightAllocationResult
    preload: NightPreloadSummary
    events: list[PlanningEvent] = field(default_factory=list)

    @property
    def cycles(self) -> list[PlannedCycle]:
        return self.phase_b.cycles

    @property
    def warnings(self) -> list[str]:
        return [*self.phase_a.warnings, *self.phase_b.warnings]

    def stats(self) -> dict[str, Any]:
        return {
            "projects_allocated": len(self.phase_a.allocations),
            "critical_projects": len(self.phase_a.critical_projects),
            "total_printers_needed": self.phase_a.total_printers_needed,
            "cycles_planned": len(self.phase_b.cycles),
            "units_planned": sum(c.units_planned for c in self.phase_b.cycles),
            "night_cycles_skipped": len(self.phase_b.skipped_nights),
            "plates_allocated": self.night_allocation.total_allocated,
            "plates_deferred": self.preload.total_deferred,
        }


def build_inventory_map(items: Sequence[ColorInventoryItem]) -> dict[str, ColorInventoryItem]:
    """One item per normalized color; extra rows of the same color add to open grams."""
    out: dict[str, ColorInventoryItem] = {}
    for item in items:
        key = inventory_key(item.color)
        current = out.get(key)
        if current is None:
            out[key] = item
        else:
            out[key] = ColorInventoryItem(
                color=current.color,
                material=current.material,
                closed_spool_count=current.closed_spool_count,
                closed_spool_grams=current.closed_spool_grams,
                open_grams=current.open_grams + item.total_grams,
            )
    return out


def night_demands_for(
    cycles: Sequence[PlannedCycle],
    projects: Sequence[Project],
    presets: Mapping[str, Preset],
    calendar: WorkCalendar,
    for_date,
) -> list[NightDemand]:
    """Candidate cycles starting in for_date's night window, as allocation demand."""
    window = calendar.night_window(for_date)
    by_project = {p.id: p for p in projects}
    demands: list[NightDemand] = []
    for cycle in cycles:
        if cycle.start is None or not window.contains(cycle.start):
            continue
        project = by_project.get(cycle.project_id)
        preset_id = cycle.preset_id or (project.preset_id if project else None)
        preset = presets.get(preset_id) if preset_id else None
        hours = cycle.duration_hours
        if hours is None:
            hours = preset.cycle_hours if preset else 0.0
        demands.append(
            NightDemand(
                project_id=cycle.project_id,
                project_name=project.name if project else cycle.project_id,
                printer_id=cycle.printer_id,
                color=cycle.required_color or (project.color if project else ""),
                cycle_hours=hours,
                grams_needed=cycle.grams_planned or 0.0,
                preset_allows_night=preset.allowed_at_night if preset else True,
            )
        )
    return demands


def run_planner(
    inputs: PlanningInputs,
    *,
    now: datetime,
    strategy: AllocationStrategy = STRATEGY_DEMAND,
    cache: NightAllocationCache | None = None,
    force: bool = False,
    log: DecisionLog | None = None,
) -> PlanRunResult:
    """Phase A, Phase B, tonight's plate allocation and the preload summary."""
    started = time.perf_counter()
    log = log if log is not None else DecisionLog()
    settings = inputs.settings
    calendar = WorkCalendar(settings)

    phase_a = calculate_deadline_allocations(
        inputs.projects, inputs.presets, len(inputs.printers), settings, now, log
    )

    slots = []
    for printer in inputs.printers:
        slot = calendar.open_slot(printer, now)
        if slot is None:
            logger.warning("Printer %s has no workday in range; no slot opened", printer.id)
            continue
        slots.append(slot)

    phase_b = validate_night_cycles(
        PhaseBInput(
            allocations=phase_a.allocations,
            printer_slots=slots,
            cycles=list(inputs.cycles),
            settings=settings,
            inventory=build_inventory_map(inputs.inventory),
            planning_start=now,
        ),
        log,
    )

    tonight = now.date()
    demands = night_demands_for(phase_b.cycles, inputs.projects, inputs.presets, calendar, tonight)
    material = material_by_color(inputs.inventory)

    def _compute() -> NightAllocationResult:
        return calculate_night_allocation(tonight, inputs.printers, demands, material, settings, strategy, log)

    if cache is None:
        allocation = _compute()
    else:
        allocation = cache.get_or_compute(
            NightAllocationCache.key_for(tonight),
            _compute,
            force=force,
            fingerprint=demand_fingerprint(inputs.printers, demands, material, strategy, settings),
        )

    preload = calculate_night_preload(tonight, phase_b.cycles, inputs.printers, settings)

    duration_ms = int((time.perf_counter() - started) * 1000)
    logger.info(
        "Planner run: %d allocation(s), %d cycle(s) kept, %d night cycle(s) skipped in %d ms",
        len(phase_a.allocations),
        len(phase_b.cycles),
        len(phase_b.skipped_nights),
        duration_ms,
    )
    return PlanRunResult(
        started_at=now,
        duration_ms=duration_ms,
        phase_a=phase_a,
        phase_b=phase_b,
        night_allocation=allocation,
        preload=preload,
        events=log.events,
    )
