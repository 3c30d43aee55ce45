"""Night plate preload allocation.

Plates are a shared physical resource: each printer holds at most its
hardware capacity and the whole factory owns a fixed number of plates.
Demand is split round-robin so no printer is starved while another holds
spare plates.
"""
from __future__ import annotations

import json
import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Hashable, Literal, Mapping, Sequence

from printplan.core.calendar import WorkCalendar, hours_between
from printplan.core.colors import inventory_key, normalize_color
from printplan.core.events import DecisionLog
from printplan.core.models import (
    ColorInventoryItem,
    FactorySettings,
    NightWindow,
    PlannedCycle,
    Printer,
)

logger = logging.getLogger(__name__)

AllocationStrategy = Literal["demand", "time"]
STRATEGY_DEMAND: AllocationStrategy = "demand"
STRATEGY_TIME: AllocationStrategy = "time"

AVERAGE_CYCLE_HOURS = 3.0
DEFAULT_PLATE_CAPACITY = 8
PRELOAD_LEAD_HOURS = 2.0


def allocate_plates_round_robin(
    demands: Mapping[str, int],
    capacities: Mapping[str, int],
    global_limit: int,
) -> dict[str, int]:
    """One plate per printer per round, printer ids ascending, until the cap or demand runs out."""
    order = sorted(demands)
    allocations = {printer_id: 0 for printer_id in order}
    total = 0
    changed = True
    while changed and total < global_limit:
        changed = False
        for printer_id in order:
            if total >= global_limit:
                break
            current = allocations[printer_id]
            demand = demands[printer_id]
            capacity = capacities.get(printer_id, DEFAULT_PLATE_CAPACITY)
            if current < demand and current < capacity:
                allocations[printer_id] = current + 1
                total += 1
                changed = True
    return allocations


@dataclass(frozen=True)
class NightDemand:
    """One candidate night cycle as proposed by the cycle generator."""

    project_id: str
    project_name: str
    printer_id: str
    color: str
    cycle_hours: float
    grams_needed: float
    preset_allows_night: bool = True


@dataclass(frozen=True)
class NightCycleCheck:
    demand: NightDemand
    is_eligible: bool
    reason: str | None = None
    detail: str = ""


@dataclass(frozen=True)
class PrinterAllocationDetail:
    printer_id: str
    printer_name: str
    eligible_demand: int
    allocated: int
    mounted_color: str | None = None


@dataclass(frozen=True)
class NightAllocationResult:
    for_date: date
    strategy: AllocationStrategy
    allocations: dict[str, int] = field(default_factory=dict)
    total_allocated: int = 0
    global_limit: int = 0
    is_constrained: bool = False
    details: list[PrinterAllocationDetail] = field(default_factory=list)
    validated_cycles: list[NightCycleCheck] = field(default_factory=list)


def material_by_color(inventory: Sequence[ColorInventoryItem]) -> dict[str, float]:
    """Normalized color key -> grams on hand (all materials summed)."""
    out: dict[str, float] = {}
    for item in inventory:
        key = inventory_key(item.color)
        out[key] = out.get(key, 0.0) + item.total_grams
    return out


def _check_demand(
    demand: NightDemand,
    printer: Printer | None,
    window: NightWindow,
    material: Mapping[str, float],
    consumed: dict[str, float],
) -> NightCycleCheck:
    if printer is None or not printer.can_run_after_hours:
        return NightCycleCheck(demand, False, "printer_cannot_run_at_night")

    if not printer.has_multi_material and printer.mounted_color:
        if normalize_color(printer.mounted_color) != normalize_color(demand.color):
            return NightCycleCheck(
                demand,
                False,
                "color_lock_night",
                f"printer has {printer.mounted_color}, project needs {demand.color}",
            )

    if not demand.preset_allows_night:
        return NightCycleCheck(demand, False, "preset_not_allowed_for_night")

    if demand.cycle_hours > window.total_hours:
        return NightCycleCheck(
            demand,
            False,
            "cycle_too_long",
            f"{demand.cycle_hours:g}h > {window.total_hours:g}h night window",
        )

    key = inventory_key(demand.color)
    remaining = material.get(key, 0.0) - consumed.get(key, 0.0)
    if remaining < demand.grams_needed:
        return NightCycleCheck(
            demand,
            False,
            "material_insufficient",
            f"need {demand.grams_needed:g}g, have {remaining:g}g",
        )
    consumed[key] = consumed.get(key, 0.0) + demand.grams_needed
    return NightCycleCheck(demand, True)


def _empty_result(for_date: date, strategy: AllocationStrategy, settings: FactorySettings) -> NightAllocationResult:
    return NightAllocationResult(for_date=for_date, strategy=strategy, global_limit=settings.global_plate_inventory)


def _finish(
    for_date: date,
    strategy: AllocationStrategy,
    printers: Sequence[Printer],
    demand_counts: dict[str, int],
    settings: FactorySettings,
    checks: list[NightCycleCheck],
) -> NightAllocationResult:
    capacities = {p.id: p.hardware_plate_capacity for p in printers if p.id in demand_counts}
    allocations = allocate_plates_round_robin(demand_counts, capacities, settings.global_plate_inventory)
    total = sum(allocations.values())
    details = [
        PrinterAllocationDetail(
            printer_id=p.id,
            printer_name=p.name,
            eligible_demand=demand_counts.get(p.id, 0),
            allocated=allocations.get(p.id, 0),
            mounted_color=p.mounted_color,
        )
        for p in printers
    ]
    return NightAllocationResult(
        for_date=for_date,
        strategy=strategy,
        allocations=allocations,
        total_allocated=total,
        global_limit=settings.global_plate_inventory,
        is_constrained=total >= settings.global_plate_inventory,
        details=details,
        validated_cycles=checks,
    )


def _allocate_from_demand(
    for_date: date,
    window: NightWindow,
    printers: Sequence[Printer],
    demands: Sequence[NightDemand],
    material: Mapping[str, float],
    settings: FactorySettings,
    log: DecisionLog,
) -> NightAllocationResult:
    by_id = {p.id: p for p in printers}
    consumed: dict[str, float] = {}
    checks: list[NightCycleCheck] = []
    counts: dict[str, int] = {}

    for demand in demands:
        check = _check_demand(demand, by_id.get(demand.printer_id), window, material, consumed)
        checks.append(check)
        if check.is_eligible:
            counts[demand.printer_id] = counts.get(demand.printer_id, 0) + 1
        else:
            log.emit(
                "skip",
                check.reason or "ineligible",
                f"{demand.project_name} not eligible for night on {demand.printer_id}: {check.detail or check.reason}",
                printer_id=demand.printer_id,
                project_id=demand.project_id,
            )

    return _finish(for_date, STRATEGY_DEMAND, printers, counts, settings, checks)


def _allocate_from_time(
    for_date: date,
    window: NightWindow,
    printers: Sequence[Printer],
    settings: FactorySettings,
    log: DecisionLog,
) -> NightAllocationResult:
    max_cycles = math.floor(window.total_hours / AVERAGE_CYCLE_HOURS)
    log.emit(
        "degraded_strategy",
        "time_based_estimate",
        f"Night allocation for {for_date.isoformat()} estimated from time only ({max_cycles} cycle(s) per printer)",
        night_hours=window.total_hours,
    )
    counts: dict[str, int] = {}
    for printer in printers:
        if not printer.can_run_after_hours:
            continue
        possible = min(max_cycles, printer.hardware_plate_capacity)
        if possible > 0:
            counts[printer.id] = possible
    return _finish(for_date, STRATEGY_TIME, printers, counts, settings, [])


def calculate_night_allocation(
    for_date: date,
    printers: Sequence[Printer],
    demands: Sequence[NightDemand] | None,
    material: Mapping[str, float],
    settings: FactorySettings,
    strategy: AllocationStrategy = STRATEGY_DEMAND,
    log: DecisionLog | None = None,
) -> NightAllocationResult:
    """Plates per printer for the night starting on for_date.

    The time-based strategy ignores color and material and only exists for
    running without demand data; passing demands=None forces it.
    """
    log = log if log is not None else DecisionLog()
    window = WorkCalendar(settings).night_window(for_date)
    if demands is None:
        strategy = STRATEGY_TIME
    if strategy not in (STRATEGY_DEMAND, STRATEGY_TIME):
        raise ValueError(f"Unknown allocation strategy: {strategy!r}")
    if window.mode == "none":
        return _empty_result(for_date, strategy, settings)

    if strategy == STRATEGY_TIME:
        result = _allocate_from_time(for_date, window, printers, settings, log)
    else:
        result = _allocate_from_demand(for_date, window, printers, demands or [], material, settings, log)

    if result.is_constrained:
        log.emit(
            "allocation",
            "global_plate_cap_reached",
            f"Night {for_date.isoformat()}: {result.total_allocated}/{result.global_limit} plates allocated",
        )
    logger.info(
        "Night allocation %s (%s): %d plate(s) over %d printer(s)",
        for_date.isoformat(),
        result.strategy,
        result.total_allocated,
        sum(1 for n in result.allocations.values() if n > 0),
    )
    return result


def demand_fingerprint(
    printers: Sequence[Printer],
    demands: Sequence[NightDemand],
    material: Mapping[str, float],
    strategy: AllocationStrategy,
    settings: FactorySettings,
) -> tuple:
    """Hashable summary of everything a night allocation is computed from."""
    return (
        strategy,
        json.dumps(settings.to_dict(), sort_keys=True),
        tuple(
            (p.id, p.can_run_after_hours, p.hardware_plate_capacity, normalize_color(p.mounted_color))
            for p in printers
        ),
        tuple(
            (d.printer_id, inventory_key(d.color), d.cycle_hours, d.grams_needed, d.preset_allows_night)
            for d in demands
        ),
        tuple(sorted(material.items())),
    )


class NightAllocationCache:
    """Per-date allocation snapshots shared by the planner and reporting.

    An entry is reused until invalidated, recomputed with force=True, or
    asked for with a different demand fingerprint.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[Hashable, NightAllocationResult]] = {}

    @staticmethod
    def key_for(d: date) -> str:
        return d.isoformat()

    def get(self, date_key: str) -> NightAllocationResult | None:
        with self._lock:
            entry = self._entries.get(date_key)
        return entry[1] if entry else None

    def get_or_compute(
        self,
        date_key: str,
        compute: Callable[[], NightAllocationResult],
        *,
        force: bool = False,
        fingerprint: Hashable = None,
    ) -> NightAllocationResult:
        if not force:
            with self._lock:
                entry = self._entries.get(date_key)
            if entry is not None:
                cached_fingerprint, cached = entry
                if fingerprint is None or cached_fingerprint == fingerprint:
                    logger.debug("Using cached night allocation for %s", date_key)
                    return cached
                logger.info("Night demand for %s changed; recomputing allocation", date_key)
        result = compute()
        with self._lock:
            self._entries[date_key] = (fingerprint, result)
        return result

    def invalidate(self, date_key: str) -> bool:
        with self._lock:
            return self._entries.pop(date_key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, date_key: str) -> bool:
        with self._lock:
            return date_key in self._entries


@dataclass(frozen=True)
class PreloadCycleDetail:
    cycle_id: str
    project_id: str
    cycle_hours: float
    color: str
    grams_needed: float | None


@dataclass(frozen=True)
class NightPreloadPlan:
    printer_id: str
    printer_name: str
    demand_plates: int
    allocated_plates: int
    deferred_cycles: int
    night_cycle_count: int
    total_night_hours: float
    night_window: NightWindow
    mounted_color: str | None
    has_multi_material: bool
    total_grams_needed: float | None
    cycles: list[PreloadCycleDetail] = field(default_factory=list)


@dataclass(frozen=True)
class NightPreloadSummary:
    date: date
    printers: list[NightPreloadPlan]
    total_needed: int
    total_allocated: int
    total_deferred: int
    global_plate_inventory: int
    global_plate_capacity: int
    has_night_work: bool
    is_globally_constrained: bool


def calculate_night_preload(
    for_date: date,
    cycles: Sequence[PlannedCycle],
    printers: Sequence[Printer],
    settings: FactorySettings,
) -> NightPreloadSummary:
    """What the operator should preload tonight, per printer."""
    window = WorkCalendar(settings).night_window(for_date)
    capacity = sum(p.hardware_plate_capacity for p in printers)
    if window.mode == "none":
        return NightPreloadSummary(
            date=for_date,
            printers=[],
            total_needed=0,
            total_allocated=0,
            total_deferred=0,
            global_plate_inventory=settings.global_plate_inventory,
            global_plate_capacity=capacity,
            has_night_work=False,
            is_globally_constrained=False,
        )

    by_printer: dict[str, list[PlannedCycle]] = {}
    for cycle in cycles:
        if cycle.start is None or cycle.status not in ("planned", "in_progress"):
            continue
        if window.contains(cycle.start):
            by_printer.setdefault(cycle.printer_id, []).append(cycle)
    for items in by_printer.values():
        items.sort(key=lambda c: (c.start, c.id))

    demands = {p.id: len(by_printer[p.id]) for p in printers if by_printer.get(p.id)}
    capacities = {p.id: p.hardware_plate_capacity for p in printers if p.id in demands}
    allocations = allocate_plates_round_robin(demands, capacities, settings.global_plate_inventory)

    plans: list[NightPreloadPlan] = []
    for printer in printers:
        printer_cycles = by_printer.get(printer.id)
        if not printer_cycles:
            continue
        demand = len(printer_cycles)
        allocated = allocations.get(printer.id, 0)
        details = [
            PreloadCycleDetail(
                cycle_id=c.id,
                project_id=c.project_id,
                cycle_hours=c.duration_hours if c.duration_hours is not None else AVERAGE_CYCLE_HOURS,
                color=c.required_color,
                grams_needed=c.grams_planned,
            )
            for c in printer_cycles[:allocated]
        ]
        grams_known = all(d.grams_needed is not None for d in details)
        plans.append(
            NightPreloadPlan(
                printer_id=printer.id,
                printer_name=printer.name,
                demand_plates=demand,
                allocated_plates=allocated,
                deferred_cycles=demand - allocated,
                night_cycle_count=allocated,
                total_night_hours=sum(d.cycle_hours for d in details),
                night_window=window,
                mounted_color=printer.mounted_color,
                has_multi_material=printer.has_multi_material,
                total_grams_needed=sum(d.grams_needed or 0.0 for d in details) if grams_known else None,
                cycles=details,
            )
        )

    total_needed = sum(p.demand_plates for p in plans)
    return NightPreloadSummary(
        date=for_date,
        printers=plans,
        total_needed=total_needed,
        total_allocated=sum(p.allocated_plates for p in plans),
        total_deferred=sum(p.deferred_cycles for p in plans),
        global_plate_inventory=settings.global_plate_inventory,
        global_plate_capacity=capacity,
        has_night_work=bool(plans),
        is_globally_constrained=total_needed > settings.global_plate_inventory,
    )


@dataclass(frozen=True)
class AllocationSummary:
    global_inventory: int
    total_demand: int
    total_allocated: int
    utilization_percent: int
    is_constrained: bool
    constraint_message: str | None = None


def allocation_summary(summary: NightPreloadSummary) -> AllocationSummary:
    utilization = 0
    if summary.global_plate_inventory > 0:
        utilization = round(summary.total_allocated / summary.global_plate_inventory * 100)
    message = None
    if summary.is_globally_constrained:
        message = f"Global plate limit: {summary.total_deferred} cycle(s) deferred to the next day"
    return AllocationSummary(
        global_inventory=summary.global_plate_inventory,
        total_demand=summary.total_needed,
        total_allocated=summary.total_allocated,
        utilization_percent=utilization,
        is_constrained=summary.is_globally_constrained,
        constraint_message=message,
    )


def is_night_preload_time(now: datetime, settings: FactorySettings) -> bool:
    """True within PRELOAD_LEAD_HOURS of tonight's window start, or inside it."""
    window = WorkCalendar(settings).night_window(now.date())
    if window.mode == "none":
        return False
    return hours_between(now, window.start) <= PRELOAD_LEAD_HOURS or now >= window.start
