"""Phase B: separate day and night cycles and prune unsafe night sequences."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Mapping, Sequence

from printplan.core.calendar import WorkCalendar
from printplan.core.colors import inventory_key, normalize_color
from printplan.core.events import DecisionLog
from printplan.core.models import (
    ColorInventoryItem,
    DeadlineAllocation,
    FactorySettings,
    NightWindow,
    PlannedCycle,
    PrinterTimeSlot,
)
from printplan.planner.filament import NightValidationResult, validate_night_filament_budget


@dataclass(frozen=True)
class SkippedNightCycle:
    printer_id: str
    printer_name: str
    reason: str
    color: str
    cycle_id: str
    night_start: datetime | None = None


@dataclass(frozen=True)
class PhaseBInput:
    allocations: Sequence[DeadlineAllocation]
    printer_slots: Sequence[PrinterTimeSlot]
    cycles: Sequence[PlannedCycle]
    settings: FactorySettings
    inventory: Mapping[str, ColorInventoryItem]
    planning_start: datetime


@dataclass(frozen=True)
class PhaseBResult:
    cycles: list[PlannedCycle] = field(default_factory=list)
    night_validations: dict[tuple[str, date], NightValidationResult] = field(default_factory=dict)
    skipped_nights: list[SkippedNightCycle] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def night_color(cycles: Sequence[PlannedCycle]) -> str | None:
    """Most common required color (first seen wins ties)."""
    if not cycles:
        return None
    counts = Counter(c.required_color or "" for c in cycles)
    return counts.most_common(1)[0][0]


def filter_by_color(cycles: Sequence[PlannedCycle], color: str) -> list[PlannedCycle]:
    key = normalize_color(color)
    return [c for c in cycles if normalize_color(c.required_color) == key]


def lookup_inventory(inventory: Mapping[str, ColorInventoryItem], color: str | None) -> ColorInventoryItem | None:
    key = inventory_key(color)
    if key in inventory:
        return inventory[key]
    for item in inventory.values():
        if inventory_key(item.color) == key:
            return item
    return None


def _sort_key(cycle: PlannedCycle):
    return (cycle.start or datetime.min, cycle.id)


def validate_night_cycles(data: PhaseBInput, log: DecisionLog | None = None) -> PhaseBResult:
    log = log if log is not None else DecisionLog()
    calendar = WorkCalendar(data.settings)
    result = PhaseBResult()

    by_printer: dict[str, list[PlannedCycle]] = {}
    for cycle in data.cycles:
        by_printer.setdefault(cycle.printer_id, []).append(cycle)

    known = {slot.printer_id for slot in data.printer_slots}
    for printer_id in sorted(set(by_printer) - known):
        for cycle in by_printer[printer_id]:
            _skip(result, log, printer_id, printer_id, "unknown_printer", cycle, None)
        result.warnings.append(f"Printer {printer_id}: no time slot, {len(by_printer[printer_id])} cycle(s) dropped")

    for slot in data.printer_slots:
        printer_cycles = sorted(by_printer.get(slot.printer_id, []), key=_sort_key)
        if not printer_cycles:
            continue

        nights: dict[datetime, tuple[NightWindow, list[PlannedCycle]]] = {}
        for cycle in printer_cycles:
            window = calendar.night_window_containing(cycle.start) if cycle.start is not None else None
            if window is None:
                result.cycles.append(cycle)
                continue
            nights.setdefault(window.start, (window, []))[1].append(cycle)

        for night_start in sorted(nights):
            window, night_cycles = nights[night_start]
            _validate_night(result, log, data, slot, window, night_cycles)

    return result


def _validate_night(
    result: PhaseBResult,
    log: DecisionLog,
    data: PhaseBInput,
    slot: PrinterTimeSlot,
    window: NightWindow,
    night_cycles: list[PlannedCycle],
) -> None:
    if window.mode == "none":
        for cycle in night_cycles:
            _skip(result, log, slot.printer_id, slot.printer_name, "no_night_mode", cycle, window)
        return

    to_validate = night_cycles
    if window.mode == "one_cycle" and len(night_cycles) > 1:
        to_validate = night_cycles[:1]
        result.warnings.append(
            f"Printer {slot.printer_name}: Limited to 1 night cycle (ONE_CYCLE_END_OF_DAY mode)"
        )
        for cycle in night_cycles[1:]:
            _skip(result, log, slot.printer_id, slot.printer_name, "one_cycle_mode_limit", cycle, window)

    color = to_validate[0].required_color or ""
    inventory = lookup_inventory(data.inventory, color)
    validation = validate_night_filament_budget(to_validate, inventory, window, data.settings)
    result.night_validations[(slot.printer_id, window.start.date())] = validation

    if validation.can_plan_night:
        result.cycles.extend(to_validate)
        return

    for cycle in to_validate:
        _skip(result, log, slot.printer_id, slot.printer_name, validation.reason, cycle, window)
    msg = (
        f"Printer {slot.printer_name}: Night cycles skipped - {validation.reason} "
        f"(need {validation.grams_required:g}g, have {validation.grams_available:g}g)"
    )
    result.warnings.append(msg)
    log.emit(
        "rollback",
        validation.reason,
        msg,
        printer_id=slot.printer_id,
        color=color,
        shortfall=validation.shortfall,
        night_start=window.start.isoformat(),
    )


def _skip(
    result: PhaseBResult,
    log: DecisionLog,
    printer_id: str,
    printer_name: str,
    reason: str,
    cycle: PlannedCycle,
    window: NightWindow | None,
) -> None:
    color = cycle.required_color or ""
    result.skipped_nights.append(
        SkippedNightCycle(
            printer_id=printer_id,
            printer_name=printer_name,
            reason=reason,
            color=color,
            cycle_id=cycle.id,
            night_start=window.start if window is not None else None,
        )
    )
    log.emit(
        "skip",
        reason,
        f"Cycle {cycle.id} on {printer_name} not scheduled",
        printer_id=printer_id,
        project_id=cycle.project_id,
        cycle_id=cycle.id,
        color=color,
    )
