"""Phase A: minimum printer allocation per project to hit its deadline."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Mapping, Sequence

from printplan.core.calendar import WorkCalendar, hours_between
from printplan.core.events import DecisionLog
from printplan.core.models import AFTER_HOURS_FULL, DeadlineAllocation, FactorySettings, Preset, Project, RiskLevel

TIGHT_MARGIN_HOURS = 8.0
AT_RISK_MARGIN_HOURS = 0.0
MAX_PLANNING_DAYS = 14

_RISK_ORDER: dict[str, int] = {"impossible": 0, "at_risk": 1, "tight": 2, "ok": 3}
CRITICAL_RISKS = frozenset({"at_risk", "impossible"})


@dataclass(frozen=True)
class PhaseAResult:
    allocations: list[DeadlineAllocation] = field(default_factory=list)
    total_printers_needed: int = 0
    critical_projects: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def by_project(self) -> dict[str, DeadlineAllocation]:
        return {a.project_id: a for a in self.allocations}


def calculate_available_hours(start: datetime, end: datetime, calendar: WorkCalendar) -> float:
    """Work hours inside [start, end], day by day, plus full night windows under full automation."""
    settings = calendar.settings
    total = 0.0
    current = start
    days_checked = 0
    while current < end and days_checked < MAX_PLANNING_DAYS:
        window = calendar.work_window(current.date())
        if window is not None:
            day_start = max(window[0], start)
            day_end = min(window[1], end)
            if day_end > day_start:
                day_hours = hours_between(day_start, day_end)
                if settings.after_hours_behavior == AFTER_HOURS_FULL:
                    night = calendar.night_window(current.date())
                    if night.mode == "full":
                        day_hours += night.total_hours
                total += day_hours
        current = datetime.combine(current.date() + timedelta(days=1), datetime.min.time())
        days_checked += 1
    return total


def classify_risk(margin_hours: float, required_hours: float, available_hours: float, printer_count: int) -> RiskLevel:
    if margin_hours < AT_RISK_MARGIN_HOURS:
        return "impossible" if required_hours > available_hours * printer_count else "at_risk"
    if margin_hours < TIGHT_MARGIN_HOURS:
        return "tight"
    return "ok"


def total_printers_needed(allocations: Sequence[DeadlineAllocation]) -> int:
    """Critical projects need their own printers; slack projects share."""
    critical = 0
    shared = 0
    for alloc in allocations:
        if alloc.risk_level in CRITICAL_RISKS:
            critical += alloc.min_printers_needed
        else:
            shared = max(shared, alloc.min_printers_needed)
    return critical + shared


def calculate_deadline_allocations(
    projects: Sequence[Project],
    presets: Mapping[str, Preset],
    printer_count: int,
    settings: FactorySettings,
    now: datetime,
    log: DecisionLog | None = None,
) -> PhaseAResult:
    log = log if log is not None else DecisionLog()
    calendar = WorkCalendar(settings)
    allocations: list[DeadlineAllocation] = []
    critical: list[str] = []
    warnings: list[str] = []

    for project in projects:
        if project.remaining_units <= 0:
            continue

        if project.due_date <= now:
            msg = f'Project "{project.name}" has passed deadline'
            warnings.append(msg)
            critical.append(project.id)
            log.emit("warning", "deadline_passed", msg, project_id=project.id)
            continue

        preset = presets.get(project.preset_id) if project.preset_id else None
        if preset is None or preset.units_per_cycle <= 0:
            msg = f'Project "{project.name}" has no usable preset'
            warnings.append(msg)
            log.emit("skip", "missing_preset", msg, project_id=project.id, preset_id=project.preset_id)
            continue

        cycle_hours = project.custom_cycle_hours if project.custom_cycle_hours is not None else preset.cycle_hours
        required_cycles = math.ceil(project.remaining_units / preset.units_per_cycle)
        required_hours = required_cycles * cycle_hours
        available = calculate_available_hours(now, project.due_date, calendar)

        if available > 0:
            min_printers = math.ceil(required_hours / available)
        elif required_hours > 0:
            min_printers = printer_count
        else:
            min_printers = 1
        min_printers = min(min_printers, printer_count)

        margin = available * min_printers - required_hours
        risk = classify_risk(margin, required_hours, available, printer_count)
        if risk in CRITICAL_RISKS:
            critical.append(project.id)
        if risk == "impossible":
            msg = f'Project "{project.name}" cannot meet its deadline ({required_hours:.1f}h needed)'
            warnings.append(msg)
            log.emit("warning", "deadline_impossible", msg, project_id=project.id, margin_hours=margin)

        days = max(1, math.ceil((project.due_date - now).total_seconds() / 86400))
        allocations.append(
            DeadlineAllocation(
                project_id=project.id,
                project_name=project.name,
                due_date=project.due_date,
                remaining_units=project.remaining_units,
                units_per_cycle=preset.units_per_cycle,
                cycle_hours=cycle_hours,
                required_cycles=required_cycles,
                required_hours=required_hours,
                available_hours=available,
                min_printers_needed=min_printers,
                margin_hours=margin,
                risk_level=risk,
                daily_target_units=math.ceil(project.remaining_units / days),
            )
        )

    allocations.sort(key=lambda a: (_RISK_ORDER[a.risk_level], a.due_date))
    return PhaseAResult(
        allocations=allocations,
        total_printers_needed=total_printers_needed(allocations),
        critical_projects=critical,
        warnings=warnings,
    )
