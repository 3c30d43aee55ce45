from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, time
from typing import Any, Literal

NightMode = Literal["none", "one_cycle", "full"]
RiskLevel = Literal["ok", "tight", "at_risk", "impossible"]
CycleStatus = Literal["planned", "in_progress", "completed", "cancelled", "failed"]
CycleSource = Literal["auto", "manual"]
EndOfDaySource = Literal["end_of_work_hours", "next_workday_start"]

AFTER_HOURS_NONE = "NONE"
AFTER_HOURS_ONE_CYCLE = "ONE_CYCLE_END_OF_DAY"
AFTER_HOURS_FULL = "FULL_AUTOMATION"

_NIGHT_MODE_BY_BEHAVIOR: dict[str, NightMode] = {
    AFTER_HOURS_NONE: "none",
    AFTER_HOURS_ONE_CYCLE: "one_cycle",
    AFTER_HOURS_FULL: "full",
}

# Python weekday() order (Monday == 0)
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

TERMINAL_STATUSES = frozenset({"completed", "cancelled"})


class PlanningError(ValueError):
    """Raised for malformed planning inputs (not for infeasible plans)."""


class CycleTransitionError(PlanningError):
    pass


def night_mode_for(after_hours_behavior: str) -> NightMode:
    behavior = str(after_hours_behavior or "").strip().upper()
    if behavior not in _NIGHT_MODE_BY_BEHAVIOR:
        raise PlanningError(f"Unknown after-hours behavior: {after_hours_behavior!r}")
    return _NIGHT_MODE_BY_BEHAVIOR[behavior]


def parse_time_of_day(value: str) -> time:
    """Parse "HH:MM" (also accepts "HH:MM:SS")."""
    s = str(value or "").strip()
    parts = s.split(":")
    if len(parts) not in (2, 3):
        raise PlanningError(f"Invalid time of day: {value!r}")
    try:
        hh, mm = int(parts[0]), int(parts[1])
    except ValueError as exc:
        raise PlanningError(f"Invalid time of day: {value!r}") from exc
    if not (0 <= hh <= 23 and 0 <= mm <= 59):
        raise PlanningError(f"Invalid time of day: {value!r}")
    return time(hour=hh, minute=mm)


@dataclass(frozen=True)
class DaySchedule:
    enabled: bool
    start_time: str = "08:30"
    end_time: str = "17:30"

    @property
    def start(self) -> time:
        return parse_time_of_day(self.start_time)

    @property
    def end(self) -> time:
        return parse_time_of_day(self.end_time)

    @property
    def crosses_midnight(self) -> bool:
        return self.end < self.start

    def to_dict(self) -> dict[str, Any]:
        return {"enabled": bool(self.enabled), "start": self.start_time, "end": self.end_time}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DaySchedule:
        return cls(
            enabled=bool(raw.get("enabled", False)),
            start_time=str(raw.get("start") or "08:30"),
            end_time=str(raw.get("end") or "17:30"),
        )


@dataclass(frozen=True)
class WeeklySchedule:
    """One DaySchedule per weekday."""

    monday: DaySchedule
    tuesday: DaySchedule
    wednesday: DaySchedule
    thursday: DaySchedule
    friday: DaySchedule
    saturday: DaySchedule
    sunday: DaySchedule

    @classmethod
    def default(cls) -> WeeklySchedule:
        # Sunday-Thursday full days, short Friday, Saturday off.
        work = DaySchedule(enabled=True, start_time="08:30", end_time="17:30")
        return cls(
            sunday=work,
            monday=work,
            tuesday=work,
            wednesday=work,
            thursday=work,
            friday=DaySchedule(enabled=True, start_time="09:00", end_time="14:00"),
            saturday=DaySchedule(enabled=False, start_time="09:00", end_time="14:00"),
        )

    def for_date(self, d: date) -> DaySchedule:
        return getattr(self, WEEKDAYS[d.weekday()])

    def to_dict(self) -> dict[str, Any]:
        return {name: getattr(self, name).to_dict() for name in WEEKDAYS}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> WeeklySchedule:
        base = cls.default()
        days = {}
        for name in WEEKDAYS:
            day_raw = raw.get(name)
            days[name] = DaySchedule.from_dict(day_raw) if isinstance(day_raw, dict) else getattr(base, name)
        return cls(**days)


@dataclass(frozen=True)
class ScheduleOverride:
    """Temporary per-weekday schedule replacement for [start_date, end_date]."""

    start_date: date
    end_date: date
    days: dict[str, DaySchedule] = field(default_factory=dict)
    note: str = ""

    def applies_to(self, d: date) -> bool:
        return self.start_date <= d <= self.end_date

    def for_date(self, d: date) -> DaySchedule | None:
        return self.days.get(WEEKDAYS[d.weekday()])

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "days": {k: v.to_dict() for k, v in self.days.items()},
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ScheduleOverride:
        return cls(
            start_date=date.fromisoformat(str(raw["start_date"])),
            end_date=date.fromisoformat(str(raw["end_date"])),
            days={str(k): DaySchedule.from_dict(v) for k, v in (raw.get("days") or {}).items()},
            note=str(raw.get("note") or ""),
        )


@dataclass(frozen=True)
class FactorySettings:
    weekly_schedule: WeeklySchedule = field(default_factory=WeeklySchedule.default)
    after_hours_behavior: str = AFTER_HOURS_NONE
    global_plate_inventory: int = 50
    material_lead_time_hours: int = 72
    standard_spool_grams: int = 1000
    transition_minutes: int = 10
    overrides: tuple[ScheduleOverride, ...] = ()

    @property
    def night_mode(self) -> NightMode:
        return night_mode_for(self.after_hours_behavior)

    def to_dict(self) -> dict[str, Any]:
        return {
            "weekly_schedule": self.weekly_schedule.to_dict(),
            "after_hours_behavior": self.after_hours_behavior,
            "global_plate_inventory": self.global_plate_inventory,
            "material_lead_time_hours": self.material_lead_time_hours,
            "standard_spool_grams": self.standard_spool_grams,
            "transition_minutes": self.transition_minutes,
            "overrides": [o.to_dict() for o in self.overrides],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> FactorySettings:
        behavior = str(raw.get("after_hours_behavior") or AFTER_HOURS_NONE).strip().upper()
        night_mode_for(behavior)
        return cls(
            weekly_schedule=WeeklySchedule.from_dict(raw.get("weekly_schedule") or {}),
            after_hours_behavior=behavior,
            global_plate_inventory=int(raw.get("global_plate_inventory", 50)),
            material_lead_time_hours=int(raw.get("material_lead_time_hours", 72)),
            standard_spool_grams=int(raw.get("standard_spool_grams", 1000)),
            transition_minutes=int(raw.get("transition_minutes", 10)),
            overrides=tuple(ScheduleOverride.from_dict(o) for o in raw.get("overrides") or []),
        )


@dataclass(frozen=True)
class NightWindow:
    """Derived interval between end of work hours and the next workday start."""

    start: datetime
    end: datetime
    total_hours: float
    is_weekend_night: bool
    mode: NightMode

    def contains(self, ts: datetime) -> bool:
        return self.total_hours > 0 and self.start <= ts < self.end


@dataclass(frozen=True)
class Printer:
    id: str
    name: str
    has_multi_material: bool = False
    can_run_after_hours: bool = True
    hardware_plate_capacity: int = 8
    mounted_color: str | None = None


@dataclass(frozen=True)
class Preset:
    id: str
    units_per_cycle: int
    cycle_hours: float
    allowed_at_night: bool = True
    risk_level: str = "low"


@dataclass(frozen=True)
class Project:
    id: str
    name: str
    color: str
    due_date: datetime
    remaining_units: int
    urgency: str = "normal"
    preset_id: str | None = None
    grams_per_unit: float = 0.0
    material: str = "PLA"
    custom_cycle_hours: float | None = None
    # Durable id in the canonical store; None until the project is created there.
    ref: str | None = None


@dataclass(frozen=True)
class ColorInventoryItem:
    color: str
    material: str = "PLA"
    closed_spool_count: int = 0
    closed_spool_grams: float = 1000.0
    open_grams: float = 0.0

    @property
    def total_grams(self) -> float:
        return self.closed_spool_count * self.closed_spool_grams + self.open_grams


_TRANSITIONS: dict[str, tuple[frozenset[str], CycleStatus]] = {
    "start": (frozenset({"planned"}), "in_progress"),
    "complete": (frozenset({"planned", "in_progress"}), "completed"),
    "fail": (frozenset({"in_progress"}), "failed"),
    "cancel": (frozenset({"planned", "in_progress", "failed"}), "cancelled"),
}


@dataclass(frozen=True)
class PlannedCycle:
    id: str
    project_id: str
    printer_id: str
    start: datetime | None
    end: datetime | None
    required_color: str
    required_material: str = "PLA"
    grams_planned: float | None = None
    units_planned: int = 0
    status: CycleStatus = "planned"
    source: CycleSource = "auto"
    locked: bool = False
    preset_id: str | None = None
    plan_version: str | None = None

    @property
    def duration_hours(self) -> float | None:
        if self.start is None or self.end is None:
            return None
        return (self.end - self.start).total_seconds() / 3600.0

    @property
    def is_syncable(self) -> bool:
        """Cycles that belong in a published plan."""
        if self.status in ("planned", "in_progress"):
            return True
        return self.locked and self.source == "manual"

    def _transition(self, action: str) -> PlannedCycle:
        allowed, target = _TRANSITIONS[action]
        if self.status in TERMINAL_STATUSES:
            raise CycleTransitionError(f"Cycle {self.id} is {self.status} and cannot {action}")
        if self.status not in allowed:
            raise CycleTransitionError(f"Cycle {self.id}: cannot {action} from status {self.status}")
        return replace(self, status=target)

    def start_cycle(self) -> PlannedCycle:
        return self._transition("start")

    def complete(self) -> PlannedCycle:
        return self._transition("complete")

    def fail(self) -> PlannedCycle:
        return self._transition("fail")

    def cancel(self) -> PlannedCycle:
        return self._transition("cancel")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "printer_id": self.printer_id,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "required_color": self.required_color,
            "required_material": self.required_material,
            "grams_planned": self.grams_planned,
            "units_planned": self.units_planned,
            "status": self.status,
            "source": self.source,
            "locked": bool(self.locked),
            "preset_id": self.preset_id,
            "plan_version": self.plan_version,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PlannedCycle:
        start = raw.get("start")
        end = raw.get("end")
        grams = raw.get("grams_planned")
        return cls(
            id=str(raw["id"]),
            project_id=str(raw["project_id"]),
            printer_id=str(raw["printer_id"]),
            start=datetime.fromisoformat(start) if start else None,
            end=datetime.fromisoformat(end) if end else None,
            required_color=str(raw.get("required_color") or ""),
            required_material=str(raw.get("required_material") or "PLA"),
            grams_planned=float(grams) if grams is not None else None,
            units_planned=int(raw.get("units_planned") or 0),
            status=raw.get("status") or "planned",
            source=raw.get("source") or "auto",
            locked=bool(raw.get("locked")),
            preset_id=raw.get("preset_id"),
            plan_version=raw.get("plan_version"),
        )


@dataclass(frozen=True)
class PlateRelease:
    cycle_id: str
    release_at: datetime


@dataclass
class PrinterTimeSlot:
    """Mutable per-printer cursor owned by one allocation pass."""

    printer_id: str
    printer_name: str
    current_time: datetime
    work_day_start: datetime
    end_of_work_hours: datetime
    end_of_day: datetime
    can_run_night: bool
    plate_capacity: int
    plates_in_use: list[PlateRelease] = field(default_factory=list)
    end_of_day_source: EndOfDaySource = "end_of_work_hours"
    end_of_day_reason: str = ""

    def plates_available_at(self, ts: datetime) -> int:
        busy = sum(1 for p in self.plates_in_use if p.release_at > ts)
        return max(0, self.plate_capacity - busy)

    def release_plates_until(self, ts: datetime) -> int:
        """Drop plates already released at ts; returns how many were freed."""
        before = len(self.plates_in_use)
        self.plates_in_use = [p for p in self.plates_in_use if p.release_at > ts]
        return before - len(self.plates_in_use)


@dataclass(frozen=True)
class DeadlineAllocation:
    project_id: str
    project_name: str
    due_date: datetime
    remaining_units: int
    units_per_cycle: int
    cycle_hours: float
    required_cycles: int
    required_hours: float
    available_hours: float
    min_printers_needed: int
    margin_hours: float
    risk_level: RiskLevel
    daily_target_units: int


@dataclass(frozen=True)
class AuditEntry:
    id: int
    timestamp: str
    category: str
    message: str
    details: str | None = None
