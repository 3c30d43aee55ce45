"""Planning inputs from an Excel workbook.

Sheets (names and headers are normalized, so "Remaining Units" works):

- projects: id, name, color, due_date, remaining_units, urgency, preset_id,
  grams_per_unit, material, custom_cycle_hours, ref
- presets: id, units_per_cycle, cycle_hours, allowed_at_night, risk_level
- printers: id, name, has_multi_material, can_run_after_hours,
  hardware_plate_capacity, mounted_color
- inventory: color, material, closed_spool_count, closed_spool_grams, open_grams
- cycles (optional): candidate cycles from the cycle generator
- schedule (optional): weekday, enabled, start, end
- settings (optional): key, value
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, TypeVar

import pandas as pd

from printplan.core.models import (
    WEEKDAYS,
    ColorInventoryItem,
    DaySchedule,
    FactorySettings,
    PlannedCycle,
    PlanningError,
    Preset,
    Printer,
    Project,
)
from printplan.data.excel_io import (
    coerce_datetime,
    coerce_float,
    coerce_optional_datetime,
    is_blank,
    parse_int_strict,
    read_workbook_sheets,
    to_bool,
    to_str,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

REQUIRED_SHEETS = ("projects", "presets", "printers", "inventory")

_COLUMN_ALIASES = {
    "ams": "has_multi_material",
    "multi_material": "has_multi_material",
    "night": "can_run_after_hours",
    "plates": "hardware_plate_capacity",
    "plate_capacity": "hardware_plate_capacity",
    "deadline": "due_date",
    "units": "remaining_units",
    "allowed_for_night_cycle": "allowed_at_night",
    "units_per_plate": "units_per_cycle",
}


class WorkbookError(ValueError):
    pass


@dataclass(frozen=True)
class WorkbookData:
    projects: list[Project] = field(default_factory=list)
    presets: dict[str, Preset] = field(default_factory=dict)
    printers: list[Printer] = field(default_factory=list)
    inventory: list[ColorInventoryItem] = field(default_factory=list)
    cycles: list[PlannedCycle] = field(default_factory=list)
    settings: FactorySettings | None = None


def _rows(df: pd.DataFrame) -> list[dict]:
    df = df.rename(columns={k: v for k, v in _COLUMN_ALIASES.items() if k in df.columns})
    return [r for r in df.to_dict(orient="records") if not all(is_blank(v) for v in r.values())]


def _parse_sheet(sheet: str, df: pd.DataFrame, parse: Callable[[dict], T]) -> list[T]:
    out: list[T] = []
    # Excel row numbers: header is row 1.
    for idx, row in enumerate(_rows(df), start=2):
        try:
            out.append(parse(row))
        except (ValueError, KeyError) as exc:
            raise WorkbookError(f"{sheet} row {idx}: {exc}") from exc
    return out


def _required_str(row: dict, key: str) -> str:
    value = to_str(row.get(key))
    if value is None:
        raise ValueError(f"{key} is empty")
    return value


def _parse_project(row: dict) -> Project:
    custom_hours = coerce_float(row.get("custom_cycle_hours"))
    return Project(
        id=_required_str(row, "id"),
        name=to_str(row.get("name")) or _required_str(row, "id"),
        color=_required_str(row, "color"),
        due_date=coerce_datetime(row.get("due_date"), field="due_date"),
        remaining_units=parse_int_strict(row.get("remaining_units"), field="remaining_units"),
        urgency=to_str(row.get("urgency")) or "normal",
        preset_id=to_str(row.get("preset_id")),
        grams_per_unit=coerce_float(row.get("grams_per_unit")) or 0.0,
        material=to_str(row.get("material")) or "PLA",
        custom_cycle_hours=custom_hours,
        ref=to_str(row.get("ref")),
    )


def _parse_preset(row: dict) -> Preset:
    units = parse_int_strict(row.get("units_per_cycle"), field="units_per_cycle")
    hours = coerce_float(row.get("cycle_hours"))
    if units <= 0:
        raise ValueError("units_per_cycle must be positive")
    if hours is None or hours <= 0:
        raise ValueError("cycle_hours must be positive")
    return Preset(
        id=_required_str(row, "id"),
        units_per_cycle=units,
        cycle_hours=hours,
        allowed_at_night=to_bool(row.get("allowed_at_night"), default=True),
        risk_level=to_str(row.get("risk_level")) or "low",
    )


def _parse_printer(row: dict) -> Printer:
    capacity = row.get("hardware_plate_capacity")
    return Printer(
        id=_required_str(row, "id"),
        name=to_str(row.get("name")) or _required_str(row, "id"),
        has_multi_material=to_bool(row.get("has_multi_material")),
        can_run_after_hours=to_bool(row.get("can_run_after_hours"), default=True),
        hardware_plate_capacity=8 if is_blank(capacity) else parse_int_strict(capacity, field="hardware_plate_capacity"),
        mounted_color=to_str(row.get("mounted_color")),
    )


def _parse_inventory(row: dict) -> ColorInventoryItem:
    spool_grams = coerce_float(row.get("closed_spool_grams"))
    count = row.get("closed_spool_count")
    return ColorInventoryItem(
        color=_required_str(row, "color"),
        material=to_str(row.get("material")) or "PLA",
        closed_spool_count=0 if is_blank(count) else parse_int_strict(count, field="closed_spool_count"),
        closed_spool_grams=1000.0 if spool_grams is None else spool_grams,
        open_grams=coerce_float(row.get("open_grams")) or 0.0,
    )


def _parse_cycle(row: dict) -> PlannedCycle:
    status = to_str(row.get("status")) or "planned"
    source = to_str(row.get("source")) or "auto"
    if status not in ("planned", "in_progress", "completed", "cancelled", "failed"):
        raise ValueError(f"status invalid: {status!r}")
    if source not in ("auto", "manual"):
        raise ValueError(f"source invalid: {source!r}")
    units = row.get("units_planned")
    return PlannedCycle(
        id=_required_str(row, "id"),
        project_id=_required_str(row, "project_id"),
        printer_id=_required_str(row, "printer_id"),
        start=coerce_optional_datetime(row.get("start"), field="start"),
        end=coerce_optional_datetime(row.get("end"), field="end"),
        required_color=to_str(row.get("required_color")) or "",
        required_material=to_str(row.get("required_material")) or "PLA",
        grams_planned=coerce_float(row.get("grams_planned")),
        units_planned=0 if is_blank(units) else parse_int_strict(units, field="units_planned"),
        status=status,
        source=source,
        locked=to_bool(row.get("locked")),
        preset_id=to_str(row.get("preset_id")),
    )


def _parse_settings(schedule_df: pd.DataFrame | None, settings_df: pd.DataFrame | None) -> FactorySettings | None:
    if schedule_df is None and settings_df is None:
        return None

    base = FactorySettings()
    weekly = base.weekly_schedule
    if schedule_df is not None:
        days = {}
        for idx, row in enumerate(_rows(schedule_df), start=2):
            name = (to_str(row.get("weekday")) or "").lower()
            if name not in WEEKDAYS:
                raise WorkbookError(f"schedule row {idx}: unknown weekday {name!r}")
            days[name] = DaySchedule(
                enabled=to_bool(row.get("enabled")),
                start_time=to_str(row.get("start")) or "08:30",
                end_time=to_str(row.get("end")) or "17:30",
            )
        weekly = replace(weekly, **days)

    raw: dict = base.to_dict()
    raw["weekly_schedule"] = weekly.to_dict()
    if settings_df is not None:
        for row in _rows(settings_df):
            key = to_str(row.get("key"))
            if key:
                raw[key.strip().lower()] = to_str(row.get("value"))
    try:
        return FactorySettings.from_dict({k: v for k, v in raw.items() if v is not None})
    except (PlanningError, ValueError, TypeError) as exc:
        raise WorkbookError(f"settings: {exc}") from exc


def parse_frames(frames: dict[str, pd.DataFrame]) -> WorkbookData:
    missing = [s for s in REQUIRED_SHEETS if s not in frames]
    if missing:
        raise WorkbookError(f"Missing sheet(s): {', '.join(missing)}")

    presets = _parse_sheet("presets", frames["presets"], _parse_preset)
    data = WorkbookData(
        projects=_parse_sheet("projects", frames["projects"], _parse_project),
        presets={p.id: p for p in presets},
        printers=_parse_sheet("printers", frames["printers"], _parse_printer),
        inventory=_parse_sheet("inventory", frames["inventory"], _parse_inventory),
        cycles=_parse_sheet("cycles", frames["cycles"], _parse_cycle) if "cycles" in frames else [],
        settings=_parse_settings(frames.get("schedule"), frames.get("settings")),
    )
    logger.info(
        "Workbook loaded: %d project(s), %d preset(s), %d printer(s), %d inventory row(s), %d cycle(s)",
        len(data.projects),
        len(data.presets),
        len(data.printers),
        len(data.inventory),
        len(data.cycles),
    )
    return data


def load_workbook(path: Path) -> WorkbookData:
    path = Path(path)
    if not path.exists():
        raise WorkbookError(f"Workbook not found: {path}")
    return parse_frames(read_workbook_sheets(path))
