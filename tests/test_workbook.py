from __future__ import annotations

from datetime import datetime

import pandas as pd
import pytest
from openpyxl import Workbook

from printplan.data.excel_io import coerce_datetime, coerce_float, normalize_col_name, parse_int_strict, to_bool
from printplan.data.workbook import WorkbookError, load_workbook, parse_frames


def _frames(**overrides) -> dict[str, pd.DataFrame]:
    frames = {
        "projects": pd.DataFrame(
            [
                {
                    "id": "proj-1",
                    "name": "Cable clips",
                    "color": "ירוק",
                    "due_date": "2026-03-04",
                    "remaining_units": 20,
                    "preset_id": "box",
                    "grams_per_unit": "12,5",
                },
            ]
        ),
        "presets": pd.DataFrame([{"id": "box", "units_per_plate": 4, "cycle_hours": 3.0, "allowed_at_night": "no"}]),
        "printers": pd.DataFrame(
            [
                {"id": "p1", "name": "X1C", "ams": "yes", "plates": 6, "mounted_color": None},
                {"id": "p2", "name": None, "ams": None, "plates": None, "mounted_color": "Red"},
            ]
        ),
        "inventory": pd.DataFrame([{"color": "Green", "closed_spool_count": 2, "open_grams": 300}]),
    }
    frames.update(overrides)
    return frames


def test_parse_frames_builds_domain_objects():
    data = parse_frames(_frames())

    project = data.projects[0]
    assert project.due_date == datetime(2026, 3, 4, 23, 59)
    assert project.grams_per_unit == 12.5
    assert project.remaining_units == 20

    preset = data.presets["box"]
    assert preset.units_per_cycle == 4
    assert preset.allowed_at_night is False

    p1, p2 = data.printers
    assert p1.has_multi_material is True
    assert p1.hardware_plate_capacity == 6
    assert p2.name == "p2"
    assert p2.hardware_plate_capacity == 8
    assert p2.can_run_after_hours is True

    assert data.inventory[0].total_grams == 2300
    assert data.cycles == []
    assert data.settings is None


def test_missing_sheets():
    frames = _frames()
    del frames["inventory"]
    with pytest.raises(WorkbookError, match="inventory"):
        parse_frames(frames)


def test_bad_row_reports_sheet_and_row():
    projects = pd.DataFrame(
        [
            {"id": "ok", "color": "Red", "due_date": "2026-03-04", "remaining_units": 1},
            {"id": "bad", "color": "Red", "due_date": "2026-03-04", "remaining_units": "many"},
        ]
    )
    with pytest.raises(WorkbookError, match="projects row 3: remaining_units invalid"):
        parse_frames(_frames(projects=projects))


def test_invalid_preset_values():
    presets = pd.DataFrame([{"id": "box", "units_per_cycle": 0, "cycle_hours": 3.0}])
    with pytest.raises(WorkbookError, match="units_per_cycle must be positive"):
        parse_frames(_frames(presets=presets))


def test_cycles_schedule_and_settings_sheets():
    cycles = pd.DataFrame(
        [
            {
                "id": "c1",
                "project_id": "proj-1",
                "printer_id": "p1",
                "start": datetime(2026, 3, 2, 18, 0),
                "end": datetime(2026, 3, 2, 21, 0),
                "required_color": "Green",
                "grams_planned": 250,
                "units_planned": 4,
                "locked": 1,
            }
        ]
    )
    schedule = pd.DataFrame([{"weekday": "Saturday", "enabled": "yes", "start": "10:00", "end": "13:00"}])
    settings = pd.DataFrame(
        [
            {"key": "after_hours_behavior", "value": "full_automation"},
            {"key": "global_plate_inventory", "value": 30.0},
        ]
    )
    data = parse_frames(_frames(cycles=cycles, schedule=schedule, settings=settings))

    c = data.cycles[0]
    assert c.duration_hours == 3.0
    assert c.locked is True
    assert c.status == "planned"

    assert data.settings.after_hours_behavior == "FULL_AUTOMATION"
    assert data.settings.global_plate_inventory == 30
    assert data.settings.weekly_schedule.saturday.enabled
    assert data.settings.weekly_schedule.saturday.start_time == "10:00"
    assert data.settings.weekly_schedule.monday.enabled


def test_invalid_settings_are_workbook_errors():
    settings = pd.DataFrame([{"key": "after_hours_behavior", "value": "always"}])
    with pytest.raises(WorkbookError, match="settings"):
        parse_frames(_frames(settings=settings))

    schedule = pd.DataFrame([{"weekday": "Funday", "enabled": 1}])
    with pytest.raises(WorkbookError, match="schedule row 2"):
        parse_frames(_frames(schedule=schedule))


def test_load_workbook_from_xlsx(tmp_path):
    path = tmp_path / "plan.xlsx"
    wb = Workbook()
    ws = wb.active
    ws.title = "Projects"
    ws.append(["ID", "Name", "Color", "Due Date", "Remaining Units", "Preset ID"])
    ws.append(["proj-1", "Hooks", "Green", datetime(2026, 3, 4, 17, 30), 12, "box"])
    sheets = {
        "Presets": [["ID", "Units per cycle", "Cycle hours"], ["box", 4, 3]],
        "Printers": [["ID", "Name"], ["p1", "Printer 1"]],
        "Inventory": [["Color", "Open grams"], ["Green", 900]],
    }
    for title, rows in sheets.items():
        sheet = wb.create_sheet(title)
        for row in rows:
            sheet.append(row)
    wb.save(path)

    data = load_workbook(path)
    assert data.projects[0].due_date == datetime(2026, 3, 4, 17, 30)
    assert data.projects[0].remaining_units == 12
    assert data.presets["box"].cycle_hours == 3.0
    assert data.printers[0].name == "Printer 1"
    assert data.inventory[0].total_grams == 900


def test_load_workbook_missing_file(tmp_path):
    with pytest.raises(WorkbookError, match="not found"):
        load_workbook(tmp_path / "nope.xlsx")


def test_excel_coercions():
    assert normalize_col_name(" Due Date ") == "due_date"
    assert normalize_col_name("Días hábiles") == "dias_habiles"
    assert coerce_float("1.234,5") == 1234.5
    assert coerce_float("abc") is None
    assert parse_int_strict(12.0, field="n") == 12
    with pytest.raises(ValueError):
        parse_int_strict(1.5, field="n")
    assert to_bool("x") is True
    assert to_bool(None, default=True) is True
    assert coerce_datetime("04/03/2026", field="d") == datetime(2026, 3, 4, 23, 59)
    assert coerce_datetime("2026-03-04 10:15", field="d") == datetime(2026, 3, 4, 10, 15)
