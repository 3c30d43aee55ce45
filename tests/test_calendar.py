from __future__ import annotations

from datetime import date, datetime

from printplan.core.calendar import WorkCalendar
from printplan.core.models import (
    AFTER_HOURS_NONE,
    DaySchedule,
    FactorySettings,
    Preset,
    Printer,
    ScheduleOverride,
    WeeklySchedule,
)

from sample_data import FULL, NO_NIGHT


def _cal(settings: FactorySettings = FULL) -> WorkCalendar:
    return WorkCalendar(settings)


def test_work_window_uses_weekly_schedule():
    cal = _cal()
    assert cal.work_window(date(2026, 3, 2)) == (datetime(2026, 3, 2, 8, 30), datetime(2026, 3, 2, 17, 30))
    assert cal.work_window(date(2026, 3, 6)) == (datetime(2026, 3, 6, 9, 0), datetime(2026, 3, 6, 14, 0))
    assert cal.work_window(date(2026, 3, 7)) is None


def test_next_workday_start_is_strictly_after():
    cal = _cal()
    assert cal.next_workday_start(datetime(2026, 3, 2, 7, 0)) == datetime(2026, 3, 2, 8, 30)
    assert cal.next_workday_start(datetime(2026, 3, 2, 8, 30)) == datetime(2026, 3, 3, 8, 30)
    assert cal.next_workday_start(datetime(2026, 3, 2, 17, 30)) == datetime(2026, 3, 3, 8, 30)
    # Friday afternoon skips the Saturday off
    assert cal.next_workday_start(datetime(2026, 3, 6, 14, 0)) == datetime(2026, 3, 8, 8, 30)


def test_next_workday_start_returns_none_without_workdays():
    off = DaySchedule(enabled=False)
    weekly = WeeklySchedule(
        monday=off, tuesday=off, wednesday=off, thursday=off, friday=off, saturday=off, sunday=off
    )
    cal = _cal(FactorySettings(weekly_schedule=weekly))
    assert cal.next_workday_start(datetime(2026, 3, 2, 12, 0)) is None
    assert cal.night_window(date(2026, 3, 2)).total_hours == 0


def test_night_window_weekday():
    w = _cal().night_window(date(2026, 3, 2))
    assert w.start == datetime(2026, 3, 2, 17, 30)
    assert w.end == datetime(2026, 3, 3, 8, 30)
    assert w.total_hours == 15.0
    assert w.is_weekend_night is False
    assert w.mode == "full"


def test_night_window_before_weekend():
    w = _cal().night_window(date(2026, 3, 6))
    assert w.start == datetime(2026, 3, 6, 14, 0)
    assert w.end == datetime(2026, 3, 8, 8, 30)
    assert w.total_hours == 42.5
    assert w.is_weekend_night is True


def test_night_window_is_stable_across_calls():
    cal = _cal()
    assert cal.night_window(date(2026, 3, 4)) == cal.night_window(date(2026, 3, 4))


def test_night_window_on_day_off_is_empty():
    w = _cal().night_window(date(2026, 3, 7))
    assert w.total_hours == 0
    assert w.mode == "none"
    assert not w.contains(datetime(2026, 3, 7, 22, 0))


def test_night_window_without_after_hours_keeps_bounds():
    w = _cal(NO_NIGHT).night_window(date(2026, 3, 2))
    assert w.mode == "none"
    assert w.total_hours == 15.0
    assert w.start == datetime(2026, 3, 2, 17, 30)


def test_night_window_containing_early_morning():
    w = _cal().night_window_containing(datetime(2026, 3, 3, 3, 0))
    assert w is not None
    assert w.start == datetime(2026, 3, 2, 17, 30)
    assert _cal().night_window_containing(datetime(2026, 3, 3, 10, 0)) is None


def test_business_day_of():
    cal = _cal()
    assert cal.business_day_of(datetime(2026, 3, 2, 10, 0)) == date(2026, 3, 2)
    # 03:00 belongs to the coming workday
    assert cal.business_day_of(datetime(2026, 3, 3, 3, 0)) == date(2026, 3, 3)
    assert cal.business_day_of(datetime(2026, 3, 2, 20, 0)) == date(2026, 3, 3)
    assert cal.business_day_of(datetime(2026, 3, 7, 12, 0)) == date(2026, 3, 8)


def test_cross_midnight_shift():
    base = WeeklySchedule.default()
    weekly = WeeklySchedule(
        monday=DaySchedule(enabled=True, start_time="22:00", end_time="06:00"),
        tuesday=base.tuesday,
        wednesday=base.wednesday,
        thursday=base.thursday,
        friday=base.friday,
        saturday=base.saturday,
        sunday=base.sunday,
    )
    cal = _cal(FactorySettings(weekly_schedule=weekly))
    assert cal.work_window(date(2026, 3, 2)) == (datetime(2026, 3, 2, 22, 0), datetime(2026, 3, 3, 6, 0))
    assert cal.operator_present(datetime(2026, 3, 3, 2, 0))
    assert not cal.operator_present(datetime(2026, 3, 3, 7, 0))
    assert cal.business_day_of(datetime(2026, 3, 3, 2, 0)) == date(2026, 3, 3)


def test_override_wins_over_weekly_schedule():
    override = ScheduleOverride(
        start_date=date(2026, 3, 2),
        end_date=date(2026, 3, 3),
        days={"monday": DaySchedule(enabled=False)},
        note="maintenance",
    )
    cal = _cal(FactorySettings(overrides=(override,)))
    assert cal.work_window(date(2026, 3, 2)) is None
    # Weekday not covered by the override falls back to the weekly schedule
    assert cal.work_window(date(2026, 3, 3)) == (datetime(2026, 3, 3, 8, 30), datetime(2026, 3, 3, 17, 30))
    assert cal.work_window(date(2026, 3, 9)) is not None


def test_open_slot_full_automation_extends_to_next_workday():
    slot = _cal().open_slot(Printer(id="p1", name="P1"), datetime(2026, 3, 2, 10, 0))
    assert slot is not None
    assert slot.current_time == datetime(2026, 3, 2, 10, 0)
    assert slot.work_day_start == datetime(2026, 3, 2, 8, 30)
    assert slot.end_of_work_hours == datetime(2026, 3, 2, 17, 30)
    assert slot.end_of_day == datetime(2026, 3, 3, 8, 30)
    assert slot.end_of_day_source == "next_workday_start"


def test_open_slot_respects_policy_and_printer():
    slot = _cal(NO_NIGHT).open_slot(Printer(id="p1", name="P1"), datetime(2026, 3, 2, 10, 0))
    assert slot.end_of_day == slot.end_of_work_hours
    assert slot.end_of_day_reason == f"after_hours_disabled: {AFTER_HOURS_NONE}"

    slot = _cal().open_slot(Printer(id="p2", name="P2", can_run_after_hours=False), datetime(2026, 3, 2, 10, 0))
    assert slot.end_of_day == datetime(2026, 3, 2, 17, 30)
    assert slot.end_of_day_reason == "printer_night_disabled"


def test_open_slot_on_day_off_moves_to_next_workday():
    slot = _cal().open_slot(Printer(id="p1", name="P1"), datetime(2026, 3, 7, 10, 0))
    assert slot.current_time == datetime(2026, 3, 8, 8, 30)
    assert slot.work_day_start == datetime(2026, 3, 8, 8, 30)


def test_update_slot_bounds_rejects_day_off():
    cal = _cal()
    slot = cal.open_slot(Printer(id="p1", name="P1"), datetime(2026, 3, 2, 10, 0))
    assert cal.update_slot_bounds(slot, datetime(2026, 3, 7, 9, 0)) is False
    assert slot.work_day_start == datetime(2026, 3, 2, 8, 30)


def test_can_start_cycle_at():
    printer = Printer(id="p1", name="P1")
    day_start = datetime(2026, 3, 2, 8, 30)
    day_end = datetime(2026, 3, 2, 17, 30)
    night = datetime(2026, 3, 2, 20, 0)

    assert _cal(NO_NIGHT).can_start_cycle_at(datetime(2026, 3, 2, 9, 0), printer, None, day_start, day_end)
    assert not _cal(NO_NIGHT).can_start_cycle_at(night, printer, None, day_start, day_end)
    assert _cal().can_start_cycle_at(night, printer, None, day_start, day_end)

    no_night_preset = Preset(id="x", units_per_cycle=1, cycle_hours=2.0, allowed_at_night=False)
    assert not _cal().can_start_cycle_at(night, printer, no_night_preset, day_start, day_end)
    assert not _cal().can_start_cycle_at(
        night, Printer(id="p2", name="P2", can_run_after_hours=False), None, day_start, day_end
    )


def test_next_operator_time_and_effective_availability():
    cal = _cal()
    assert cal.next_operator_time(datetime(2026, 3, 2, 12, 0)) == datetime(2026, 3, 2, 12, 0)
    assert cal.next_operator_time(datetime(2026, 3, 2, 20, 0)) == datetime(2026, 3, 3, 8, 30)

    slot = cal.open_slot(Printer(id="p1", name="P1", can_run_after_hours=False), datetime(2026, 3, 2, 10, 0))
    assert cal.effective_availability(slot) == datetime(2026, 3, 2, 10, 0)
    slot.current_time = datetime(2026, 3, 2, 18, 0)
    assert cal.effective_availability(slot) == datetime(2026, 3, 3, 8, 30)
