"""Work calendar: schedule resolution, night windows and business days.

Every component asks this module whether an operator is around; nothing else
re-derives day/night logic from the raw weekly schedule.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from printplan.core.models import (
    AFTER_HOURS_FULL,
    DaySchedule,
    FactorySettings,
    NightWindow,
    Preset,
    Printer,
    PrinterTimeSlot,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_DAYS_AHEAD = 14


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0


def _at(d: date, ds_time) -> datetime:
    return datetime.combine(d, ds_time)


class WorkCalendar:
    def __init__(self, settings: FactorySettings):
        self.settings = settings

    def schedule_for_date(self, d: date) -> DaySchedule | None:
        """Enabled schedule for the date, or None when the day is off.

        Temporary overrides win over the weekly schedule.
        """
        schedule = None
        for override in self.settings.overrides:
            if override.applies_to(d):
                schedule = override.for_date(d)
                if schedule is not None:
                    break
        if schedule is None:
            schedule = self.settings.weekly_schedule.for_date(d)
        return schedule if schedule.enabled else None

    def work_window(self, d: date) -> tuple[datetime, datetime] | None:
        schedule = self.schedule_for_date(d)
        if schedule is None:
            return None
        start = _at(d, schedule.start)
        end = _at(d, schedule.end)
        if schedule.crosses_midnight:
            end += timedelta(hours=24)
        return start, end

    def next_workday_start(
        self, from_ts: datetime, max_days_ahead: int = DEFAULT_MAX_DAYS_AHEAD
    ) -> datetime | None:
        """First work-window start strictly after from_ts, or None if none in range."""
        first_day = from_ts.date()
        for offset in range(0, max_days_ahead + 1):
            d = first_day + timedelta(days=offset)
            window = self.work_window(d)
            if window is not None and window[0] > from_ts:
                return window[0]
        return None

    def night_window(self, d: date) -> NightWindow:
        midnight = datetime.combine(d, datetime.min.time())
        window = self.work_window(d)
        if window is None:
            return NightWindow(start=midnight, end=midnight, total_hours=0.0, is_weekend_night=False, mode="none")

        end_of_work = window[1]
        next_start = self.next_workday_start(end_of_work)
        if next_start is None:
            return NightWindow(
                start=end_of_work, end=end_of_work, total_hours=0.0, is_weekend_night=False, mode="none"
            )

        return NightWindow(
            start=end_of_work,
            end=next_start,
            total_hours=hours_between(end_of_work, next_start),
            is_weekend_night=(next_start.date() - d).days > 1,
            mode=self.settings.night_mode,
        )

    def night_window_containing(
        self, ts: datetime, max_days_back: int = DEFAULT_MAX_DAYS_AHEAD
    ) -> NightWindow | None:
        """The night window ts falls into, searching back from its calendar date."""
        for offset in range(0, max_days_back + 1):
            window = self.night_window(ts.date() - timedelta(days=offset))
            if window.contains(ts):
                return window
        return None

    def active_work_window(self, ts: datetime) -> tuple[datetime, datetime] | None:
        today = self.work_window(ts.date())
        if today is not None and today[0] <= ts < today[1]:
            return today
        # A shift opened yesterday may still be running past midnight.
        yesterday = self.work_window(ts.date() - timedelta(days=1))
        if yesterday is not None and yesterday[0] <= ts < yesterday[1]:
            return yesterday
        return None

    def operator_present(self, ts: datetime) -> bool:
        return self.active_work_window(ts) is not None

    def business_day_of(self, ts: datetime) -> date:
        if self.operator_present(ts):
            return ts.date()
        next_start = self.next_workday_start(ts)
        if next_start is None:
            return ts.date()
        return next_start.date()

    def next_operator_time(self, done: datetime) -> datetime:
        """Earliest time an operator can clear a plate finished at `done`."""
        if self.operator_present(done):
            return done
        return self.next_workday_start(done) or done

    def can_start_cycle_at(
        self,
        ts: datetime,
        printer: Printer | None,
        preset: Preset | None,
        work_day_start: datetime,
        end_of_work_hours: datetime,
    ) -> bool:
        if work_day_start <= ts < end_of_work_hours:
            return True
        if self.settings.after_hours_behavior != AFTER_HOURS_FULL:
            return False
        if printer is None or not printer.can_run_after_hours:
            return False
        if preset is not None and not preset.allowed_at_night:
            return False
        return True

    def update_slot_bounds(self, slot: PrinterTimeSlot, day_start: datetime) -> bool:
        """Move the slot's day boundaries to the workday starting at day_start."""
        window = self.work_window(day_start.date())
        if window is None:
            logger.warning("update_slot_bounds called for non-working day %s", day_start.date())
            return False

        slot.work_day_start = day_start
        slot.end_of_work_hours = window[1]

        if self.settings.after_hours_behavior != AFTER_HOURS_FULL:
            slot.end_of_day = slot.end_of_work_hours
            slot.end_of_day_source = "end_of_work_hours"
            slot.end_of_day_reason = f"after_hours_disabled: {self.settings.after_hours_behavior}"
        elif not slot.can_run_night:
            slot.end_of_day = slot.end_of_work_hours
            slot.end_of_day_source = "end_of_work_hours"
            slot.end_of_day_reason = "printer_night_disabled"
        else:
            next_start = self.next_workday_start(slot.end_of_work_hours)
            if next_start is not None:
                slot.end_of_day = next_start
                slot.end_of_day_source = "next_workday_start"
                slot.end_of_day_reason = f"extended to {next_start.isoformat()}"
            else:
                slot.end_of_day = slot.end_of_work_hours
                slot.end_of_day_source = "end_of_work_hours"
                slot.end_of_day_reason = "no_next_workday"
        return True

    def open_slot(self, printer: Printer, at: datetime) -> PrinterTimeSlot | None:
        """Fresh cursor for a printer, positioned at the first usable work instant."""
        active = self.active_work_window(at)
        if active is not None:
            day_start = active[0]
            current = at
        else:
            day_start = self.next_workday_start(at)
            if day_start is None:
                return None
            current = day_start

        slot = PrinterTimeSlot(
            printer_id=printer.id,
            printer_name=printer.name,
            current_time=current,
            work_day_start=day_start,
            end_of_work_hours=day_start,
            end_of_day=day_start,
            can_run_night=printer.can_run_after_hours,
            plate_capacity=printer.hardware_plate_capacity,
        )
        self.update_slot_bounds(slot, day_start)
        return slot

    def effective_availability(self, slot: PrinterTimeSlot) -> datetime:
        if slot.current_time < slot.end_of_day:
            return slot.current_time
        return self.next_workday_start(slot.current_time) or slot.current_time
