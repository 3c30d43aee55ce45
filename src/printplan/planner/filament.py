"""Night filament gate.

A night sequence is only committed when the color's inventory covers the
planned grams plus a mode-dependent safety buffer.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from printplan.core.models import ColorInventoryItem, FactorySettings, NightMode, NightWindow, PlannedCycle

ONE_CYCLE_BUFFER_GRAMS = 50.0
FULL_MODE_MIN_BUFFER_GRAMS = 100.0
FULL_MODE_BUFFER_PERCENT = 10


@dataclass(frozen=True)
class NightValidationResult:
    can_plan_night: bool
    reason: str
    grams_required: float
    grams_available: float
    buffer_grams: float
    shortfall: float
    mode: NightMode


def full_mode_buffer(total_grams: float) -> float:
    return max(total_grams * FULL_MODE_BUFFER_PERCENT / 100, FULL_MODE_MIN_BUFFER_GRAMS)


def validate_night_filament_budget(
    cycles: Sequence[PlannedCycle],
    inventory: ColorInventoryItem | None,
    night_window: NightWindow,
    settings: FactorySettings | None = None,
) -> NightValidationResult:
    mode = night_window.mode
    available = inventory.total_grams if inventory is not None else 0.0

    if mode == "none":
        return NightValidationResult(False, "no_after_hours_configured", 0.0, available, 0.0, 0.0, mode)

    if not cycles:
        return NightValidationResult(True, "no_cycles_to_validate", 0.0, available, 0.0, 0.0, mode)

    if mode == "one_cycle":
        buffer = ONE_CYCLE_BUFFER_GRAMS
        required = (cycles[0].grams_planned or 0.0) + buffer
        ok = available >= required
        reason = "sufficient_for_one_cycle" if ok else "insufficient_filament_one_cycle"
    else:
        total = sum(c.grams_planned or 0.0 for c in cycles)
        buffer = full_mode_buffer(total)
        required = total + buffer
        ok = available >= required
        reason = "sufficient_for_full_night" if ok else "insufficient_filament_full_night"

    return NightValidationResult(
        can_plan_night=ok,
        reason=reason,
        grams_required=required,
        grams_available=available,
        buffer_grams=buffer,
        shortfall=max(0.0, required - available),
        mode=mode,
    )


def has_enough_filament_for_night(
    total_units: int,
    grams_per_unit: float,
    inventory: ColorInventoryItem | None,
    mode: NightMode,
) -> bool:
    if mode == "none":
        return False
    available = inventory.total_grams if inventory is not None else 0.0
    total = total_units * grams_per_unit
    if mode == "one_cycle":
        return available >= total + ONE_CYCLE_BUFFER_GRAMS
    return available >= total + full_mode_buffer(total)


def max_night_cycles_for_filament(grams_per_cycle: float, grams_available: float, mode: NightMode) -> int:
    """Largest cycle count whose grams plus full-mode buffer fit in inventory."""
    if mode == "none":
        return 0
    if mode == "one_cycle":
        return 1
    if grams_per_cycle <= 0:
        return 0
    count = math.floor(grams_available / grams_per_cycle)
    while count > 0:
        total = count * grams_per_cycle
        if grams_available >= total + full_mode_buffer(total):
            return count
        count -= 1
    return 0
