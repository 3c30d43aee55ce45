from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from printplan.data.db import Db

RUN_REASONS = frozenset(
    {
        "project_created",
        "project_updated",
        "preset_updated",
        "printer_changed",
        "manual_replan",
        "settings_changed",
        "scheduled",
        "unknown",
    }
)

MAX_RUN_LOG_ENTRIES = 50


def save_run_result(
    db: Db,
    *,
    reason: str,
    success: bool,
    stats: dict[str, Any],
    input_snapshot: dict[str, Any],
    allocations: list[dict[str, Any]] | None = None,
    warnings: list[str] | None = None,
    errors: list[str] | None = None,
    events: list[dict[str, Any]] | None = None,
    duration_ms: int | None = None,
) -> int:
    """Append one planner execution to the run log.

    Args:
        db: Database connection wrapper
        reason: What triggered the run (see RUN_REASONS; others become "unknown")
        success: Whether the planner produced a result
        stats: Output counters (cycles_planned, units_planned, night_cycles_skipped...)
        input_snapshot: Input counters (projects, printers, presets...)

    Returns:
        Row id of the new entry
    """
    reason = reason if reason in RUN_REASONS else "unknown"
    with db.connect() as con:
        cur = con.execute(
            """
            INSERT INTO planner_run_log (
                run_timestamp, reason, success,
                cycles_planned, units_planned, night_cycles_skipped, duration_ms,
                input_snapshot_json, allocations_json, warnings_json, errors_json, events_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                datetime.now().isoformat(),
                reason,
                1 if success else 0,
                int(stats.get("cycles_planned", 0)),
                int(stats.get("units_planned", 0)),
                int(stats.get("night_cycles_skipped", 0)),
                duration_ms,
                json.dumps(input_snapshot),
                json.dumps(allocations or []),
                json.dumps(warnings or []),
                json.dumps(errors or []),
                json.dumps(events or []),
            ),
        )
        return int(cur.lastrowid)


def _row_to_dict(row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "run_timestamp": row["run_timestamp"],
        "reason": row["reason"],
        "success": bool(row["success"]),
        "cycles_planned": row["cycles_planned"],
        "units_planned": row["units_planned"],
        "night_cycles_skipped": row["night_cycles_skipped"],
        "duration_ms": row["duration_ms"],
        "input_snapshot": json.loads(row["input_snapshot_json"] or "{}"),
        "allocations": json.loads(row["allocations_json"] or "[]"),
        "warnings": json.loads(row["warnings_json"] or "[]"),
        "errors": json.loads(row["errors_json"] or "[]"),
        "events": json.loads(row["events_json"] or "[]"),
    }


def get_latest_run_result(db: Db) -> dict[str, Any] | None:
    with db.connect() as con:
        row = con.execute("SELECT * FROM planner_run_log ORDER BY id DESC LIMIT 1").fetchone()
    if row is None:
        return None
    return _row_to_dict(row)


def list_run_results(db: Db, *, limit: int = MAX_RUN_LOG_ENTRIES) -> list[dict[str, Any]]:
    with db.connect() as con:
        rows = con.execute("SELECT * FROM planner_run_log ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
    return [_row_to_dict(r) for r in rows]


def delete_old_run_results(db: Db, *, keep_last_n: int = MAX_RUN_LOG_ENTRIES) -> int:
    """Delete old run log entries, keeping only the most recent N."""
    with db.connect() as con:
        cur = con.execute(
            """
            DELETE FROM planner_run_log
            WHERE id NOT IN (
                SELECT id FROM planner_run_log ORDER BY id DESC LIMIT ?
            )
            """,
            (keep_last_n,),
        )
        return cur.rowcount
