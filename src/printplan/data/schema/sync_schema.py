from __future__ import annotations

import sqlite3


def ensure_local_cache_schema(con: sqlite3.Connection) -> None:
    """Local copy of the last plan pulled from (or pushed to) the canonical store."""
    con.executescript(
        """
        CREATE TABLE IF NOT EXISTS local_plan_cycles (
            workspace_id TEXT NOT NULL,
            cycle_id TEXT NOT NULL,
            plan_version TEXT,
            start_time TEXT,
            payload_json TEXT NOT NULL,
            PRIMARY KEY (workspace_id, cycle_id)
        );
        """
    )


def ensure_store_schema(con: sqlite3.Connection) -> None:
    """Canonical plan store tables."""
    con.executescript(
        """
        CREATE TABLE IF NOT EXISTS workspace_settings (
            workspace_id TEXT PRIMARY KEY,
            active_plan_version TEXT,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS plan_cycles (
            workspace_id TEXT NOT NULL,
            cycle_id TEXT NOT NULL,
            project_id TEXT NOT NULL,
            printer_id TEXT NOT NULL,
            scheduled_date TEXT,
            start_time TEXT,
            end_time TEXT,
            status TEXT NOT NULL,
            source TEXT NOT NULL DEFAULT 'auto',
            locked INTEGER NOT NULL DEFAULT 0,
            plan_version TEXT,
            payload_json TEXT NOT NULL,
            PRIMARY KEY (workspace_id, cycle_id)
        );

        CREATE INDEX IF NOT EXISTS ix_plan_cycles_version ON plan_cycles(workspace_id, plan_version);

        CREATE TABLE IF NOT EXISTS plan_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            workspace_id TEXT NOT NULL,
            plan_version TEXT NOT NULL,
            prior_version TEXT,
            reason TEXT,
            scope TEXT,
            cycles_created INTEGER NOT NULL DEFAULT 0,
            cycles_deleted INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );
        """
    )
