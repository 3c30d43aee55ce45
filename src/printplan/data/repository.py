from __future__ import annotations

import json
import logging
import sqlite3

from printplan.core.models import AuditEntry, FactorySettings
from printplan.data.db import Db

logger = logging.getLogger(__name__)

FACTORY_SETTINGS_KEY = "factory_settings"

# Longer values are audited without the before/after text.
_AUDIT_VALUE_LIMIT = 200

_SELECT_CONFIG = "SELECT config_value FROM app_config WHERE config_key = ?"
_UPSERT_CONFIG = """
    INSERT INTO app_config(config_key, config_value, updated_at)
    VALUES(?, ?, CURRENT_TIMESTAMP)
    ON CONFLICT(config_key) DO UPDATE SET
        config_value = excluded.config_value,
        updated_at = excluded.updated_at
"""


def _clean_key(key: str) -> str:
    cleaned = str(key).strip()
    if not cleaned:
        raise ValueError("empty config key")
    return cleaned


def _read_config(con: sqlite3.Connection, key: str) -> str | None:
    row = con.execute(_SELECT_CONFIG, (key,)).fetchone()
    return None if row is None else str(row["config_value"])


class Repository:
    """Local settings and audit trail for one planner database."""

    def __init__(self, db: Db):
        self.db = db

    def log_audit(self, category: str, message: str, details: str | None = None) -> None:
        try:
            with self.db.connect() as con:
                con.execute(
                    "INSERT INTO audit_log (category, message, details) VALUES (?, ?, ?)",
                    (category, message, details),
                )
        except sqlite3.Error:
            logger.exception("Could not record audit entry %s: %s", category, message)

    def get_recent_audit_entries(self, limit: int = 100) -> list[AuditEntry]:
        with self.db.connect() as con:
            rows = con.execute(
                "SELECT id, timestamp, category, message, details FROM audit_log ORDER BY id DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [AuditEntry(**dict(row)) for row in rows]

    def get_config(self, *, key: str, default: str | None = None) -> str | None:
        key = _clean_key(key)
        with self.db.connect() as con:
            value = _read_config(con, key)
        return default if value is None else value

    def set_config(self, *, key: str, value: str) -> None:
        key = _clean_key(key)
        new_value = str(value)
        with self.db.connect() as con:
            previous = _read_config(con, key)
            con.execute(_UPSERT_CONFIG, (key, new_value))

        shown_previous = "(none)" if previous is None else previous
        if max(len(new_value), len(shown_previous)) > _AUDIT_VALUE_LIMIT:
            self.log_audit("CONFIG", f"Updated '{key}'")
        else:
            self.log_audit("CONFIG", f"Updated '{key}'", f"From '{shown_previous}' to '{new_value}'")

    def get_factory_settings(self) -> FactorySettings:
        raw = self.get_config(key=FACTORY_SETTINGS_KEY)
        if not raw:
            return FactorySettings()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored factory settings are not valid JSON; using defaults")
            return FactorySettings()
        return FactorySettings.from_dict(data)

    def save_factory_settings(self, settings: FactorySettings) -> None:
        self.set_config(key=FACTORY_SETTINGS_KEY, value=json.dumps(settings.to_dict(), sort_keys=True))
