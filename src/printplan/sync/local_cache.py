from __future__ import annotations

import json
from typing import Sequence

from printplan.core.models import PlannedCycle
from printplan.data.db import Db


def _version_key(workspace_id: str) -> str:
    return f"plan_version:{workspace_id}"


class LocalPlanCache:
    """Last-seen plan version token plus the cycle set it describes.

    The token and the cycles are always written in the same transaction.
    """

    def __init__(self, db: Db, workspace_id: str):
        self.db = db
        self.workspace_id = workspace_id

    def get_plan_version(self) -> str | None:
        with self.db.connect() as con:
            row = con.execute(
                "SELECT config_value FROM app_config WHERE config_key = ?",
                (_version_key(self.workspace_id),),
            ).fetchone()
        if row is None:
            return None
        return str(row[0]) or None

    def get_cycles(self) -> list[PlannedCycle]:
        with self.db.connect() as con:
            rows = con.execute(
                """
                SELECT payload_json FROM local_plan_cycles
                WHERE workspace_id = ?
                ORDER BY start_time, cycle_id
                """,
                (self.workspace_id,),
            ).fetchall()
        return [PlannedCycle.from_dict(json.loads(r["payload_json"])) for r in rows]

    def replace_plan(self, cycles: Sequence[PlannedCycle], plan_version: str) -> None:
        """Swap the whole local plan for `cycles` tagged with `plan_version`."""
        with self.db.connect() as con:
            con.execute("DELETE FROM local_plan_cycles WHERE workspace_id = ?", (self.workspace_id,))
            con.executemany(
                """
                INSERT INTO local_plan_cycles(workspace_id, cycle_id, plan_version, start_time, payload_json)
                VALUES(?, ?, ?, ?, ?)
                """,
                [
                    (
                        self.workspace_id,
                        c.id,
                        plan_version,
                        c.start.isoformat() if c.start else None,
                        json.dumps(c.to_dict()),
                    )
                    for c in cycles
                ],
            )
            con.execute(
                """
                INSERT INTO app_config(config_key, config_value, updated_at)
                VALUES(?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(config_key) DO UPDATE SET
                    config_value = excluded.config_value,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (_version_key(self.workspace_id), plan_version),
            )
