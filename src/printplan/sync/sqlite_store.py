from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import uuid
from pathlib import Path

from printplan.core.models import PlannedCycle
from printplan.data.db import Db
from printplan.data.schema import ensure_store_schema
from printplan.sync.plan_version import PublishRequest, StorePublishResponse

logger = logging.getLogger(__name__)


class PlanVersionConflict(Exception):
    pass


class SqlitePlanStore:
    """Canonical plan store on a sqlite file.

    A publish deletes superseded planned cycles, inserts the new ones, re-tags
    kept cycles and moves the active version inside one transaction.
    """

    def __init__(self, path: Path):
        self.db = Db(path)
        with self.db.connect() as con:
            con.execute("PRAGMA journal_mode=WAL;")
            ensure_store_schema(con)

    async def get_active_plan_version(self, workspace_id: str) -> str | None:
        return await asyncio.to_thread(self._get_active_plan_version, workspace_id)

    async def publish_plan(self, request: PublishRequest) -> StorePublishResponse:
        return await asyncio.to_thread(self._publish_plan, request)

    async def fetch_cycles(self, workspace_id: str, plan_version: str) -> list[PlannedCycle]:
        return await asyncio.to_thread(self._fetch_cycles, workspace_id, plan_version)

    def _get_active_plan_version(self, workspace_id: str) -> str | None:
        with self.db.connect() as con:
            return self._active_version(con, workspace_id)

    @staticmethod
    def _active_version(con: sqlite3.Connection, workspace_id: str) -> str | None:
        row = con.execute(
            "SELECT active_plan_version FROM workspace_settings WHERE workspace_id = ?",
            (workspace_id,),
        ).fetchone()
        return row[0] if row and row[0] else None

    def _publish_plan(self, request: PublishRequest) -> StorePublishResponse:
        new_version = uuid.uuid4().hex
        ws = request.workspace_id
        keep = sorted(request.keep_cycle_ids)
        try:
            with self.db.connect(immediate=True) as con:
                active = self._active_version(con, ws)
                if request.prior_version is not None and active is not None and active != request.prior_version:
                    raise PlanVersionConflict(
                        f"version_conflict: store is at {active}, publish was based on {request.prior_version}"
                    )

                keep_marks = ",".join("?" for _ in keep)
                keep_clause = f"AND cycle_id NOT IN ({keep_marks})" if keep else ""
                deleted = con.execute(
                    f"DELETE FROM plan_cycles WHERE workspace_id = ? AND status = 'planned' {keep_clause}",
                    (ws, *keep),
                ).rowcount

                # Re-sent cycles that survived the delete (in progress, locked) are replaced.
                incoming_ids = [c.id for c in request.cycles]
                if incoming_ids:
                    con.execute(
                        f"DELETE FROM plan_cycles WHERE workspace_id = ? AND cycle_id IN ({','.join('?' for _ in incoming_ids)})",
                        (ws, *incoming_ids),
                    )

                con.executemany(
                    """
                    INSERT INTO plan_cycles(
                        workspace_id, cycle_id, project_id, printer_id, scheduled_date,
                        start_time, end_time, status, source, locked, plan_version, payload_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            ws,
                            c.id,
                            c.project_id,
                            c.printer_id,
                            c.start.date().isoformat() if c.start else None,
                            c.start.isoformat() if c.start else None,
                            c.end.isoformat() if c.end else None,
                            c.status,
                            c.source,
                            1 if c.locked else 0,
                            new_version,
                            json.dumps(c.to_dict()),
                        )
                        for c in request.cycles
                    ],
                )

                if keep:
                    con.execute(
                        f"UPDATE plan_cycles SET plan_version = ? WHERE workspace_id = ? AND cycle_id IN ({keep_marks})",
                        (new_version, ws, *keep),
                    )

                con.execute(
                    """
                    INSERT INTO workspace_settings(workspace_id, active_plan_version, updated_at)
                    VALUES(?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(workspace_id) DO UPDATE SET
                        active_plan_version = excluded.active_plan_version,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (ws, new_version),
                )
                con.execute(
                    """
                    INSERT INTO plan_history(
                        workspace_id, plan_version, prior_version, reason, scope, cycles_created, cycles_deleted
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (ws, new_version, active, request.reason, request.scope, len(request.cycles), deleted),
                )
        except (sqlite3.Error, PlanVersionConflict) as exc:
            logger.warning("Publish for %s rolled back: %s", ws, exc)
            return StorePublishResponse(success=False, plan_version=None, error=str(exc))

        return StorePublishResponse(
            success=True,
            plan_version=new_version,
            cycles_created=len(request.cycles),
            cycles_deleted=deleted,
        )

    def _fetch_cycles(self, workspace_id: str, plan_version: str) -> list[PlannedCycle]:
        with self.db.connect() as con:
            rows = con.execute(
                """
                SELECT payload_json, plan_version FROM plan_cycles
                WHERE workspace_id = ? AND plan_version = ?
                ORDER BY start_time, cycle_id
                """,
                (workspace_id, plan_version),
            ).fetchall()
        out = []
        for row in rows:
            raw = json.loads(row["payload_json"])
            raw["plan_version"] = row["plan_version"]
            out.append(PlannedCycle.from_dict(raw))
        return out

    def plan_history(self, workspace_id: str) -> list[dict]:
        with self.db.connect() as con:
            rows = con.execute(
                "SELECT * FROM plan_history WHERE workspace_id = ? ORDER BY id",
                (workspace_id,),
            ).fetchall()
        return [dict(r) for r in rows]
