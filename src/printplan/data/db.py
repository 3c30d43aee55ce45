from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path

from printplan.data.schema import ensure_core_schema, ensure_local_cache_schema


class Db:
    """sqlite file wrapper; each `connect()` block is one transaction."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def connect(self, *, immediate: bool = False):
        """Yield a connection that commits on success and rolls back on error.

        immediate=True takes the write lock up front, so read-check-write
        sequences cannot interleave with another writer.
        """
        con = sqlite3.connect(self.path, timeout=20.0)
        con.row_factory = sqlite3.Row
        try:
            if immediate:
                con.execute("BEGIN IMMEDIATE")
            yield con
            con.commit()
        except Exception:
            con.rollback()
            raise
        finally:
            con.close()

    def ensure_schema(self) -> None:
        with self.connect() as con:
            con.execute("PRAGMA journal_mode=WAL;")
            con.execute("PRAGMA foreign_keys=ON;")
            ensure_core_schema(con)
            ensure_local_cache_schema(con)
