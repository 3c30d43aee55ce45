from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    db_path: Path
    store_path: Path
    workspace_id: str = "default"
    log_level: str = "INFO"
    log_file: Path | None = None


def default_db_path() -> Path:
    # Repo-local locations keep paths stable across machines.
    return Path("db") / "printplan.db"


def default_store_path() -> Path:
    return Path("db") / "plan_store.db"
