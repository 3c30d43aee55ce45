from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO", *, log_file: Path | None = None) -> None:
    """Send planner logs to stdout, and to log_file when given.

    Lines look like:
    "2026-03-02 17:30:00 [WARNING] printplan.core.events: [rollback] insufficient_filament_full_night: ..."
    """
    numeric_level = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric_level, int):
        print(f"Invalid log level: {level}, defaulting to INFO")
        numeric_level = logging.INFO

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    # main() may run more than once in one process (tests, run_app.py)
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    # openpyxl warns about every unknown workbook extension
    logging.getLogger("openpyxl").setLevel(logging.ERROR)
