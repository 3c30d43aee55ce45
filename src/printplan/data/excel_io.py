"""Cell-level helpers for planner workbooks exported from spreadsheets."""
from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime, time
from pathlib import Path

import pandas as pd

_NON_TOKEN_RE = re.compile(r"[^a-z0-9]+")
_INT_RE = re.compile(r"-?\d+")

_TRUE_WORDS = frozenset({"1", "true", "yes", "y", "x", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "n", "off"})

# Day-first exports; a bare date means the end of that day.
_DATE_FORMATS = ("%d-%m-%Y", "%d/%m/%Y", "%Y/%m/%d")
_DATETIME_FORMATS = ("%d-%m-%Y %H:%M", "%d/%m/%Y %H:%M")
END_OF_DAY = time(23, 59)


def read_workbook_sheets(path: Path) -> dict[str, pd.DataFrame]:
    """Every sheet of an .xlsx file, keyed and columned by normalized names."""
    sheets = pd.read_excel(path, sheet_name=None, engine="openpyxl")
    return {normalize_col_name(name): normalize_columns(df) for name, df in sheets.items()}


def normalize_col_name(name: str) -> str:
    """'Remaining Units', 'remaining-units' and 'Días hábiles' become snake_case ASCII tokens."""
    folded = unicodedata.normalize("NFKD", str(name or "").lower())
    ascii_only = "".join(ch for ch in folded if not unicodedata.combining(ch))
    return _NON_TOKEN_RE.sub("_", ascii_only).strip("_")


def normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    return df.rename(columns=normalize_col_name)


def is_blank(value) -> bool:
    if value is None or value is pd.NaT:
        return True
    if isinstance(value, float):
        return bool(pd.isna(value))
    return isinstance(value, str) and value.strip() == ""


def to_bool(value, *, default: bool = False) -> bool:
    """Yes/no style cells ('x', 'yes', 1, 0.0...); unrecognised text gives default."""
    if is_blank(value):
        return default
    word = str(value).strip().lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    number = coerce_float(word)
    return default if number is None else number != 0


def to_str(value) -> str | None:
    if is_blank(value):
        return None
    # Excel hands back ids typed as numbers as 12.0
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def parse_int_strict(value, *, field: str) -> int:
    if is_blank(value):
        raise ValueError(f"{field} is empty")
    if isinstance(value, bool):
        raise ValueError(f"{field} invalid: {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"{field} invalid (not an integer): {value!r}")
        return int(value)
    text = str(value).strip()
    if not _INT_RE.fullmatch(text):
        raise ValueError(f"{field} invalid: {value!r}")
    return int(text)


def coerce_float(value) -> float | None:
    """Numeric cell to float, or None when empty or unparseable.

    Both "12,5" and "1.234,5" are read with ',' as the decimal separator.
    """
    if is_blank(value):
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    if "," in text:
        text = text.replace(".", "").replace(",", ".")
    try:
        number = float(text)
    except ValueError:
        return None
    return None if pd.isna(number) else number


def _parse_text_datetime(text: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = None
    if parsed is not None:
        return datetime.combine(parsed.date(), END_OF_DAY) if len(text) <= 10 else parsed

    for fmt in _DATE_FORMATS:
        try:
            return datetime.combine(datetime.strptime(text, fmt).date(), END_OF_DAY)
        except ValueError:
            continue
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def coerce_datetime(value, *, field: str) -> datetime:
    """Date or datetime cell to a naive datetime; a bare date means 23:59 that day."""
    if is_blank(value):
        raise ValueError(f"{field} is empty")
    if isinstance(value, pd.Timestamp):
        value = value.to_pydatetime()
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime.combine(value, END_OF_DAY)

    parsed = _parse_text_datetime(str(value).strip())
    if parsed is None:
        raise ValueError(f"{field} invalid: {value!r}")
    return parsed


def coerce_optional_datetime(value, *, field: str) -> datetime | None:
    if is_blank(value):
        return None
    return coerce_datetime(value, field=field)
