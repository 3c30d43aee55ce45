from __future__ import annotations

import re

# Longer spellings first: substring replacement takes the first hit.
_HEBREW_TO_ENGLISH: dict[str, str] = {
    "ירוק": "green",
    "לבן": "white",
    "שחור": "black",
    "כחול": "blue",
    "אדום": "red",
    "צהוב": "yellow",
    "כתום": "orange",
    "סגול": "purple",
    "ורוד": "pink",
    "אפור": "gray",
    "גריי": "gray",
    "חום": "brown",
    "זהב": "gold",
    "כסף": "silver",
    "בז'": "beige",
    "בז": "beige",
    "טורקיז": "turquoise",
    "ציאן": "cyan",
    "מג'נטה": "magenta",
    "מגנטה": "magenta",
}

_WS_RE = re.compile(r"\s+")


def normalize_color(value: str | None) -> str:
    """Canonical comparison key for a color name.

    "Green", " green ", "ירוק" -> "green"; "PLA ירוק" -> "pla green".
    """
    if not value:
        return ""
    s = _WS_RE.sub(" ", str(value)).strip().lower()
    if s in _HEBREW_TO_ENGLISH:
        return _HEBREW_TO_ENGLISH[s]
    for hebrew, english in _HEBREW_TO_ENGLISH.items():
        if hebrew in s:
            return s.replace(hebrew, english, 1)
    return s


def colors_match(a: str | None, b: str | None) -> bool:
    return normalize_color(a) == normalize_color(b)


def color_display_name(value: str | None) -> str:
    return str(value or "").strip()


def inventory_key(color: str | None, material: str | None = None) -> str:
    """Key used for inventory maps: "<color>" or "<color>|<material>"."""
    key = normalize_color(color)
    if material:
        key = f"{key}|{str(material).strip().lower()}"
    return key
