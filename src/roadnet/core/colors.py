"""eIRI -> map colour.  Lower eIRI is a smoother road."""
from __future__ import annotations

import math
from typing import Any, List, Optional, Tuple

NEUTRAL = "#9e9e9e"

# (upper bound, start colour, end colour); the last band is open-ended
_BANDS: List[Tuple[float, str, str]] = [
    (1.5, "#006400", "#00FF00"),   # excellent: dark -> bright green
    (2.5, "#90EE90", "#C0FFC0"),   # good: light green
    (3.5, "#FFFF00", "#FFFF99"),   # fair: yellow
    (4.5, "#FFA500", "#FFCC80"),   # poor: orange
    (5.0, "#FF0000", "#FF6666"),   # very poor: red
]


def _as_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    return v if math.isfinite(v) else None


def _mix(c1: str, c2: str, factor: float) -> str:
    a = int(c1[1:], 16)
    b = int(c2[1:], 16)
    out = []
    for shift in (16, 8, 0):
        x = (a >> shift) & 0xFF
        y = (b >> shift) & 0xFF
        out.append(int(math.floor(x + (y - x) * factor + 0.5)))
    return "#{:02x}{:02x}{:02x}".format(*out)


def color_for(value: Any) -> str:
    """Hex colour for an eIRI value; neutral gray for missing or non-finite input."""
    v = _as_number(value)
    if v is None:
        return NEUTRAL
    lower = 0.0
    for upper, start, end in _BANDS[:-1]:
        if v < upper:
            return _mix(start, end, min(1.0, max(0.0, (v - lower) / (upper - lower))))
        lower = upper
    upper, start, end = _BANDS[-1]
    return _mix(start, end, min(1.0, max(0.0, (v - lower) / (upper - lower))))


def color_name(value: Any) -> str:
    v = _as_number(value)
    if v is None or v <= 0:
        return "gray"
    if v < 1.5:
        return "green"
    if v < 2.5:
        return "light_green"
    if v < 3.5:
        return "light_orange"
    if v < 4.5:
        return "orange"
    return "red"
