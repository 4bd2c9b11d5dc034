"""Redis key naming conventions for the roadnet cache layer."""
from __future__ import annotations

from typing import Optional

_PREFIX = "rn"


def _scope(scope: Optional[str]) -> str:
    return scope if scope else "-"


# ── Nearest edge ─────────────────────────────────────────────────────────

def nearest_edge(lat: float, lng: float, radius_m: float, scope: Optional[str]) -> str:
    """Coordinates rounded to 4 decimals (~10 m) so nearby clicks share an entry."""
    return f"{_PREFIX}:nearest:{lat:.4f},{lng:.4f}:{radius_m:g}:{_scope(scope)}"


# ── Tiles ────────────────────────────────────────────────────────────────

def road_tile(z: int, x: int, y: int, scope: Optional[str]) -> str:
    return f"{_PREFIX}:tile:{_scope(scope)}:{z}/{x}/{y}"


def road_tile_pattern(scope: Optional[str]) -> str:
    return f"{_PREFIX}:tile:{_scope(scope)}:*"
