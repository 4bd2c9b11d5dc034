"""Edge segmentation: cut road edges into fixed-length pieces and attribute points to them."""
from __future__ import annotations

from typing import List, Optional, Sequence, Union

from roadnet.config import settings
from roadnet.contracts.geometry import LineGeometry, LonLat, Segment, SegmentKey
from roadnet.geo.geodesy import cumulative_distances_m, interpolate, nearest_point_on_line

# Distances closer than this are treated as equal (metres)
_EPS_M = 1e-6


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _coords(geometry: Union[LineGeometry, Sequence[LonLat]]) -> tuple:
    if isinstance(geometry, LineGeometry):
        return geometry.coords
    return tuple((float(c[0]), float(c[1])) for c in geometry)


def edge_length_m(geometry: Union[LineGeometry, Sequence[LonLat]]) -> float:
    coords = _coords(geometry)
    if len(coords) < 2:
        return 0.0
    return cumulative_distances_m(coords)[-1]


def parse_segment_id(segment_id: str) -> Optional[SegmentKey]:
    """``"{edge}_seg_{i}"`` -> SegmentKey, or None for a plain edge id."""
    key = SegmentKey.parse(segment_id)
    return key if key.index is not None else None


def is_segment_id(road_id: str) -> bool:
    return parse_segment_id(road_id) is not None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def split(
    edge_id: str,
    geometry: Union[LineGeometry, Sequence[LonLat]],
    segment_length_m: Optional[float] = None,
) -> List[Segment]:
    """
    Cut a polyline into consecutive segments of ``segment_length_m``.

    Cuts fall exactly on multiples of the segment length; when a mark lies
    between two vertices a boundary vertex is interpolated there.  The boundary
    vertex is the last vertex of one segment and the first of the next.  The
    final segment keeps whatever length remains.

    Degenerate input (one vertex, or zero total length) gives a single
    zero-length segment 0; no vertices gives ``[]``.
    """
    length = float(segment_length_m or settings.segment_length_m)
    if length <= 0:
        raise ValueError(f"segment length must be positive, got {length}")

    coords = _coords(geometry)
    if not coords:
        return []

    cum = cumulative_distances_m(coords)
    total = cum[-1]
    if len(coords) < 2 or total <= _EPS_M:
        return [Segment(edge_id, 0, 0.0, 0.0, LineGeometry((coords[0],)))]

    segments: List[Segment] = []

    def close(points: List[LonLat], start: float, end: float) -> None:
        segments.append(
            Segment(edge_id, len(segments), start, end, LineGeometry(tuple(points)))
        )

    current: List[LonLat] = [coords[0]]
    start = 0.0
    next_cut = length
    last = len(coords) - 1

    for i in range(1, len(coords)):
        a, b = coords[i - 1], coords[i]
        piece_start, piece_end = cum[i - 1], cum[i]

        # Marks strictly inside this piece
        while next_cut < piece_end - _EPS_M:
            frac = (next_cut - piece_start) / (piece_end - piece_start)
            p = interpolate(a, b, max(0.0, min(1.0, frac)))
            current.append(p)
            close(current, start, next_cut)
            current = [p]
            start = next_cut
            next_cut += length

        current.append(b)

        # Mark lands on an interior vertex
        if i < last and abs(piece_end - next_cut) <= _EPS_M:
            close(current, start, piece_end)
            current = [b]
            start = piece_end
            next_cut += length

    if len(current) >= 2:
        close(current, start, total)
    return segments


def segments_for_point(
    point: LonLat,
    segments: Sequence[Segment],
    tolerance_m: Optional[float] = None,
) -> List[int]:
    """
    Indices of every segment within ``tolerance_m`` of ``point``.

    A point near a boundary matches both neighbours.  When nothing is within
    tolerance the single nearest segment is returned, so a non-empty segment
    list always yields at least one index.
    """
    if not segments:
        return []
    tol = settings.segment_match_tolerance_m if tolerance_m is None else float(tolerance_m)

    distances = [(nearest_point_on_line(point, s.geometry.coords)[0], s.index) for s in segments]
    hits = sorted(idx for d, idx in distances if d <= tol)
    if hits:
        return hits
    return [min(distances)[1]]
