"""Great-circle and planar helpers shared by the sources, segmenter and tiles."""
from __future__ import annotations

import math
from typing import List, Sequence, Tuple

from shapely.geometry import LineString, Point

from roadnet.contracts.geometry import BBox, LonLat

EARTH_RADIUS_M = 6_371_000.0
METERS_PER_DEG_LAT = 111_320.0

# Half the Earth's circumference; larger radii are meaningless
MAX_RADIUS_M = 20_000_000.0
MAX_DELTA_DEG = 180.0


def haversine_m(a_lon: float, a_lat: float, b_lon: float, b_lat: float) -> float:
    """Great-circle distance in metres between two WGS-84 points."""
    phi1 = math.radians(a_lat)
    phi2 = math.radians(b_lat)
    dphi = math.radians(b_lat - a_lat)
    dlmb = math.radians(b_lon - a_lon)

    s = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(s)))


def polyline_length_m(coords: Sequence[LonLat]) -> float:
    total = 0.0
    for i in range(1, len(coords)):
        a_lon, a_lat = coords[i - 1]
        b_lon, b_lat = coords[i]
        total += haversine_m(a_lon, a_lat, b_lon, b_lat)
    return total


def cumulative_distances_m(coords: Sequence[LonLat]) -> List[float]:
    cum = [0.0]
    for i in range(1, len(coords)):
        a_lon, a_lat = coords[i - 1]
        b_lon, b_lat = coords[i]
        cum.append(cum[-1] + haversine_m(a_lon, a_lat, b_lon, b_lat))
    return cum


def interpolate(a: LonLat, b: LonLat, frac: float) -> LonLat:
    """Linear interpolation between two geographic points (frac in [0,1])."""
    return (a[0] + frac * (b[0] - a[0]), a[1] + frac * (b[1] - a[1]))


def is_valid_lonlat(lon: float, lat: float) -> bool:
    return (
        math.isfinite(lon)
        and math.isfinite(lat)
        and -180.0 <= lon <= 180.0
        and -90.0 <= lat <= 90.0
    )


def bbox_around(lon: float, lat: float, radius_m: float) -> BBox:
    """Approximate degree bbox around a point, capped near the poles/antimeridian."""
    radius_m = min(max(radius_m, 0.0), MAX_RADIUS_M)
    cos_lat = max(abs(math.cos(math.radians(lat))), 1e-12)
    d_lat = min(radius_m / METERS_PER_DEG_LAT, MAX_DELTA_DEG)
    d_lon = min(radius_m / (METERS_PER_DEG_LAT * cos_lat), MAX_DELTA_DEG)
    return BBox(lon - d_lon, lat - d_lat, lon + d_lon, lat + d_lat)


def _to_local(coords: Sequence[LonLat], lon0: float, lat0: float) -> List[Tuple[float, float]]:
    # Equirectangular projection in metres around (lon0, lat0)
    k = math.radians(1.0) * EARTH_RADIUS_M
    cos0 = math.cos(math.radians(lat0))
    out = []
    for lon, lat in coords:
        dlon = lon - lon0
        if dlon > 180.0:
            dlon -= 360.0
        elif dlon < -180.0:
            dlon += 360.0
        out.append((dlon * k * cos0, (lat - lat0) * k))
    return out


def nearest_point_on_line(point: LonLat, coords: Sequence[LonLat]) -> Tuple[float, float]:
    """Return (distance_m, along_m) from ``point`` to the polyline ``coords``.

    ``along_m`` is the planar distance from the first vertex to the snapped point.
    """
    lon0, lat0 = point
    if not coords:
        return math.inf, 0.0
    if len(coords) == 1:
        c = coords[0]
        return haversine_m(lon0, lat0, c[0], c[1]), 0.0

    local = _to_local(coords, lon0, lat0)
    line = LineString(local)
    origin = Point(0.0, 0.0)
    return float(line.distance(origin)), float(line.project(origin))


def point_line_distance_m(point: LonLat, coords: Sequence[LonLat]) -> float:
    return nearest_point_on_line(point, coords)[0]


def tile_bbox(z: int, x: int, y: int) -> BBox:
    """Geographic bounds of slippy-map tile (z, x, y)."""
    n = 2.0 ** z
    lon_min = x / n * 360.0 - 180.0
    lon_max = (x + 1) / n * 360.0 - 180.0
    lat_max = math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * y / n))))
    lat_min = math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * (y + 1) / n))))
    return BBox(lon_min, lat_min, lon_max, lat_max)


def mercator_xy(lon: float, lat: float) -> Tuple[float, float]:
    """Normalized Web Mercator position in [0, 1] x [0, 1] (y grows southwards)."""
    lat = max(min(lat, 85.05112878), -85.05112878)
    x = (lon + 180.0) / 360.0
    s = math.sin(math.radians(lat))
    y = 0.5 - math.log((1 + s) / (1 - s)) / (4 * math.pi)
    return x, y
