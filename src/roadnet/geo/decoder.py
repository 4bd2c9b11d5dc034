"""Decode vendor geometry blobs (GeoPackage binary or bare WKB) into line geometries.

MultiLineString features are collapsed according to a ``MultiLinePolicy``.  The
default ``first`` keeps only the first constituent line, which loses the other
parts of multi-part roads; ``longest`` keeps the longest part, and ``all`` lets
callers expose each part as its own edge via :func:`decode_parts`.
"""
from __future__ import annotations

import struct
from enum import Enum
from typing import Any, Dict, List

import shapely.wkb
from shapely.errors import ShapelyError
from shapely.geometry import shape
from shapely.geometry.base import BaseGeometry

from roadnet.contracts.geometry import LineGeometry
from roadnet.errors import DecodeError
from roadnet.geo.geodesy import polyline_length_m

_GP_MAGIC = b"GP"

# Envelope contents indicator -> envelope length in bytes
_ENVELOPE_BYTES = {0: 0, 1: 32, 2: 48, 3: 48, 4: 64}

# Coordinates are read as lon/lat: WGS 84, or the "undefined geographic" id 0
LONLAT_SRS_IDS = frozenset({4326, 0})


class MultiLinePolicy(str, Enum):
    FIRST = "first"
    LONGEST = "longest"
    ALL = "all"


def _strip_gpkg_header(blob: bytes) -> bytes:
    if len(blob) < 8:
        raise DecodeError(f"GeoPackage header truncated ({len(blob)} bytes)")
    flags = blob[3]
    if flags & 0b0001_0000:
        raise DecodeError("empty geometry")
    if flags & 0b0010_0000:
        raise DecodeError("extended GeoPackage geometry types are not supported")
    indicator = (flags >> 1) & 0b111
    if indicator not in _ENVELOPE_BYTES:
        raise DecodeError(f"invalid envelope indicator {indicator}")
    offset = 8 + _ENVELOPE_BYTES[indicator]
    if len(blob) <= offset:
        raise DecodeError("no WKB payload after GeoPackage header")
    return blob[offset:]


def gpkg_srs_id(blob: bytes) -> int:
    """SRS id stored in a GeoPackage geometry header."""
    if len(blob) < 8 or blob[:2] != _GP_MAGIC:
        raise DecodeError("not a GeoPackage geometry blob")
    little = blob[3] & 0b1
    return struct.unpack("<i" if little else ">i", blob[4:8])[0]


def _load_geometry(blob: bytes) -> BaseGeometry:
    if not blob:
        raise DecodeError("empty geometry blob")
    data = bytes(blob)
    if data[:2] == _GP_MAGIC:
        srs_id = gpkg_srs_id(data)
        if srs_id not in LONLAT_SRS_IDS:
            raise DecodeError(f"unsupported SRS {srs_id}, expected EPSG:4326")
        data = _strip_gpkg_header(data)
    try:
        return shapely.wkb.loads(data)
    except (ShapelyError, ValueError, TypeError) as e:
        raise DecodeError(f"malformed WKB: {e}") from e


def _line_from_coords(coords) -> LineGeometry:
    line = LineGeometry.of([(c[0], c[1]) for c in coords])
    if len(line) < 2:
        raise DecodeError(f"line has {len(line)} vertex(es)")
    return line


def _parts(geom: BaseGeometry) -> List[LineGeometry]:
    if geom.is_empty:
        raise DecodeError("empty geometry")
    if geom.geom_type == "LineString":
        return [_line_from_coords(geom.coords)]
    if geom.geom_type == "MultiLineString":
        parts = []
        for part in geom.geoms:
            try:
                parts.append(_line_from_coords(part.coords))
            except DecodeError:
                continue
        if not parts:
            raise DecodeError("MultiLineString has no usable parts")
        return parts
    raise DecodeError(f"unsupported geometry type {geom.geom_type}")


def _pick(parts: List[LineGeometry], policy: MultiLinePolicy) -> LineGeometry:
    if policy == MultiLinePolicy.LONGEST and len(parts) > 1:
        return max(parts, key=lambda p: polyline_length_m(p.coords))
    return parts[0]


def decode(blob: bytes, policy: MultiLinePolicy = MultiLinePolicy.FIRST) -> LineGeometry:
    """Decode one geometry blob into a single line.  Raises ``DecodeError``."""
    return _pick(_parts(_load_geometry(blob)), MultiLinePolicy(policy))


def decode_parts(blob: bytes) -> List[LineGeometry]:
    """Every constituent line of the blob, in stored order."""
    return _parts(_load_geometry(blob))


def from_geojson(obj: Dict[str, Any], policy: MultiLinePolicy = MultiLinePolicy.FIRST) -> LineGeometry:
    """Decode a GeoJSON LineString / MultiLineString geometry."""
    if not isinstance(obj, dict) or "type" not in obj:
        raise DecodeError("not a GeoJSON geometry")
    try:
        geom = shape(obj)
    except (ShapelyError, ValueError, TypeError, KeyError, IndexError) as e:
        raise DecodeError(f"malformed GeoJSON: {e}") from e
    return _pick(_parts(geom), MultiLinePolicy(policy))


def from_shapely(geom: BaseGeometry, policy: MultiLinePolicy = MultiLinePolicy.FIRST) -> List[LineGeometry]:
    """Lines for a shapely geometry: one line, or every part under the ``all`` policy."""
    parts = _parts(geom)
    policy = MultiLinePolicy(policy)
    if policy == MultiLinePolicy.ALL:
        return parts
    return [_pick(parts, policy)]
