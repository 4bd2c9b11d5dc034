from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

from shapely.geometry import LineString

LonLat = Tuple[float, float]

_SEGMENT_ID_RE = re.compile(r"^(.+)_seg_(\d+)$")


@dataclass(frozen=True)
class BBox:
    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    @classmethod
    def parse(cls, text: str) -> "BBox":
        """Parse ``minLng,minLat,maxLng,maxLat`` (corners in any order)."""
        parts = [float(p) for p in text.split(",")]
        if len(parts) != 4:
            raise ValueError(f"bbox needs 4 numbers, got {len(parts)}")
        a_lon, a_lat, b_lon, b_lat = parts
        return cls(min(a_lon, b_lon), min(a_lat, b_lat), max(a_lon, b_lon), max(a_lat, b_lat))

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.min_lon, self.min_lat, self.max_lon, self.max_lat)

    def intersects(self, other: "BBox") -> bool:
        return (
            self.min_lon <= other.max_lon
            and self.max_lon >= other.min_lon
            and self.min_lat <= other.max_lat
            and self.max_lat >= other.min_lat
        )


@dataclass(frozen=True)
class LineGeometry:
    """Ordered polyline of (lon, lat) vertices."""

    coords: Tuple[LonLat, ...]

    @classmethod
    def of(cls, coords: Sequence[Sequence[float]]) -> "LineGeometry":
        return cls(tuple((float(c[0]), float(c[1])) for c in coords))

    def __len__(self) -> int:
        return len(self.coords)

    @property
    def bbox(self) -> BBox:
        lons = [c[0] for c in self.coords]
        lats = [c[1] for c in self.coords]
        return BBox(min(lons), min(lats), max(lons), max(lats))

    def to_shapely(self) -> LineString:
        return LineString(self.coords)

    def to_geojson(self) -> Dict[str, Any]:
        return {"type": "LineString", "coordinates": [[lon, lat] for lon, lat in self.coords]}


@dataclass(frozen=True)
class RoadEdge:
    edge_id: str
    geometry: LineGeometry
    name: Optional[str] = None
    road_class: Optional[str] = None
    scope_id: Optional[str] = None


@dataclass(frozen=True, order=True)
class SegmentKey:
    """Identity of a rated unit: an edge segment, or the whole edge when index is None."""

    edge_id: str
    index: Optional[int] = None

    @property
    def segment_id(self) -> Optional[str]:
        if self.index is None:
            return None
        return f"{self.edge_id}_seg_{self.index}"

    @classmethod
    def parse(cls, road_or_segment_id: str) -> "SegmentKey":
        m = _SEGMENT_ID_RE.match(road_or_segment_id)
        if m:
            return cls(m.group(1), int(m.group(2)))
        return cls(road_or_segment_id, None)


@dataclass(frozen=True)
class Segment:
    edge_id: str
    index: int
    start_distance_m: float
    end_distance_m: float
    geometry: LineGeometry

    @property
    def segment_id(self) -> str:
        return f"{self.edge_id}_seg_{self.index}"

    @property
    def length_m(self) -> float:
        return self.end_distance_m - self.start_distance_m


@dataclass(frozen=True)
class NearestEdgeResult:
    road_id: str
    distance_m: float
    geometry: LineGeometry
    name: Optional[str] = None
    road_class: Optional[str] = None
    source: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_feature(self) -> Dict[str, Any]:
        """GeoJSON Feature for direct map consumption."""
        return {
            "type": "Feature",
            "properties": {
                "edgeId": self.road_id,
                "distanceMeters": self.distance_m,
                "roadName": self.name,
                "projectId": None,
            },
            "geometry": self.geometry.to_geojson(),
        }

    def to_cache(self) -> Dict[str, Any]:
        return {
            "road_id": self.road_id,
            "distance_m": self.distance_m,
            "coords": [list(c) for c in self.geometry.coords],
            "name": self.name,
            "road_class": self.road_class,
            "source": self.source,
        }

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "NearestEdgeResult":
        return cls(
            road_id=data["road_id"],
            distance_m=float(data["distance_m"]),
            geometry=LineGeometry.of(data["coords"]),
            name=data.get("name"),
            road_class=data.get("road_class"),
            source=data.get("source"),
        )
