from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Iterable, Iterator, Optional

from roadnet.contracts.geometry import BBox, LineGeometry, LonLat, NearestEdgeResult, RoadEdge


class GeometrySource(ABC):
    """Read access to road edge geometries.

    Implementations raise ``SourceUnavailable`` on timeout, connection loss or
    missing data; callers treat that as "try the next source".
    """

    name: str = "source"

    @abstractmethod
    def find_nearest(
        self, point: LonLat, radius_m: float, scope: Optional[str] = None
    ) -> Optional[NearestEdgeResult]:
        raise NotImplementedError

    @abstractmethod
    def get_geometries(self, road_ids: Iterable[str]) -> Dict[str, LineGeometry]:
        raise NotImplementedError

    @abstractmethod
    def query_bbox(
        self,
        bbox: BBox,
        scope: Optional[str] = None,
        simplify_tolerance: Optional[float] = None,
    ) -> Iterator[RoadEdge]:
        raise NotImplementedError

    def close(self) -> None:
        pass
