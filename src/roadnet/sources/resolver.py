from __future__ import annotations

import logging
import math
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from roadnet.cache import keys
from roadnet.cache.redis_client import cache_get_json, cache_set_json
from roadnet.cache.ttl import MISS, TTLCache
from roadnet.config import settings
from roadnet.contracts.geometry import BBox, LineGeometry, NearestEdgeResult, RoadEdge
from roadnet.errors import SourceUnavailable, ValidationError
from roadnet.geo.geodesy import MAX_RADIUS_M, is_valid_lonlat
from roadnet.sources.base import GeometrySource

log = logging.getLogger(__name__)


class NearestEdgeResolver:
    """
    Tries geometry sources in priority order and caches nearest-edge answers.

    A source that raises (timeout, lost connection, no data) is skipped; a
    ``None`` from a source that answered is a real "nothing nearby" and is
    cached too.  Only when every source fails does ``SourceUnavailable`` reach
    the caller.
    """

    def __init__(
        self,
        sources: List[GeometrySource],
        cache: Optional[TTLCache] = None,
        use_redis: bool = True,
    ):
        self.sources = list(sources)
        self.cache = cache if cache is not None else TTLCache(
            ttl_s=settings.nearest_ttl_s, max_entries=settings.nearest_cache_size
        )
        self.use_redis = use_redis

    # ------------------------------------------------------------------
    # Fallback chain
    # ------------------------------------------------------------------

    def first_available(self, op: Callable[[GeometrySource], Any], what: str) -> Tuple[Any, str]:
        errors: List[str] = []
        for src in self.sources:
            try:
                return op(src), src.name
            except SourceUnavailable as e:
                log.info("%s: %s, trying next source", what, e)
                errors.append(str(e))
            except Exception as e:
                log.warning("%s: %s source failed unexpectedly: %s", what, src.name, e, exc_info=True)
                errors.append(f"{src.name}: {type(e).__name__}: {e}")
        raise SourceUnavailable("all sources", "; ".join(errors) or "no sources configured")

    # ------------------------------------------------------------------
    # Nearest edge
    # ------------------------------------------------------------------

    def resolve(
        self,
        lat: float,
        lng: float,
        radius_m: Optional[float] = None,
        scope: Optional[str] = None,
    ) -> Optional[NearestEdgeResult]:
        try:
            lat = float(lat)
            lng = float(lng)
            radius_m = float(radius_m if radius_m is not None else settings.nearest_default_radius_m)
        except (TypeError, ValueError):
            raise ValidationError(f"invalid coordinates lat={lat!r} lng={lng!r}")
        if not is_valid_lonlat(lng, lat):
            raise ValidationError(f"coordinates out of range: lat={lat} lng={lng}")
        if not math.isfinite(radius_m) or radius_m <= 0:
            raise ValidationError(f"radius must be a positive number, got {radius_m}")
        radius_m = min(radius_m, MAX_RADIUS_M)

        key = keys.nearest_edge(lat, lng, radius_m, scope)
        hit = self.cache.get(key)
        if hit is not MISS:
            return hit

        if self.use_redis:
            cached = cache_get_json(key)
            if cached is not None:
                result = NearestEdgeResult.from_cache(cached["result"]) if cached.get("result") else None
                self.cache.put(key, result)
                return result

        result, source = self.first_available(
            lambda src: src.find_nearest((lng, lat), radius_m, scope), "nearest-edge"
        )
        log.debug("nearest-edge %.5f,%.5f r=%s -> %s via %s",
                  lat, lng, radius_m, result.road_id if result else None, source)

        self.cache.put(key, result)
        if self.use_redis:
            cache_set_json(
                key,
                {"result": result.to_cache() if result is not None else None},
                int(self.cache.ttl_s),
            )
        return result

    # ------------------------------------------------------------------
    # Geometry lookups
    # ------------------------------------------------------------------

    def get_geometries(self, road_ids: Iterable[str]) -> Dict[str, LineGeometry]:
        """Merge lookups across sources; the first source to know an id wins."""
        wanted = {str(r) for r in road_ids}
        out: Dict[str, LineGeometry] = {}
        errors: List[str] = []
        answered = False
        for src in self.sources:
            missing = wanted - out.keys()
            if not missing:
                break
            try:
                found = src.get_geometries(missing)
            except SourceUnavailable as e:
                errors.append(str(e))
                continue
            except Exception as e:
                log.warning("geometries: %s source failed unexpectedly: %s", src.name, e, exc_info=True)
                errors.append(f"{src.name}: {type(e).__name__}: {e}")
                continue
            answered = True
            for rid, geom in found.items():
                out.setdefault(rid, geom)
        if wanted and not answered:
            raise SourceUnavailable("all sources", "; ".join(errors) or "no sources configured")
        return out

    def query_bbox(
        self,
        bbox: BBox,
        scope: Optional[str] = None,
        simplify_tolerance: Optional[float] = None,
    ) -> List[RoadEdge]:
        edges, _source = self.first_available(
            lambda src: list(src.query_bbox(bbox, scope, simplify_tolerance)), "bbox"
        )
        return edges

    def invalidate(self) -> None:
        self.cache.invalidate()

    def close(self) -> None:
        for src in self.sources:
            src.close()


def build_sources(source_str: str = "database+file") -> List[GeometrySource]:
    """
    Build a source stack from a string like:
      "database+file"   (default: PostGIS first, dataset files as fallback)
      "file"
    """
    tokens = [t.strip().lower() for t in source_str.split("+") if t.strip()]
    if not tokens:
        tokens = ["database", "file"]

    # Local imports to avoid loading both backends when only one is used
    from roadnet.sources.db_source import DatabaseGeometrySource
    from roadnet.sources.file_source import FileGeometrySource

    sources: List[GeometrySource] = []
    for t in tokens:
        if t in ("database", "db", "postgis"):
            sources.append(DatabaseGeometrySource())
        elif t in ("file", "files", "gpkg"):
            sources.append(FileGeometrySource())
        else:
            raise ValueError(f"Unknown source token: '{t}' (supported: database, file)")
    return sources


def build_resolver(source_str: str = "database+file") -> NearestEdgeResolver:
    return NearestEdgeResolver(build_sources(source_str))
