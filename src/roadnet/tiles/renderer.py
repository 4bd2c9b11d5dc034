"""Mapbox vector tiles of the road network coloured by current rating."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any, Dict, List, Optional, Sequence

import mapbox_vector_tile
import shapely
from shapely.geometry import LineString
from sqlalchemy.exc import SQLAlchemyError

from roadnet.cache import keys
from roadnet.cache.redis_client import cache_delete_pattern, cache_get_bytes, cache_set_bytes
from roadnet.config import settings
from roadnet.contracts.geometry import LonLat, RoadEdge
from roadnet.core.colors import color_for
from roadnet.core.ratings import edge_ratings
from roadnet.errors import SourceUnavailable
from roadnet.geo.geodesy import mercator_xy, tile_bbox
from roadnet.storage.db import get_session_factory

log = logging.getLogger(__name__)

LAYER_NAME = "roads"
MAX_ZOOM = 24
# Geometry kept beyond the tile edge, in tile units
BUFFER = 64


def simplify_tolerance(z: int) -> float:
    """Degrees; coarser at low zoom."""
    return 0.0001 if z < 10 else 0.00001


def valid_tile(z: int, x: int, y: int) -> bool:
    if not (0 <= z <= MAX_ZOOM):
        return False
    n = 1 << z
    return 0 <= x < n and 0 <= y < n


def _to_tile(coords: Sequence[LonLat], z: int, x: int, y: int, extent: int) -> List[tuple]:
    n = float(1 << z)
    out = []
    for lon, lat in coords:
        mx, my = mercator_xy(lon, lat)
        out.append(((mx * n - x) * extent, (my * n - y) * extent))
    return out


class TileRenderer:
    def __init__(
        self,
        resolver,
        session_factory=None,
        timeout_s: Optional[float] = None,
        extent: Optional[int] = None,
        use_redis: bool = True,
        workers: int = 4,
    ):
        self.resolver = resolver
        self._session_factory = session_factory
        self.timeout_s = timeout_s if timeout_s is not None else settings.tile_render_timeout_s
        self.extent = extent or settings.tile_extent
        self.use_redis = use_redis
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="roadnet-tile")

    @property
    def session_factory(self):
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    def render(self, z: int, x: int, y: int, scope: Optional[str] = None) -> Optional[bytes]:
        """Encoded tile, or None for an empty tile, a bad address, no source or a timeout."""
        if not valid_tile(z, x, y):
            log.debug("Invalid tile address %s/%s/%s", z, x, y)
            return None

        cache_key = keys.road_tile(z, x, y, scope)
        if self.use_redis:
            cached = cache_get_bytes(cache_key)
            if cached is not None:
                return cached or None

        fut = self._executor.submit(self._render, z, x, y, scope)
        try:
            data = fut.result(timeout=self.timeout_s)
        except FuturesTimeout:
            fut.cancel()
            log.warning("Tile %s/%s/%s exceeded %.1fs, returning empty", z, x, y, self.timeout_s)
            return None
        except SourceUnavailable as e:
            log.warning("Tile %s/%s/%s: %s", z, x, y, e)
            return None

        if self.use_redis:
            cache_set_bytes(cache_key, data or b"", settings.tile_cache_ttl_s)
        return data

    def _features(self, edges: List[RoadEdge], ratings: Dict[str, float], z: int, x: int, y: int) -> List[Dict[str, Any]]:
        lo, hi = -BUFFER, self.extent + BUFFER
        features = []
        for edge in edges:
            pts = _to_tile(edge.geometry.coords, z, x, y, self.extent)
            if len(pts) < 2:
                continue
            geom = shapely.clip_by_rect(LineString(pts), lo, lo, hi, hi)
            if geom.is_empty:
                continue
            eiri = ratings.get(edge.edge_id, 0.0)
            props = {
                "edge_id": edge.edge_id,
                "name": edge.name,
                "highway": edge.road_class,
                "eiri": eiri,
                "color": color_for(eiri),
            }
            features.append({"geometry": geom, "properties": {k: v for k, v in props.items() if v is not None}})
        return features

    def _render(self, z: int, x: int, y: int, scope: Optional[str]) -> Optional[bytes]:
        bbox = tile_bbox(z, x, y)
        edges = self.resolver.query_bbox(bbox, scope, simplify_tolerance(z))
        if not edges:
            return None

        session = self.session_factory()
        try:
            ratings = edge_ratings(session, scope, {e.edge_id for e in edges})
        except SQLAlchemyError as e:
            log.warning("Tile %s/%s/%s rendered without ratings: %s", z, x, y, e)
            ratings = {}
        finally:
            session.close()

        features = self._features(edges, ratings, z, x, y)
        if not features:
            return None
        data = mapbox_vector_tile.encode(
            [{"name": LAYER_NAME, "features": features}],
            default_options={"extents": self.extent, "y_coord_down": True},
        )
        log.debug("Tile %s/%s/%s: %d feature(s), %d bytes", z, x, y, len(features), len(data))
        return data

    def invalidate(self, scope: Optional[str] = None) -> int:
        """Drop cached tiles of a scope (after ratings change)."""
        if not self.use_redis:
            return 0
        return cache_delete_pattern(keys.road_tile_pattern(scope))

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
