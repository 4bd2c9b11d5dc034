"""PostGIS-backed geometry source.

Queries the ``roads`` table filled by :func:`roadnet.storage.importer.import_datasets`.
Every statement runs under ``SET LOCAL statement_timeout``; timeouts, connection
errors and missing tables all surface as ``SourceUnavailable``.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from roadnet.config import settings
from roadnet.contracts.geometry import BBox, LineGeometry, LonLat, NearestEdgeResult, RoadEdge
from roadnet.errors import DecodeError, SourceUnavailable
from roadnet.geo import decoder
from roadnet.sources.base import GeometrySource
from roadnet.storage.db import get_engine, is_postgres

log = logging.getLogger(__name__)

_POINT = "ST_SetSRID(ST_MakePoint(:lng, :lat), 4326)"

_NEAREST_SQL = f"""
SELECT edge_id, name, highway,
       ST_AsGeoJSON(geom) AS geojson,
       ST_Distance(geom::geography, {_POINT}::geography) AS distance_m
FROM roads
WHERE ST_DWithin(geom::geography, {_POINT}::geography, :radius)
  {{scope_clause}}
ORDER BY geom <-> {_POINT}
LIMIT 1
"""

_GEOMETRIES_SQL = "SELECT edge_id, ST_AsGeoJSON(geom) AS geojson FROM roads WHERE edge_id IN :ids"

_BBOX_SQL = """
SELECT edge_id, name, highway, ST_AsGeoJSON({geom_expr}) AS geojson
FROM roads
WHERE geom && ST_MakeEnvelope(:min_lon, :min_lat, :max_lon, :max_lat, 4326)
  AND ST_Intersects(geom, ST_MakeEnvelope(:min_lon, :min_lat, :max_lon, :max_lat, 4326))
  {scope_clause}
"""


class DatabaseGeometrySource(GeometrySource):
    """Nearest/within queries delegated to PostGIS."""

    name = "database"

    def __init__(self, engine: Optional[Engine] = None, statement_timeout_ms: Optional[int] = None):
        self._engine = engine
        self.statement_timeout_ms = int(
            statement_timeout_ms if statement_timeout_ms is not None else settings.db_statement_timeout_ms
        )

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = get_engine()
        return self._engine

    def _query(self, sql: str, params: Mapping[str, Any], expanding: Iterable[str] = ()) -> List[Mapping[str, Any]]:
        engine = self.engine
        if not is_postgres(engine):
            raise SourceUnavailable(self.name, f"{engine.dialect.name} has no spatial support")
        stmt = text(sql)
        for p in expanding:
            stmt = stmt.bindparams(bindparam(p, expanding=True))
        try:
            with engine.begin() as conn:
                conn.execute(text(f"SET LOCAL statement_timeout = {self.statement_timeout_ms}"))
                return [dict(r) for r in conn.execute(stmt, dict(params)).mappings()]
        except SQLAlchemyError as e:
            log.warning("PostGIS query failed: %s", e)
            raise SourceUnavailable(self.name, str(e).splitlines()[0]) from e

    @staticmethod
    def _line(geojson: Optional[str]) -> LineGeometry:
        if not geojson:
            raise DecodeError("row has no geometry")
        return decoder.from_geojson(json.loads(geojson))

    # ------------------------------------------------------------------

    def find_nearest(
        self, point: LonLat, radius_m: float, scope: Optional[str] = None
    ) -> Optional[NearestEdgeResult]:
        lng, lat = point
        params: Dict[str, Any] = {"lng": lng, "lat": lat, "radius": float(radius_m)}
        scope_clause = ""
        if scope is not None:
            scope_clause = "AND scope_id = :scope"
            params["scope"] = scope

        rows = self._query(_NEAREST_SQL.format(scope_clause=scope_clause), params)
        if not rows:
            return None
        row = rows[0]
        try:
            geometry = self._line(row["geojson"])
        except DecodeError as e:
            raise SourceUnavailable(self.name, f"undecodable geometry for edge {row['edge_id']}: {e}") from e
        return NearestEdgeResult(
            road_id=str(row["edge_id"]),
            distance_m=float(row["distance_m"]),
            geometry=geometry,
            name=row["name"] or row["highway"],
            road_class=row["highway"],
            source=self.name,
        )

    def get_geometries(self, road_ids: Iterable[str]) -> Dict[str, LineGeometry]:
        ids = sorted({str(r) for r in road_ids})
        if not ids:
            return {}
        out: Dict[str, LineGeometry] = {}
        for row in self._query(_GEOMETRIES_SQL, {"ids": ids}, expanding=("ids",)):
            rid = str(row["edge_id"])
            if rid in out:
                continue
            try:
                out[rid] = self._line(row["geojson"])
            except DecodeError as e:
                log.debug("Skipping geometry for %s: %s", rid, e)
        return out

    def query_bbox(
        self,
        bbox: BBox,
        scope: Optional[str] = None,
        simplify_tolerance: Optional[float] = None,
    ) -> Iterator[RoadEdge]:
        params: Dict[str, Any] = {
            "min_lon": bbox.min_lon,
            "min_lat": bbox.min_lat,
            "max_lon": bbox.max_lon,
            "max_lat": bbox.max_lat,
        }
        geom_expr = "geom"
        if simplify_tolerance:
            geom_expr = "ST_Simplify(geom, :tol)"
            params["tol"] = float(simplify_tolerance)
        scope_clause = ""
        if scope is not None:
            scope_clause = "AND scope_id = :scope"
            params["scope"] = scope

        rows = self._query(_BBOX_SQL.format(geom_expr=geom_expr, scope_clause=scope_clause), params)
        return self._edges(rows, scope)

    def _edges(self, rows: List[Mapping[str, Any]], scope: Optional[str]) -> Iterator[RoadEdge]:
        for row in rows:
            try:
                geometry = self._line(row["geojson"])
            except DecodeError:
                # Simplification can collapse short edges to a point
                continue
            yield RoadEdge(
                edge_id=str(row["edge_id"]),
                geometry=geometry,
                name=row["name"] or row["highway"],
                road_class=row["highway"],
                scope_id=scope,
            )
