"""File-backed geometry source: dataset files parsed once into in-memory STRtree indexes."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from shapely import STRtree
from shapely.geometry import LineString, box

from roadnet.config import settings
from roadnet.contracts.geometry import BBox, LineGeometry, LonLat, NearestEdgeResult, RoadEdge
from roadnet.errors import SourceUnavailable
from roadnet.geo import datasets
from roadnet.geo.datasets import DatasetFile, ReadStats
from roadnet.geo.decoder import MultiLinePolicy
from roadnet.geo.geodesy import bbox_around, haversine_m, point_line_distance_m
from roadnet.sources.base import GeometrySource

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatasetIndex:
    """Read-only index over one dataset file."""

    dataset: DatasetFile
    edges: Tuple[RoadEdge, ...]
    lines: Tuple[LineString, ...]
    tree: STRtree
    by_id: Mapping[str, int]
    stats: ReadStats

    def candidates(self, area: BBox) -> List[int]:
        hits: List[int] = []
        for b in _wrapped_boxes(area):
            hits.extend(int(i) for i in self.tree.query(b))
        return sorted(set(hits))


def _wrapped_boxes(area: BBox):
    """Query boxes for ``area``, splitting it where it crosses the antimeridian."""
    boxes = [box(*area.as_tuple())]
    if area.min_lon < -180.0:
        boxes.append(box(area.min_lon + 360.0, area.min_lat, 180.0, area.max_lat))
    if area.max_lon > 180.0:
        boxes.append(box(-180.0, area.min_lat, area.max_lon - 360.0, area.max_lat))
    return boxes


def build_index(dataset: DatasetFile, policy: MultiLinePolicy) -> DatasetIndex:
    stats = ReadStats()
    edges: List[RoadEdge] = []
    by_id: Dict[str, int] = {}
    for edge in datasets.read_edges(dataset, policy, stats):
        if edge.edge_id in by_id:
            continue
        by_id[edge.edge_id] = len(edges)
        edges.append(edge)

    lines = tuple(e.geometry.to_shapely() for e in edges)
    log.info(
        "Indexed %s: %d edges from %d features (%d decode errors, %d without id)",
        dataset.name, len(edges), stats.features, stats.decode_errors, stats.missing_ids,
    )
    return DatasetIndex(
        dataset=dataset,
        edges=tuple(edges),
        lines=lines,
        tree=STRtree(lines),
        by_id=by_id,
        stats=stats,
    )


class FileGeometrySource(GeometrySource):
    """Nearest/within queries over dataset files held in memory.

    Indexes are built lazily on a worker thread, at most once at a time, and
    swapped in as a whole so readers never observe a partially built index.
    """

    name = "file"

    def __init__(
        self,
        dataset_dir: Optional[str] = None,
        scopes: Optional[Mapping[str, str]] = None,
        policy: Optional[str] = None,
        load_timeout_s: Optional[float] = None,
        query_timeout_s: Optional[float] = None,
        candidate_cap: Optional[int] = None,
        early_exit_m: Optional[float] = None,
        workers: Optional[int] = None,
    ):
        self.dataset_dir = dataset_dir or settings.dataset_dir
        self.scopes = dict(scopes if scopes is not None else settings.dataset_scopes)
        self.policy = MultiLinePolicy(policy or settings.multiline_policy)
        self.load_timeout_s = load_timeout_s if load_timeout_s is not None else settings.file_load_timeout_s
        self.query_timeout_s = query_timeout_s if query_timeout_s is not None else settings.file_load_timeout_s
        self.candidate_cap = candidate_cap or settings.nearest_candidate_cap
        self.early_exit_m = early_exit_m if early_exit_m is not None else settings.nearest_early_exit_m

        self._executor = ThreadPoolExecutor(
            max_workers=workers or settings.file_workers, thread_name_prefix="roadnet-file"
        )
        self._lock = threading.Lock()
        self._indexes: Optional[Dict[str, DatasetIndex]] = None
        self._pending: Optional[Future] = None

    # ------------------------------------------------------------------
    # Index lifecycle
    # ------------------------------------------------------------------

    def _load_all(self) -> Dict[str, DatasetIndex]:
        out: Dict[str, DatasetIndex] = {}
        for ds in datasets.discover(self.dataset_dir, self.scopes):
            try:
                out[ds.name] = build_index(ds, self.policy)
            except Exception as exc:
                # One unreadable file must not hide the others
                log.error("Could not index %s: %s", ds.name, exc)
        return out

    def _wait(self, fut: Future) -> Dict[str, DatasetIndex]:
        try:
            return fut.result(timeout=self.load_timeout_s)
        except FuturesTimeout:
            raise SourceUnavailable(self.name, f"index build exceeded {self.load_timeout_s}s")
        except Exception as exc:
            with self._lock:
                if self._pending is fut:
                    self._pending = None
            raise SourceUnavailable(self.name, f"index build failed: {exc}") from exc

    def indexes(self) -> Dict[str, DatasetIndex]:
        current = self._indexes
        if current is not None:
            return current
        with self._lock:
            if self._indexes is not None:
                return self._indexes
            if self._pending is None:
                log.info("Building dataset indexes from %s", self.dataset_dir)
                self._pending = self._executor.submit(self._load_all)
            fut = self._pending
        built = self._wait(fut)
        with self._lock:
            if self._pending is fut:
                self._indexes = built
                self._pending = None
            return self._indexes if self._indexes is not None else built

    def invalidate(self) -> Dict[str, DatasetIndex]:
        """Rebuild every index and swap the new set in atomically."""
        fut = self._executor.submit(self._load_all)
        built = self._wait(fut)
        with self._lock:
            self._indexes = built
        log.info("Dataset indexes rebuilt (%d file(s))", len(built))
        return built

    def _selected(self, scope: Optional[str]) -> List[DatasetIndex]:
        idx = self.indexes()
        if not idx:
            raise SourceUnavailable(self.name, f"no dataset files in {self.dataset_dir}")
        if scope is None:
            return list(idx.values())
        return [i for i in idx.values() if i.dataset.scope_id == scope]

    def _run(self, fn, *args):
        fut = self._executor.submit(fn, *args)
        try:
            return fut.result(timeout=self.query_timeout_s)
        except FuturesTimeout:
            raise SourceUnavailable(self.name, f"query exceeded {self.query_timeout_s}s")

    # ------------------------------------------------------------------
    # GeometrySource
    # ------------------------------------------------------------------

    def find_nearest(
        self, point: LonLat, radius_m: float, scope: Optional[str] = None
    ) -> Optional[NearestEdgeResult]:
        selected = self._selected(scope)
        return self._run(self._find_nearest, selected, point, radius_m)

    def _find_nearest(
        self, selected: List[DatasetIndex], point: LonLat, radius_m: float
    ) -> Optional[NearestEdgeResult]:
        lon, lat = point
        area = bbox_around(lon, lat, radius_m)

        # Approximate distance to each candidate's envelope centre
        ranked: List[Tuple[float, RoadEdge, str]] = []
        for idx in selected:
            for i in idx.candidates(area):
                edge = idx.edges[i]
                bb = edge.geometry.bbox
                c_lon = (bb.min_lon + bb.max_lon) / 2.0
                c_lat = (bb.min_lat + bb.max_lat) / 2.0
                ranked.append((haversine_m(lon, lat, c_lon, c_lat), edge, idx.dataset.name))

        if not ranked:
            return None
        ranked.sort(key=lambda r: r[0])
        if len(ranked) > self.candidate_cap:
            log.debug("Capping %d nearest-edge candidates to %d", len(ranked), self.candidate_cap)
            ranked = ranked[: self.candidate_cap]

        best: Optional[Tuple[float, RoadEdge, str]] = None
        for _approx, edge, dataset_name in ranked:
            dist = point_line_distance_m(point, edge.geometry.coords)
            if dist <= radius_m and (best is None or dist < best[0]):
                best = (dist, edge, dataset_name)
                # Good enough given GPS noise
                if dist < self.early_exit_m:
                    break

        if best is None:
            return None
        dist, edge, dataset_name = best
        return NearestEdgeResult(
            road_id=edge.edge_id,
            distance_m=dist,
            geometry=edge.geometry,
            name=edge.name,
            road_class=edge.road_class,
            source=self.name,
            meta={"dataset": dataset_name, "candidates": len(ranked)},
        )

    def get_geometries(self, road_ids: Iterable[str]) -> Dict[str, LineGeometry]:
        wanted = {str(r) for r in road_ids}
        out: Dict[str, LineGeometry] = {}
        if not wanted:
            return out
        for idx in self._selected(None):
            for rid in list(wanted):
                i = idx.by_id.get(rid)
                if i is not None:
                    out[rid] = idx.edges[i].geometry
                    wanted.discard(rid)
            if not wanted:
                break
        return out

    def query_bbox(
        self,
        bbox: BBox,
        scope: Optional[str] = None,
        simplify_tolerance: Optional[float] = None,
    ) -> Iterator[RoadEdge]:
        selected = self._selected(scope)
        edges = self._run(self._query_bbox, selected, bbox, simplify_tolerance)
        return iter(edges)

    def _query_bbox(
        self, selected: List[DatasetIndex], bbox: BBox, simplify_tolerance: Optional[float]
    ) -> List[RoadEdge]:
        area = box(*bbox.as_tuple())
        out: List[RoadEdge] = []
        for idx in selected:
            for i in idx.candidates(bbox):
                line = idx.lines[i]
                if not line.intersects(area):
                    continue
                edge = idx.edges[i]
                if simplify_tolerance:
                    simple = line.simplify(simplify_tolerance, preserve_topology=False)
                    if not simple.is_empty and len(simple.coords) >= 2:
                        edge = RoadEdge(
                            edge_id=edge.edge_id,
                            geometry=LineGeometry.of(simple.coords),
                            name=edge.name,
                            road_class=edge.road_class,
                            scope_id=edge.scope_id,
                        )
                out.append(edge)
        return out

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
