"""Load dataset files into the PostGIS ``roads`` table."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from geoalchemy2.elements import WKTElement
from sqlalchemy import delete, insert
from sqlalchemy.engine import Engine

from roadnet.config import settings
from roadnet.errors import RoadnetError
from roadnet.geo import datasets
from roadnet.geo.datasets import ReadStats
from roadnet.geo.decoder import MultiLinePolicy
from roadnet.storage.db import get_engine, init_db, is_postgres
from roadnet.storage.tables import Road

log = logging.getLogger(__name__)

BATCH_SIZE = 1000


def _wkt(coords) -> str:
    return "LINESTRING(" + ", ".join(f"{lon!r} {lat!r}" for lon, lat in coords) + ")"


def import_datasets(
    engine: Optional[Engine] = None,
    dataset_dir: Optional[str] = None,
    scopes: Optional[Dict[str, str]] = None,
    policy: Optional[str] = None,
    only_mapped: bool = True,
) -> Dict[str, int]:
    """Replace each mapped scope's rows in ``roads`` with its dataset file.

    Returns the number of edges inserted per file.
    """
    engine = engine or get_engine()
    if not is_postgres(engine):
        raise RoadnetError(f"road import needs PostgreSQL/PostGIS, got {engine.dialect.name}")

    init_db(engine)
    scopes = scopes if scopes is not None else settings.dataset_scopes
    policy = MultiLinePolicy(policy or settings.multiline_policy)

    counts: Dict[str, int] = {}
    for ds in datasets.discover(dataset_dir or settings.dataset_dir, scopes):
        if ds.scope_id is None and only_mapped:
            log.warning("Skipping %s: no scope mapped for this file", ds.name)
            continue

        stats = ReadStats()
        inserted = 0
        with engine.begin() as conn:
            if ds.scope_id is None:
                conn.execute(delete(Road).where(Road.scope_id.is_(None)))
            else:
                conn.execute(delete(Road).where(Road.scope_id == ds.scope_id))

            batch: List[dict] = []
            for edge in datasets.read_edges(ds, policy, stats):
                batch.append(
                    {
                        "edge_id": edge.edge_id,
                        "scope_id": ds.scope_id,
                        "name": edge.name,
                        "highway": edge.road_class,
                        "geom": WKTElement(_wkt(edge.geometry.coords), srid=4326),
                    }
                )
                if len(batch) >= BATCH_SIZE:
                    conn.execute(insert(Road), batch)
                    inserted += len(batch)
                    log.info("  %s: %d edges inserted", ds.name, inserted)
                    batch = []
            if batch:
                conn.execute(insert(Road), batch)
                inserted += len(batch)

        counts[ds.name] = inserted
        log.info(
            "Imported %s into scope %s: %d edges (%d decode errors, %d without id)",
            ds.name, ds.scope_id, inserted, stats.decode_errors, stats.missing_ids,
        )
    return counts
