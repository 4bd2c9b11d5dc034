"""Road dataset files: discovery, tenant mapping, download and feature reading.

Dataset files live in ``settings.dataset_dir``, one file per tenant-mapped area.
Both GeoPackage (``.gpkg``) and ESRI Shapefile (``.shp``) are read.
"""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

import requests
import shapefile  # pyshp
from requests.exceptions import ConnectionError, ReadTimeout
from shapely.geometry import shape
from sqlalchemy import create_engine, text

from roadnet.contracts.geometry import RoadEdge
from roadnet.errors import DecodeError
from roadnet.geo import decoder
from roadnet.geo.decoder import MultiLinePolicy

log = logging.getLogger(__name__)

DATASET_SUFFIXES = (".gpkg", ".shp")

# Attribute columns, in lookup priority order
EDGE_ID_COLUMNS = ("osm_id", "full_id", "fid")
NAME_COLUMNS = ("name", "highway")
CLASS_COLUMN = "highway"


@dataclass(frozen=True)
class DatasetFile:
    path: Path
    scope_id: Optional[str] = None

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class ReadStats:
    features: int = 0
    edges: int = 0
    decode_errors: int = 0
    missing_ids: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


def discover(dataset_dir: str | os.PathLike, scopes: Mapping[str, str]) -> List[DatasetFile]:
    """List dataset files in ``dataset_dir`` with their mapped tenant (if any)."""
    d = Path(dataset_dir)
    if not d.is_dir():
        log.warning("Dataset directory not found: %s", d)
        return []
    out = []
    for p in sorted(d.iterdir()):
        if p.suffix.lower() in DATASET_SUFFIXES and p.is_file():
            out.append(DatasetFile(path=p, scope_id=scopes.get(p.name)))
    if not out:
        log.warning("No dataset files found in %s", d)
    return out


# ---------------------------------------------------------------------------
# Attribute helpers
# ---------------------------------------------------------------------------

def _first_present(props: Mapping[str, Any], columns) -> Optional[str]:
    for col in columns:
        v = props.get(col)
        if v is not None and str(v).strip() != "":
            return str(v)
    return None


def _edge_id(props: Mapping[str, Any]) -> Optional[str]:
    raw = _first_present(props, EDGE_ID_COLUMNS)
    if raw is None:
        return None
    # Integral float ids (e.g. from DBF numeric fields) keep their integer spelling
    try:
        f = float(raw)
        if f.is_integer() and "." in raw:
            return str(int(f))
    except ValueError:
        pass
    return raw


def _edges_for(props: Mapping[str, Any], lines, scope_id: Optional[str]) -> Iterator[RoadEdge]:
    edge_id = _edge_id(props)
    name = _first_present(props, NAME_COLUMNS)
    road_class = props.get(CLASS_COLUMN)
    for n, line in enumerate(lines):
        yield RoadEdge(
            edge_id=edge_id if n == 0 else f"{edge_id}:{n}",
            geometry=line,
            name=name,
            road_class=str(road_class) if road_class is not None else None,
            scope_id=scope_id,
        )


# ---------------------------------------------------------------------------
# GeoPackage
# ---------------------------------------------------------------------------

def _quote(ident: str) -> str:
    return '"' + ident.replace('"', '""') + '"'


def _gpkg_feature_table(conn) -> Optional[tuple[str, str]]:
    row = conn.execute(
        text(
            "SELECT c.table_name, g.column_name FROM gpkg_contents c "
            "JOIN gpkg_geometry_columns g ON g.table_name = c.table_name "
            "WHERE c.data_type = 'features' ORDER BY c.table_name LIMIT 1"
        )
    ).first()
    if row is None:
        return None
    return row[0], row[1]


def read_gpkg(path: Path, policy: MultiLinePolicy, scope_id: Optional[str], stats: ReadStats) -> Iterator[RoadEdge]:
    engine = create_engine(f"sqlite:///{path}", future=True)
    try:
        with engine.connect() as conn:
            table = _gpkg_feature_table(conn)
            if table is None:
                log.warning("No feature tables found in %s", path.name)
                return
            table_name, geom_col = table
            stats.extra["table"] = table_name
            log.info("Using feature table '%s' in %s", table_name, path.name)

            result = conn.execute(text(f"SELECT * FROM {_quote(table_name)}"))
            for row in result.mappings():
                stats.features += 1
                props = {k: v for k, v in row.items() if k != geom_col}
                blob = row.get(geom_col)
                try:
                    if policy == MultiLinePolicy.ALL:
                        lines = decoder.decode_parts(blob)
                    else:
                        lines = [decoder.decode(blob, policy)]
                except DecodeError as e:
                    stats.decode_errors += 1
                    log.debug("Skipping feature in %s: %s", path.name, e)
                    continue
                if _edge_id(props) is None:
                    stats.missing_ids += 1
                    continue
                for edge in _edges_for(props, lines, scope_id):
                    stats.edges += 1
                    yield edge
    finally:
        engine.dispose()


# ---------------------------------------------------------------------------
# Shapefile
# ---------------------------------------------------------------------------

def read_shapefile(path: Path, policy: MultiLinePolicy, scope_id: Optional[str], stats: ReadStats) -> Iterator[RoadEdge]:
    reader = shapefile.Reader(str(path))
    try:
        for i, sr in enumerate(reader.iterShapeRecords()):
            stats.features += 1
            props = sr.record.as_dict()
            props.setdefault("fid", i + 1)
            try:
                geom = shape(sr.shape.__geo_interface__)
                lines = decoder.from_shapely(geom, policy)
            except (DecodeError, ValueError, TypeError, AttributeError) as e:
                stats.decode_errors += 1
                log.debug("Skipping shape %d in %s: %s", i, path.name, e)
                continue
            if _edge_id(props) is None:
                stats.missing_ids += 1
                continue
            for edge in _edges_for(props, lines, scope_id):
                stats.edges += 1
                yield edge
    finally:
        reader.close()


def read_edges(dataset: DatasetFile, policy: MultiLinePolicy, stats: Optional[ReadStats] = None) -> Iterator[RoadEdge]:
    stats = stats if stats is not None else ReadStats()
    suffix = dataset.path.suffix.lower()
    if suffix == ".gpkg":
        return read_gpkg(dataset.path, policy, dataset.scope_id, stats)
    if suffix == ".shp":
        return read_shapefile(dataset.path, policy, dataset.scope_id, stats)
    raise ValueError(f"Unsupported dataset file: {dataset.path}")


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------

def download_dataset(
    url: str,
    filename: str,
    dataset_dir: str | os.PathLike,
    timeout_s: int = 120,
    tries: int = 4,
    backoff_s: float = 0.8,
) -> Path:
    """Fetch a tenant GIS file into the dataset directory.

    The file is written to a temporary name and renamed once complete, so the
    file-backed source never sees a partial download.
    """
    d = Path(dataset_dir)
    d.mkdir(parents=True, exist_ok=True)
    target = d / filename
    if Path(filename).suffix.lower() not in DATASET_SUFFIXES:
        raise ValueError(f"Dataset filename must end with one of {DATASET_SUFFIXES}")
    tmp = target.with_name(target.name + ".part")

    last_err: Optional[Exception] = None
    try:
        for attempt in range(tries):
            try:
                log.info("Downloading dataset %s -> %s", url, target)
                with requests.get(url, timeout=timeout_s, stream=True) as r:
                    r.raise_for_status()
                    with open(tmp, "wb") as f:
                        for chunk in r.iter_content(chunk_size=1 << 16):
                            f.write(chunk)
                os.replace(tmp, target)
                return target
            except (ReadTimeout, ConnectionError) as e:
                last_err = e
                log.warning("Download attempt %d failed: %s", attempt + 1, e)
                time.sleep(backoff_s * (2**attempt))
    finally:
        # No partial file survives a failed download
        if tmp.exists():
            tmp.unlink()
    raise last_err if last_err else RuntimeError("dataset download failed")
