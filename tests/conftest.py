import os
import struct
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

import pytest
import shapefile
import shapely.wkb
from shapely.geometry import LineString, MultiLineString
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

# Metres per degree of longitude on the equator for the haversine radius
M_PER_DEG = 111_194.92664455873


def lon_for(metres: float) -> float:
    return metres / M_PER_DEG


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _unit_env(request: pytest.FixtureRequest, tmp_path: Path, monkeypatch) -> Iterator[None]:
    """Point every test at a throwaway SQLite file and dataset dir, Redis off.

    Integration tests keep whatever database the environment provides.
    """
    from roadnet.cache.redis_client import reset_redis
    from roadnet.config import settings
    from roadnet.services import reset_services
    from roadnet.storage.db import reset_engine

    is_integration = request.node.get_closest_marker("integration") is not None
    dataset_dir = tmp_path / "map-files"
    dataset_dir.mkdir()

    if not is_integration:
        monkeypatch.setattr(settings, "database_url", f"sqlite:///{tmp_path / 'roadnet.sqlite'}")
        monkeypatch.setattr(settings, "geometry_sources", "file")
    monkeypatch.setattr(settings, "redis_url", "")
    monkeypatch.setattr(settings, "jwt_secret", "")
    monkeypatch.setattr(settings, "dataset_dir", str(dataset_dir))
    monkeypatch.setattr(settings, "dataset_scopes", {})
    reset_engine()
    reset_redis()
    reset_services()
    try:
        yield
    finally:
        reset_services()
        reset_engine()
        reset_redis()


@pytest.fixture()
def dataset_dir(tmp_path: Path) -> Path:
    return tmp_path / "map-files"


@pytest.fixture()
def session_factory(tmp_path: Path):
    from roadnet.storage.db import init_db, make_engine

    engine = make_engine(f"sqlite:///{tmp_path / 'ratings.sqlite'}")
    init_db(engine)
    yield sessionmaker(bind=engine, autoflush=False, future=True)
    engine.dispose()


# ---------------------------------------------------------------------------
# Dataset builders
# ---------------------------------------------------------------------------

def gpkg_blob(geom, envelope: bool = True, little: bool = True, srs_id: int = 4326) -> bytes:
    order = "<" if little else ">"
    flags = (1 if little else 0) | ((1 if envelope else 0) << 1)
    header = b"GP" + bytes([0, flags]) + struct.pack(order + "i", srs_id)
    if envelope:
        minx, miny, maxx, maxy = geom.bounds
        header += struct.pack(order + "4d", minx, maxx, miny, maxy)
    return header + shapely.wkb.dumps(geom)


def write_gpkg(path: Path, rows: Sequence[dict], table: str = "roads_osm") -> Path:
    """Minimal GeoPackage: the two metadata tables plus one feature table.

    Each row: ``geom`` (shapely geometry or raw bytes) and optional
    ``osm_id``/``full_id``/``name``/``highway``.
    """
    engine = create_engine(f"sqlite:///{path}", future=True)
    with engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE gpkg_contents (table_name TEXT PRIMARY KEY, data_type TEXT NOT NULL, "
            "identifier TEXT, srs_id INTEGER)"
        ))
        conn.execute(text(
            "CREATE TABLE gpkg_geometry_columns (table_name TEXT, column_name TEXT, "
            "geometry_type_name TEXT, srs_id INTEGER, z TINYINT, m TINYINT)"
        ))
        conn.execute(text(
            f"CREATE TABLE {table} (fid INTEGER PRIMARY KEY AUTOINCREMENT, geom BLOB, "
            "osm_id TEXT, full_id TEXT, name TEXT, highway TEXT)"
        ))
        conn.execute(
            text("INSERT INTO gpkg_contents VALUES (:t, 'features', :t, 4326)"), {"t": table}
        )
        conn.execute(
            text("INSERT INTO gpkg_geometry_columns VALUES (:t, 'geom', 'LINESTRING', 4326, 0, 0)"),
            {"t": table},
        )
        for r in rows:
            geom = r["geom"]
            blob = geom if isinstance(geom, (bytes, bytearray)) else gpkg_blob(geom)
            conn.execute(
                text(
                    f"INSERT INTO {table} (geom, osm_id, full_id, name, highway) "
                    "VALUES (:geom, :osm_id, :full_id, :name, :highway)"
                ),
                {
                    "geom": blob,
                    "osm_id": r.get("osm_id"),
                    "full_id": r.get("full_id"),
                    "name": r.get("name"),
                    "highway": r.get("highway"),
                },
            )
    engine.dispose()
    return path


def write_shapefile(path: Path, rows: Sequence[dict]) -> Path:
    w = shapefile.Writer(str(path), shapeType=shapefile.POLYLINE)
    w.field("osm_id", "C", size=32)
    w.field("name", "C", size=64)
    w.field("highway", "C", size=32)
    for r in rows:
        w.line([[list(c) for c in r["coords"]]])
        w.record(r.get("osm_id") or "", r.get("name") or "", r.get("highway") or "")
    w.close()
    return path


# Main Street: 120 m along the equator starting at (0, 0)
MAIN_ST = LineString([(0.0, 0.0), (lon_for(120), 0.0)])
# A service road 1 km east
SERVICE = LineString([(lon_for(1000), 0.0), (lon_for(1100), 0.0)])
# Unnamed track identified only by fid, 2 km east
TRACK = LineString([(lon_for(2000), 0.0), (lon_for(2050), 0.0)])
# Two-part road far north: short first part, long second part
SPLIT_ROAD = MultiLineString([
    [(0.0, 0.05), (lon_for(10), 0.05)],
    [(lon_for(100), 0.05), (lon_for(400), 0.05)],
])


def city_rows() -> List[dict]:
    return [
        {"geom": MAIN_ST, "osm_id": "1001", "name": "Main Street", "highway": "residential"},
        {"geom": SERVICE, "full_id": "w2002", "highway": "service"},
        {"geom": TRACK},
        {"geom": SPLIT_ROAD, "osm_id": "4004", "name": "Split Road", "highway": "tertiary"},
        {"geom": b"GP\x00\x01\x00\x00\x00\x00garbage", "osm_id": "5005"},
    ]


@pytest.fixture()
def city_gpkg(dataset_dir: Path) -> Path:
    return write_gpkg(dataset_dir / "city.gpkg", city_rows())


@pytest.fixture()
def file_source(city_gpkg: Path):
    from roadnet.sources.file_source import FileGeometrySource

    src = FileGeometrySource(dataset_dir=str(city_gpkg.parent), scopes={}, load_timeout_s=30, query_timeout_s=30)
    yield src
    src.close()


@pytest.fixture()
def test_client():
    from fastapi.testclient import TestClient
    # Import app here so settings overrides apply before startup
    from roadnet.api import app

    with TestClient(app) as client:
        yield client


def integration_database_url() -> Optional[str]:
    return os.environ.get("ROADNET_TEST_DATABASE_URL")
