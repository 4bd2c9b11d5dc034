"""
PostGIS-backed source, importer and aggregator against a live database.

Set ROADNET_TEST_DATABASE_URL (postgresql://...) to a database where the
postgis extension can be created; otherwise these tests are skipped.
"""
from __future__ import annotations

import uuid

import pytest
from sqlalchemy import delete, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from roadnet.contracts.geometry import BBox
from roadnet.core.aggregator import RatingAggregator
from roadnet.core.models import Measurement
from roadnet.sources.db_source import DatabaseGeometrySource
from roadnet.storage.db import init_db, make_engine
from roadnet.storage.importer import import_datasets
from roadnet.storage.tables import CurrentRating, RatingHistory, Road

from conftest import city_rows, integration_database_url, lon_for, write_gpkg

pytestmark = [pytest.mark.integration]


@pytest.fixture()
def pg_engine():
    url = integration_database_url()
    if not url:
        pytest.skip("ROADNET_TEST_DATABASE_URL not set; skipping PostGIS test")
    engine = make_engine(url)
    try:
        init_db(engine)
    except SQLAlchemyError as e:
        engine.dispose()
        pytest.skip(f"PostGIS not reachable: {e}")
    yield engine
    engine.dispose()


@pytest.fixture()
def scope_id(pg_engine):
    scope = f"itest-{uuid.uuid4().hex[:8]}"
    yield scope
    with pg_engine.begin() as conn:
        for model in (Road, RatingHistory, CurrentRating):
            conn.execute(delete(model).where(model.scope_id == scope))


@pytest.fixture()
def imported(pg_engine, scope_id, dataset_dir):
    write_gpkg(dataset_dir / "city.gpkg", city_rows())
    counts = import_datasets(engine=pg_engine, dataset_dir=str(dataset_dir), scopes={"city.gpkg": scope_id})
    assert counts == {"city.gpkg": 4}
    return scope_id


def test_nearest_edge_via_postgis(pg_engine, imported):
    src = DatabaseGeometrySource(engine=pg_engine)
    north_300 = (lon_for(60), lon_for(300))

    assert src.find_nearest(north_300, 200, scope=imported) is None
    hit = src.find_nearest(north_300, 400, scope=imported)
    assert hit.road_id == "1001"
    assert hit.name == "Main Street"
    assert hit.distance_m == pytest.approx(300.0, rel=0.01)


def test_geometries_and_bbox_via_postgis(pg_engine, imported):
    src = DatabaseGeometrySource(engine=pg_engine)
    found = src.get_geometries(["1001", "w2002", "missing"])
    assert set(found) >= {"1001", "w2002"}

    edges = list(src.query_bbox(BBox(-0.0001, -0.0001, lon_for(1050), 0.0001), scope=imported))
    assert {e.edge_id for e in edges} == {"1001", "w2002"}


def test_statement_timeout_is_applied(pg_engine):
    with pg_engine.begin() as conn:
        conn.execute(text("SET LOCAL statement_timeout = 1234"))
        assert conn.execute(text("SHOW statement_timeout")).scalar() == "1234ms"


def test_aggregator_on_postgres(pg_engine, scope_id):
    factory = sessionmaker(bind=pg_engine, future=True)
    agg = RatingAggregator(session_factory=factory)
    agg.ingest(scope_id, "s1", None, [Measurement(road_id="e1", value=2.0)])
    agg.ingest(scope_id, "s2", None, [Measurement(road_id="e1", value=4.0)])
    report = agg.retract(scope_id, "s1")
    assert report.keys[0].eiri == pytest.approx(4.0)
    assert report.keys[0].history_count == 1
