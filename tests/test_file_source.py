import pytest
from shapely.geometry import LineString

from roadnet.contracts.geometry import BBox
from roadnet.errors import SourceUnavailable
from roadnet.geo import datasets
from roadnet.sources.file_source import FileGeometrySource

from conftest import city_rows, gpkg_blob, lon_for, write_gpkg, write_shapefile

# 300 m north of the middle of Main Street
NORTH_300 = (lon_for(60), lon_for(300))


def _source(dataset_dir, **kwargs):
    return FileGeometrySource(dataset_dir=str(dataset_dir), scopes={}, **kwargs)


def test_index_reads_every_usable_feature(file_source):
    idx = file_source.indexes()["city.gpkg"]
    assert set(idx.by_id) == {"1001", "w2002", "3", "4004"}
    assert idx.stats.features == 5
    assert idx.stats.decode_errors == 1
    assert idx.stats.extra["table"] == "roads_osm"


def test_projected_features_are_skipped(dataset_dir):
    mercator = LineString([(1000.0, 0.0), (1100.0, 0.0)])
    write_gpkg(dataset_dir / "mixed.gpkg", [
        {"geom": LineString([(0.0, 0.0), (lon_for(50), 0.0)]), "osm_id": "1"},
        {"geom": gpkg_blob(mercator, srs_id=3857), "osm_id": "2"},
    ])
    src = _source(dataset_dir)
    try:
        idx = src.indexes()["mixed.gpkg"]
    finally:
        src.close()
    assert set(idx.by_id) == {"1"}
    assert idx.stats.decode_errors == 1


def test_nearest_respects_radius(file_source):
    assert file_source.find_nearest(NORTH_300, 200) is None

    hit = file_source.find_nearest(NORTH_300, 400)
    assert hit is not None
    assert hit.road_id == "1001"
    assert hit.name == "Main Street"
    assert hit.road_class == "residential"
    assert hit.distance_m == pytest.approx(300.0, abs=0.5)
    assert hit.source == "file"
    assert hit.meta["dataset"] == "city.gpkg"


def test_nearest_picks_closest_edge(file_source):
    hit = file_source.find_nearest((lon_for(1050), lon_for(2)), 500)
    assert hit.road_id == "w2002"
    assert hit.name == "service"  # no name column value: highway is the label


def test_multiline_keeps_first_part_by_default(file_source):
    geom = file_source.get_geometries(["4004"])["4004"]
    assert geom.coords[0] == (0.0, 0.05)
    assert len(geom) == 2


def test_multiline_all_policy_exposes_every_part(city_gpkg):
    src = FileGeometrySource(dataset_dir=str(city_gpkg.parent), scopes={}, policy="all")
    try:
        found = src.get_geometries(["4004", "4004:1"])
    finally:
        src.close()
    assert set(found) == {"4004", "4004:1"}
    assert found["4004:1"].coords[0] == (lon_for(100), 0.05)


def test_get_geometries_skips_unknown_ids(file_source):
    found = file_source.get_geometries(["1001", "nope"])
    assert list(found) == ["1001"]
    assert file_source.get_geometries([]) == {}


def test_query_bbox_intersects(file_source):
    area = BBox(-0.0001, -0.0001, lon_for(1050), 0.0001)
    ids = {e.edge_id for e in file_source.query_bbox(area)}
    assert ids == {"1001", "w2002"}


def test_query_bbox_simplifies(file_source):
    area = BBox(-1, -1, 1, 1)
    edges = list(file_source.query_bbox(area, simplify_tolerance=0.0001))
    assert all(len(e.geometry) >= 2 for e in edges)


def test_scope_selects_mapped_files(dataset_dir):
    write_gpkg(dataset_dir / "city.gpkg", city_rows())
    write_shapefile(
        dataset_dir / "town.shp",
        [{"coords": [(lon_for(60), lon_for(310)), (lon_for(90), lon_for(310))], "osm_id": "9009", "name": "Hill Rd"}],
    )
    src = FileGeometrySource(dataset_dir=str(dataset_dir), scopes={"town.shp": "org-town", "city.gpkg": "org-city"})
    try:
        town = src.find_nearest(NORTH_300, 400, scope="org-town")
        city = src.find_nearest(NORTH_300, 400, scope="org-city")
        anyone = src.find_nearest(NORTH_300, 400)
        nobody = src.find_nearest(NORTH_300, 400, scope="org-unknown")
    finally:
        src.close()
    assert town.road_id == "9009"
    assert town.name == "Hill Rd"
    assert city.road_id == "1001"
    assert anyone.road_id == "9009"
    assert nobody is None



def _early_exit_rows():
    return [
        # envelope centre 3 m from the origin, line 3 m away
        {"geom": LineString([(lon_for(-5), lon_for(-3)), (lon_for(5), lon_for(-3))]), "osm_id": "near"},
        # passes 1 m from the origin, but its centre is about a kilometre off
        {"geom": LineString([(lon_for(-10), lon_for(1)), (lon_for(2000), lon_for(1))]), "osm_id": "long"},
    ]


def test_search_stops_at_first_edge_within_five_metres(dataset_dir):
    write_gpkg(dataset_dir / "grid.gpkg", _early_exit_rows())
    src = _source(dataset_dir)
    try:
        hit = src.find_nearest((0.0, 0.0), 1500)
    finally:
        src.close()
    assert hit.road_id == "near"
    assert hit.distance_m == pytest.approx(3.0, abs=0.01)


def test_without_early_exit_the_closest_edge_wins(dataset_dir):
    write_gpkg(dataset_dir / "grid.gpkg", _early_exit_rows())
    src = _source(dataset_dir, early_exit_m=0.0)
    try:
        hit = src.find_nearest((0.0, 0.0), 1500)
    finally:
        src.close()
    assert hit.road_id == "long"
    assert hit.distance_m == pytest.approx(1.0, abs=0.01)


def test_candidates_are_capped_after_ranking(dataset_dir):
    rows = [
        {"geom": LineString([(lon_for(20 + 2 * i), lon_for(10)), (lon_for(20 + 2 * i), lon_for(20))]), "osm_id": str(i)}
        for i in range(300)
    ]
    write_gpkg(dataset_dir / "grid.gpkg", rows)
    src = _source(dataset_dir, early_exit_m=0.0)
    try:
        hit = src.find_nearest((0.0, 0.0), 1000)
    finally:
        src.close()
    assert hit.meta["candidates"] == 200
    assert hit.road_id == "0"


def test_search_box_wraps_the_antimeridian(dataset_dir):
    write_gpkg(dataset_dir / "dateline.gpkg", [
        {"geom": LineString([(179.9995, 0.0), (179.9999, 0.0)]), "osm_id": "7007"},
    ])
    src = _source(dataset_dir)
    try:
        hit = src.find_nearest((-179.9999, 0.0), 100)
    finally:
        src.close()
    assert hit is not None
    assert hit.road_id == "7007"
    assert hit.distance_m == pytest.approx(22.2, abs=0.5)

def test_missing_dataset_dir_is_unavailable(tmp_path):
    src = FileGeometrySource(dataset_dir=str(tmp_path / "missing"), scopes={})
    try:
        with pytest.raises(SourceUnavailable):
            src.find_nearest((0.0, 0.0), 100)
    finally:
        src.close()


def test_invalidate_picks_up_new_files(dataset_dir):
    src = FileGeometrySource(dataset_dir=str(dataset_dir), scopes={})
    try:
        with pytest.raises(SourceUnavailable):
            src.get_geometries(["1001"])
        write_gpkg(dataset_dir / "city.gpkg", city_rows())
        src.invalidate()
        assert "1001" in src.get_geometries(["1001"])
    finally:
        src.close()


def test_discover_maps_scopes(dataset_dir):
    write_gpkg(dataset_dir / "city.gpkg", city_rows())
    (dataset_dir / "notes.txt").write_text("ignore me")
    found = datasets.discover(dataset_dir, {"city.gpkg": "org-city"})
    assert [(d.name, d.scope_id) for d in found] == [("city.gpkg", "org-city")]


def test_download_dataset_writes_atomically(dataset_dir, monkeypatch):
    class FakeResponse:
        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def raise_for_status(self):
            pass

        def iter_content(self, chunk_size):
            yield b"abc"
            yield b"def"

    monkeypatch.setattr(datasets.requests, "get", lambda url, timeout, stream: FakeResponse())
    path = datasets.download_dataset("https://example.org/roads.gpkg", "roads.gpkg", dataset_dir)
    assert path.read_bytes() == b"abcdef"
    assert not (dataset_dir / "roads.gpkg.part").exists()

    with pytest.raises(ValueError):
        datasets.download_dataset("https://example.org/x", "roads.zip", dataset_dir)


class BrokenStream:
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        pass

    def iter_content(self, chunk_size):
        yield b"abc"
        raise datasets.requests.exceptions.ChunkedEncodingError("connection dropped")


def test_failed_download_leaves_no_partial_file(dataset_dir, monkeypatch):
    monkeypatch.setattr(datasets.requests, "get", lambda url, timeout, stream: BrokenStream())
    with pytest.raises(datasets.requests.RequestException):
        datasets.download_dataset("https://example.org/roads.gpkg", "roads.gpkg", dataset_dir)
    assert list(dataset_dir.iterdir()) == []
