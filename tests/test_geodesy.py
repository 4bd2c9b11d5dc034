import math

import pytest

from roadnet.geo.geodesy import (
    MAX_RADIUS_M,
    bbox_around,
    haversine_m,
    is_valid_lonlat,
    mercator_xy,
    nearest_point_on_line,
    polyline_length_m,
    tile_bbox,
)

from conftest import M_PER_DEG, lon_for


def test_haversine_one_degree_on_equator():
    assert haversine_m(0, 0, 1, 0) == pytest.approx(M_PER_DEG, rel=1e-9)
    assert haversine_m(10, 20, 10, 20) == 0.0


def test_polyline_length_sums_pieces():
    coords = [(0.0, 0.0), (lon_for(30), 0.0), (lon_for(100), 0.0)]
    assert polyline_length_m(coords) == pytest.approx(100.0, abs=1e-6)
    assert polyline_length_m(coords[:1]) == 0.0


def test_nearest_point_on_line_distance_and_along():
    line = [(0.0, 0.0), (lon_for(120), 0.0)]
    dist, along = nearest_point_on_line((lon_for(55), lon_for(20)), line)
    assert dist == pytest.approx(20.0, abs=0.01)
    assert along == pytest.approx(55.0, abs=0.01)


def test_nearest_point_on_single_vertex():
    dist, along = nearest_point_on_line((lon_for(10), 0.0), [(0.0, 0.0)])
    assert dist == pytest.approx(10.0, abs=1e-6)
    assert along == 0.0


def test_nearest_point_across_antimeridian():
    line = [(179.9999, 0.0), (-179.9999, 0.0)]
    dist, _ = nearest_point_on_line((180.0, 0.0), line)
    assert dist < 1.0


def test_bbox_around_is_capped():
    bb = bbox_around(0.0, 0.0, MAX_RADIUS_M * 10)
    assert bb.max_lat - bb.min_lat <= 360.0
    near_pole = bbox_around(10.0, 90.0, 1000.0)
    assert all(math.isfinite(v) for v in near_pole.as_tuple())


def test_is_valid_lonlat():
    assert is_valid_lonlat(-180.0, 90.0)
    assert not is_valid_lonlat(181.0, 0.0)
    assert not is_valid_lonlat(0.0, float("nan"))


def test_tile_bbox_world_and_quadrant():
    world = tile_bbox(0, 0, 0)
    assert world.min_lon == pytest.approx(-180.0)
    assert world.max_lon == pytest.approx(180.0)
    assert world.max_lat == pytest.approx(85.0511, abs=1e-3)

    nw = tile_bbox(1, 0, 0)
    assert (nw.min_lon, nw.min_lat, nw.max_lon) == pytest.approx((-180.0, 0.0, 0.0), abs=1e-9)
    assert nw.max_lat == pytest.approx(world.max_lat)


def test_mercator_corners():
    assert mercator_xy(-180.0, 0.0) == pytest.approx((0.0, 0.5))
    x, y = mercator_xy(180.0, 89.9)
    assert x == pytest.approx(1.0)
    assert y == pytest.approx(0.0, abs=1e-6)
