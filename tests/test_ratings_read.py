from datetime import datetime, timedelta, timezone

import pytest

from roadnet.contracts.geometry import BBox, LineGeometry
from roadnet.core import analytics, ratings
from roadnet.core.aggregator import RatingAggregator
from roadnet.core.models import Measurement
from roadnet.errors import ValidationError
from roadnet.storage.tables import RatingHistory

from conftest import lon_for

GEOMS = {
    "e1": LineGeometry.of([(0.0, 0.0), (lon_for(120), 0.0)]),
    "e2": LineGeometry.of([(0.0, 0.001), (lon_for(80), 0.001)]),
    "e3": LineGeometry.of([(0.0, 0.002), (lon_for(60), 0.002)]),
}
EVERYWHERE = BBox(-1, -1, 1, 1)


class StubResolver:
    def get_geometries(self, road_ids):
        return {r: GEOMS[r] for r in road_ids if r in GEOMS}


@pytest.fixture()
def rated(session_factory):
    """e1: three recent surveys (mean 2.0); e2: one survey; e3: three surveys two years ago."""
    agg = RatingAggregator(session_factory=session_factory)
    for n, value in enumerate([1.0, 2.0, 3.0]):
        agg.ingest("org", f"recent-{n}", "p1", [Measurement(road_id="e1", value=value)])
    agg.ingest("org", "single", "p2", [Measurement(road_id="e2", value=4.8)])

    old = datetime.now(timezone.utc) - timedelta(days=730)
    with session_factory() as s:
        for n in range(3):
            s.add(RatingHistory(scope_id="org", road_id="e3", eiri=1.0, survey_id=f"old-{n}", created_at=old))
        s.commit()
    agg.rebuild("org")
    return session_factory


def test_parse_date():
    assert ratings.parse_date("31/12/2024") == datetime(2024, 12, 31, tzinfo=timezone.utc)
    assert ratings.parse_date("01-02-2024") == datetime(2024, 2, 1, tzinfo=timezone.utc)
    end = ratings.parse_date("31/12/2024", end_of_day=True)
    assert (end.hour, end.minute, end.second, end.microsecond) == (23, 59, 59, 999999)
    for bad in ["", "  ", "2024-12-31", "32/01/2024", "1/2", None]:
        assert ratings.parse_date(bad) is None


@pytest.mark.parametrize(
    "text,expected",
    [
        ("1.5-2.5", (1.5, 2.5)),
        ("0-1.5", (0.0, 1.5)),
        ("3 to 1", (1.0, 3.0)),
        ("2.5", (2.5, None)),
        ("", (None, None)),
        ("abc", (None, None)),
    ],
)
def test_parse_eiri_range(text, expected):
    assert ratings.parse_eiri_range(text) == expected


def test_months_ago_clamps_day():
    assert ratings.months_ago(datetime(2024, 8, 31), 6) == datetime(2024, 2, 29)
    assert ratings.months_ago(datetime(2024, 3, 15), 6) == datetime(2023, 9, 15)


def test_explicit_dates_override_months():
    f = ratings.MapFilters.parse(start_date="01/01/2020", months=1)
    start, end = f.window()
    assert start == datetime(2020, 1, 1, tzinfo=timezone.utc)
    assert end is None


def test_list_ratings_requires_history(rated):
    with rated() as s:
        assert [r.road_id for r in ratings.list_ratings(s, "org")] == ["e1", "e3"]
        assert [r.road_id for r in ratings.list_ratings(s, "org", min_history=1)] == ["e1", "e2", "e3"]
        assert ratings.list_ratings(s, "other-org") == []


def test_edge_ratings_prefers_whole_edge(rated):
    with rated() as s:
        got = ratings.edge_ratings(s, "org", ["e1", "e2", "missing"])
    assert got == {"e1": pytest.approx(2.0), "e2": pytest.approx(4.8)}


def test_map_default_window_and_history(rated):
    with rated() as s:
        roads = ratings.map_ratings(s, StubResolver(), "org", EVERYWHERE)
    assert [(r.road_id, r.color) for r in roads] == [("e1", "light_green")]
    assert roads[0].eiri == pytest.approx(2.0)
    assert roads[0].geometry["type"] == "LineString"


def test_map_min_history_override(rated):
    with rated() as s:
        roads = ratings.map_ratings(s, StubResolver(), "org", EVERYWHERE, ratings.MapFilters(min_history=1))
    assert {r.road_id: r.color for r in roads} == {"e1": "light_green", "e2": "red"}


def test_map_eiri_filters(rated):
    with rated() as s:
        high = ratings.map_ratings(s, StubResolver(), "org", EVERYWHERE, ratings.MapFilters(eiri_min=2.5, min_history=1))
        ranged = ratings.map_ratings(
            s, StubResolver(), "org", EVERYWHERE, ratings.MapFilters.parse(eiri_range="1.5-2.5")
        )
        with pytest.raises(ValidationError):
            ratings.map_ratings(s, StubResolver(), "org", EVERYWHERE, ratings.MapFilters(eiri_min=3, eiri_max=1))
    assert [r.road_id for r in high] == ["e2"]
    assert [r.road_id for r in ranged] == ["e1"]


def test_map_date_window(rated):
    old = datetime.now(timezone.utc) - timedelta(days=730)
    start = (old - timedelta(days=1)).strftime("%d/%m/%Y")
    end = (old + timedelta(days=1)).strftime("%d/%m/%Y")
    with rated() as s:
        roads = ratings.map_ratings(
            s, StubResolver(), "org", EVERYWHERE, ratings.MapFilters.parse(start_date=start, end_date=end)
        )
    assert [r.road_id for r in roads] == ["e3"]
    assert roads[0].color == "green"


def test_map_bbox_clips(rated):
    with rated() as s:
        assert ratings.map_ratings(s, StubResolver(), "org", BBox(10, 10, 11, 11)) == []


def test_edge_analytics(rated):
    with rated() as s:
        out = analytics.edge_analytics(s, "org", "e1")
        few = analytics.edge_analytics(s, "org", "e1", take=1)
    assert out.total_surveys == 3
    assert out.total_entries == 3
    assert out.eiri == pytest.approx(2.0)
    assert [sv.survey_id for sv in out.surveys] == ["recent-2", "recent-1", "recent-0"]
    assert {sv.project_id for sv in out.surveys} == {"p1"}
    assert len(few.surveys) == 1 and few.total_surveys == 3


def test_edge_segments(session_factory):
    agg = RatingAggregator(resolver=StubResolver(), session_factory=session_factory, tolerance_m=2)
    agg.ingest("org", "s1", None, [Measurement(road_id="e1", value=1.0, point=[lon_for(10), 0.0])])
    with session_factory() as s:
        out = analytics.edge_segments(s, "org", "e1", GEOMS["e1"], segment_length_m=50)
    assert out.length_meters == pytest.approx(120.0)
    assert [seg.segment_id for seg in out.segments] == ["e1_seg_0", "e1_seg_1", "e1_seg_2"]
    assert out.segments[0].eiri == pytest.approx(1.0)
    assert out.segments[0].history_count == 1
    assert out.segments[1].eiri is None
    assert out.segments[1].color == "#9e9e9e"
    assert out.eiri == pytest.approx(1.0)
