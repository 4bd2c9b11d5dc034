"""Rating read model: current ratings, map queries and per-edge rating rollups."""
from __future__ import annotations

import calendar
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

from shapely.geometry import box
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from roadnet.config import settings
from roadnet.contracts.geometry import BBox, SegmentKey
from roadnet.core.colors import color_name
from roadnet.core.models import MapRoad, RatingOut
from roadnet.errors import SourceUnavailable, ValidationError
from roadnet.storage.tables import CurrentRating, RatingHistory

log = logging.getLogger(__name__)


def _scope_cond(model, scope_id: Optional[str]):
    return model.scope_id.is_(None) if scope_id is None else model.scope_id == scope_id


# ---------------------------------------------------------------------------
# Filter parsing
# ---------------------------------------------------------------------------

def parse_date(value: Optional[str], end_of_day: bool = False) -> Optional[datetime]:
    """``DD/MM/YYYY`` or ``DD-MM-YYYY`` -> UTC datetime; None when blank or invalid."""
    if not value or not value.strip():
        return None
    parts = re.split(r"[/\-]", value.strip())
    if len(parts) != 3:
        return None
    try:
        day, month, year = (int(p) for p in parts)
        dt = datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return None
    if end_of_day:
        dt = dt + timedelta(days=1) - timedelta(microseconds=1)
    return dt


def parse_eiri_range(text: Optional[str]) -> Tuple[Optional[float], Optional[float]]:
    """``"1.5-2.5"`` -> (1.5, 2.5); a single number is a lower bound only."""
    if not text:
        return None, None
    nums = [float(n) for n in re.findall(r"\d+(?:\.\d+)?", text)]
    if not nums:
        return None, None
    if len(nums) == 1:
        return nums[0], None
    return min(nums[0], nums[1]), max(nums[0], nums[1])


def months_ago(now: datetime, months: int) -> datetime:
    y, m = divmod(now.month - 1 - months, 12)
    year, month = now.year + y, m + 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


@dataclass
class MapFilters:
    eiri_min: Optional[float] = None
    eiri_max: Optional[float] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    months: Optional[int] = None
    min_history: Optional[int] = None

    @classmethod
    def parse(
        cls,
        eiri_min: Optional[float] = None,
        eiri_max: Optional[float] = None,
        eiri_range: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        months: Optional[int] = None,
    ) -> "MapFilters":
        r_min, r_max = parse_eiri_range(eiri_range)
        return cls(
            eiri_min=eiri_min if eiri_min is not None else r_min,
            eiri_max=eiri_max if eiri_max is not None else r_max,
            start=parse_date(start_date),
            end=parse_date(end_date, end_of_day=True),
            months=months,
        )

    def window(self, now: Optional[datetime] = None) -> Tuple[Optional[datetime], Optional[datetime]]:
        if self.start or self.end:
            return self.start, self.end
        now = now or datetime.now(timezone.utc)
        months = self.months if self.months is not None else settings.map_default_months
        return months_ago(now, months), None


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def history_counts(session: Session, scope_id: Optional[str], road_ids: Optional[Iterable[str]] = None) -> Dict[str, int]:
    """History entries per road (all segments together)."""
    stmt = (
        select(RatingHistory.road_id, func.count(RatingHistory.id))
        .where(_scope_cond(RatingHistory, scope_id))
        .group_by(RatingHistory.road_id)
    )
    if road_ids is not None:
        ids = list(road_ids)
        if not ids:
            return {}
        stmt = stmt.where(RatingHistory.road_id.in_(ids))
    return {r[0]: int(r[1]) for r in session.execute(stmt).all()}


def edge_ratings(session: Session, scope_id: Optional[str], road_ids: Optional[Iterable[str]] = None) -> Dict[str, float]:
    """One eIRI per road: the whole-edge rating, else the mean of its segment ratings."""
    stmt = select(CurrentRating.road_id, CurrentRating.segment_index, CurrentRating.eiri).where(
        _scope_cond(CurrentRating, scope_id)
    )
    if road_ids is not None:
        ids = list(road_ids)
        if not ids:
            return {}
        stmt = stmt.where(CurrentRating.road_id.in_(ids))

    whole: Dict[str, float] = {}
    parts: Dict[str, List[float]] = {}
    for road_id, idx, eiri in session.execute(stmt).all():
        if idx is None:
            whole[road_id] = float(eiri)
        else:
            parts.setdefault(road_id, []).append(float(eiri))
    out = {rid: sum(v) / len(v) for rid, v in parts.items()}
    out.update(whole)
    return out


def list_ratings(session: Session, scope_id: Optional[str], min_history: Optional[int] = None) -> List[RatingOut]:
    """Current ratings of roads with at least ``min_history`` history entries."""
    min_history = settings.min_history_entries if min_history is None else min_history
    counts = history_counts(session, scope_id)
    keep = {rid for rid, n in counts.items() if n >= min_history}
    rows = session.execute(
        select(CurrentRating.road_id, CurrentRating.segment_index, CurrentRating.eiri)
        .where(_scope_cond(CurrentRating, scope_id))
        .order_by(CurrentRating.road_id, CurrentRating.segment_index)
    ).all()
    return [
        RatingOut(road_id=r[0], segment_id=SegmentKey(r[0], r[1]).segment_id, eiri=float(r[2]))
        for r in rows
        if r[0] in keep
    ]


def map_ratings(
    session: Session,
    resolver,
    scope_id: Optional[str],
    bbox: BBox,
    filters: Optional[MapFilters] = None,
    now: Optional[datetime] = None,
) -> List[MapRoad]:
    """Rated roads inside ``bbox`` that pass the eIRI and survey-time filters."""
    filters = filters or MapFilters()
    if filters.eiri_min is not None and filters.eiri_max is not None and filters.eiri_min > filters.eiri_max:
        raise ValidationError(f"eiriMin {filters.eiri_min} is greater than eiriMax {filters.eiri_max}")

    ratings = edge_ratings(session, scope_id)
    if filters.eiri_min is not None:
        ratings = {k: v for k, v in ratings.items() if v >= filters.eiri_min}
    if filters.eiri_max is not None:
        ratings = {k: v for k, v in ratings.items() if v <= filters.eiri_max}
    if not ratings:
        return []

    # Roads surveyed fewer times are usually mis-snapped ghosts
    min_history = settings.min_history_entries if filters.min_history is None else filters.min_history
    counts = history_counts(session, scope_id, ratings)
    valid = [rid for rid in ratings if counts.get(rid, 0) >= min_history]
    if not valid:
        return []

    start, end = filters.window(now)
    stmt = select(RatingHistory.road_id).where(
        _scope_cond(RatingHistory, scope_id), RatingHistory.road_id.in_(valid)
    )
    if start is not None:
        stmt = stmt.where(RatingHistory.created_at >= start)
    if end is not None:
        stmt = stmt.where(RatingHistory.created_at <= end)
    in_window: Set[str] = {r[0] for r in session.execute(stmt.distinct()).all()}
    if not in_window:
        return []

    try:
        geometries = resolver.get_geometries(sorted(in_window))
    except SourceUnavailable as e:
        log.warning("Map query without geometries: %s", e)
        return []

    area = box(*bbox.as_tuple())
    out: List[MapRoad] = []
    for rid in sorted(in_window):
        geom = geometries.get(rid)
        if geom is None or len(geom) < 2:
            continue
        if not geom.bbox.intersects(bbox) or not geom.to_shapely().intersects(area):
            continue
        eiri = ratings[rid]
        out.append(MapRoad(road_id=rid, eiri=eiri, geometry=geom.to_geojson(), color=color_name(eiri)))
    log.debug("Map query: %d rated, %d valid, %d in window, %d in bbox",
              len(ratings), len(valid), len(in_window), len(out))
    return out
