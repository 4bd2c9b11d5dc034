from __future__ import annotations

from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from roadnet.core.models import EdgeAnalytics, EdgeSegments, SegmentOut, SurveySummary
from roadnet.core.colors import color_for
from roadnet.core import segmenter
from roadnet.core.ratings import edge_ratings
from roadnet.contracts.geometry import LineGeometry
from roadnet.storage.tables import CurrentRating, RatingHistory


def _scope_cond(model, scope_id: Optional[str]):
    return model.scope_id.is_(None) if scope_id is None else model.scope_id == scope_id


def edge_analytics(session: Session, scope_id: Optional[str], road_id: str, take: int = 20) -> EdgeAnalytics:
    """
    Survey rollup for one edge.

    History rows are grouped by (survey, project), newest first; rows without a
    survey id collapse into one group per project.
    """
    rows = session.execute(
        select(
            RatingHistory.survey_id,
            RatingHistory.project_id,
            func.avg(RatingHistory.eiri),
            func.count(RatingHistory.id),
            func.max(func.coalesce(RatingHistory.anomaly_count, 0)),
            func.max(RatingHistory.created_at),
        )
        .where(_scope_cond(RatingHistory, scope_id), RatingHistory.road_id == road_id)
        .group_by(RatingHistory.survey_id, RatingHistory.project_id)
        .order_by(func.max(RatingHistory.created_at).desc())
    ).all()

    surveys = [
        SurveySummary(
            survey_id=r[0],
            project_id=r[1],
            eiri=float(r[2]),
            entries=int(r[3]),
            anomaly_count=int(r[4] or 0),
            last_seen=r[5],
        )
        for r in rows
    ]
    return EdgeAnalytics(
        edge_id=road_id,
        eiri=edge_ratings(session, scope_id, [road_id]).get(road_id),
        total_surveys=len(surveys),
        total_entries=sum(s.entries for s in surveys),
        surveys=surveys[: max(0, take)],
    )


def edge_segments(
    session: Session,
    scope_id: Optional[str],
    road_id: str,
    geometry: LineGeometry,
    segment_length_m: Optional[float] = None,
) -> EdgeSegments:
    """Segments of an edge with their current ratings."""
    rated: Dict[Optional[int], CurrentRating] = {
        row.segment_index: row
        for row in session.execute(
            select(CurrentRating).where(_scope_cond(CurrentRating, scope_id), CurrentRating.road_id == road_id)
        ).scalars()
    }
    out: List[SegmentOut] = []
    for seg in segmenter.split(road_id, geometry, segment_length_m):
        row = rated.get(seg.index)
        out.append(
            SegmentOut(
                segment_id=seg.segment_id,
                index=seg.index,
                start_distance_meters=seg.start_distance_m,
                end_distance_meters=seg.end_distance_m,
                length_meters=seg.length_m,
                geometry=seg.geometry.to_geojson(),
                eiri=row.eiri if row else None,
                color=color_for(row.eiri if row else None),
                history_count=row.history_count if row else 0,
            )
        )
    whole = rated.get(None)
    return EdgeSegments(
        edge_id=road_id,
        length_meters=segmenter.edge_length_m(geometry),
        eiri=whole.eiri if whole else edge_ratings(session, scope_id, [road_id]).get(road_id),
        segments=out,
    )
