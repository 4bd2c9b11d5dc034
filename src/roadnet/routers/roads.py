"""Road lookups: nearest edge, geometries, rated map layer, segments and analytics."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from roadnet.config import settings
from roadnet.contracts.geometry import BBox
from roadnet.core import analytics, ratings
from roadnet.core.models import (
    EdgeAnalytics,
    EdgeSegments,
    GeometriesRequest,
    MapRoad,
    NearestEdgeResponse,
    RatingOut,
)
from roadnet.errors import ValidationError
from roadnet.scope import get_scope
from roadnet.services import get_resolver
from roadnet.sources.resolver import NearestEdgeResolver
from roadnet.storage.db import get_db

log = logging.getLogger(__name__)

router = APIRouter(prefix="/roads", tags=["roads"])


def _number(name: str, raw: Optional[str]) -> float:
    if raw is None or not str(raw).strip():
        raise ValidationError(f"{name} is required")
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a number, got {raw!r}")


@router.get("/nearest-edge", response_model=NearestEdgeResponse)
def nearest_edge(
    lat: Optional[str] = None,
    lng: Optional[str] = None,
    radius_meters: Optional[float] = Query(default=None, alias="radiusMeters"),
    scope: Optional[str] = Depends(get_scope),
    resolver: NearestEdgeResolver = Depends(get_resolver),
):
    result = resolver.resolve(
        _number("lat", lat),
        _number("lng", lng),
        radius_meters if radius_meters is not None else settings.nearest_default_radius_m,
        scope,
    )
    if result is None:
        return NearestEdgeResponse(edge_id=None, json_=None)
    return NearestEdgeResponse(edge_id=result.road_id, json_=result.to_feature())


@router.post("/geometries")
def geometries(
    body: GeometriesRequest,
    resolver: NearestEdgeResolver = Depends(get_resolver),
) -> Dict[str, Any]:
    road_ids = [r for r in body.road_ids if r]
    if not road_ids:
        raise HTTPException(status_code=400, detail="roadIds must be a non-empty list")
    found = resolver.get_geometries(road_ids)
    return {rid: geom.to_geojson() for rid, geom in found.items()}


@router.get("/map", response_model=List[MapRoad])
def road_map(
    bbox: str,
    months: Optional[int] = None,
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    eiri_min: Optional[float] = Query(default=None, alias="eiriMin"),
    eiri_max: Optional[float] = Query(default=None, alias="eiriMax"),
    eiri_range: Optional[str] = Query(default=None, alias="eiriRange"),
    scope: Optional[str] = Depends(get_scope),
    resolver: NearestEdgeResolver = Depends(get_resolver),
    db: Session = Depends(get_db),
):
    try:
        area = BBox.parse(bbox)
    except ValueError as e:
        raise ValidationError(f"bbox must be minLng,minLat,maxLng,maxLat: {e}")
    filters = ratings.MapFilters.parse(
        eiri_min=eiri_min,
        eiri_max=eiri_max,
        eiri_range=eiri_range,
        start_date=start_date,
        end_date=end_date,
        months=months,
    )
    return ratings.map_ratings(db, resolver, scope, area, filters)


@router.get("/ratings", response_model=List[RatingOut])
def road_ratings(
    scope: Optional[str] = Depends(get_scope),
    db: Session = Depends(get_db),
):
    return ratings.list_ratings(db, scope)


@router.get("/{edge_id}/segments", response_model=EdgeSegments)
def edge_segments(
    edge_id: str,
    scope: Optional[str] = Depends(get_scope),
    resolver: NearestEdgeResolver = Depends(get_resolver),
    db: Session = Depends(get_db),
):
    geom = resolver.get_geometries([edge_id]).get(edge_id)
    if geom is None:
        raise HTTPException(status_code=404, detail=f"Road edge {edge_id} not found")
    return analytics.edge_segments(db, scope, edge_id, geom)


@router.get("/{edge_id}/analytics", response_model=EdgeAnalytics)
def edge_analytics(
    edge_id: str,
    take: int = Query(default=20, ge=1, le=200),
    scope: Optional[str] = Depends(get_scope),
    db: Session = Depends(get_db),
):
    return analytics.edge_analytics(db, scope, edge_id, take=take)
