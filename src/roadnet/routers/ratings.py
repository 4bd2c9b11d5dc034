"""Collaborator hooks for the survey pipeline: ingest, retract and rebuild ratings."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from roadnet.core.aggregator import RatingAggregator
from roadnet.core.models import IngestReport, IngestRequest, RebuildReport, RetractReport
from roadnet.scope import require_scope
from roadnet.services import get_aggregator, get_renderer
from roadnet.tiles.renderer import TileRenderer

router = APIRouter(prefix="/ratings", tags=["ratings"])


@router.post("/ingest", response_model=IngestReport)
def ingest(
    body: IngestRequest,
    scope: str = Depends(require_scope),
    aggregator: RatingAggregator = Depends(get_aggregator),
    renderer: TileRenderer = Depends(get_renderer),
):
    report = aggregator.ingest(
        scope,
        body.survey_id,
        body.project_id,
        body.measurements,
        contributor_id=body.contributor_id,
        anomaly_count=body.anomaly_count,
    )
    if report.keys:
        renderer.invalidate(scope)
    return report


@router.delete("/surveys/{survey_id}", response_model=RetractReport)
def retract(
    survey_id: str,
    scope: str = Depends(require_scope),
    aggregator: RatingAggregator = Depends(get_aggregator),
    renderer: TileRenderer = Depends(get_renderer),
):
    report = aggregator.retract(scope, survey_id)
    if report.keys:
        renderer.invalidate(scope)
    return report


@router.post("/rebuild", response_model=RebuildReport)
def rebuild(
    scope: str = Depends(require_scope),
    aggregator: RatingAggregator = Depends(get_aggregator),
    renderer: TileRenderer = Depends(get_renderer),
):
    report = aggregator.rebuild(scope)
    renderer.invalidate(scope)
    return report
