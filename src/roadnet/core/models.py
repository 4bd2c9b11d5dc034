from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _ApiModel(BaseModel):
    # camelCase on the wire, snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Ingest / retract
# ---------------------------------------------------------------------------

class Measurement(_ApiModel):
    road_id: str
    value: float = Field(..., description="eIRI reading")
    # [lon, lat]; absent means "somewhere on this edge"
    point: Optional[List[float]] = None


class IngestRequest(_ApiModel):
    survey_id: str
    project_id: Optional[str] = None
    contributor_id: Optional[str] = None
    anomaly_count: Optional[int] = None
    measurements: List[Measurement] = Field(default_factory=list)


class KeyRating(_ApiModel):
    road_id: str
    segment_index: Optional[int] = None
    segment_id: Optional[str] = None
    batch_eiri: Optional[float] = None
    eiri: Optional[float] = None          # current mean after the write; None when the row was removed
    history_count: int = 0


class IngestReport(_ApiModel):
    scope_id: Optional[str] = None
    survey_id: str
    accepted: int = 0
    dropped: int = 0
    unsegmented_roads: List[str] = Field(default_factory=list)
    geometry_unavailable: bool = False
    keys: List[KeyRating] = Field(default_factory=list)


class RetractReport(_ApiModel):
    scope_id: Optional[str] = None
    survey_id: str
    deleted_entries: int = 0
    keys: List[KeyRating] = Field(default_factory=list)


class RebuildReport(_ApiModel):
    scope_id: Optional[str] = None
    ratings: int = 0
    removed: int = 0


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

class NearestEdgeResponse(_ApiModel):
    edge_id: Optional[str] = None
    json_: Optional[Dict[str, Any]] = Field(default=None, alias="json")


class GeometriesRequest(_ApiModel):
    road_ids: List[str] = Field(default_factory=list)


class RatingOut(_ApiModel):
    road_id: str
    segment_id: Optional[str] = None
    eiri: float


class MapRoad(_ApiModel):
    road_id: str
    eiri: float
    geometry: Dict[str, Any]
    color: str


class SegmentOut(_ApiModel):
    segment_id: str
    index: int
    start_distance_meters: float
    end_distance_meters: float
    length_meters: float
    geometry: Dict[str, Any]
    eiri: Optional[float] = None
    color: str
    history_count: int = 0


class EdgeSegments(_ApiModel):
    edge_id: str
    length_meters: float
    eiri: Optional[float] = None
    segments: List[SegmentOut] = Field(default_factory=list)


class SurveySummary(_ApiModel):
    survey_id: Optional[str] = None
    project_id: Optional[str] = None
    eiri: float
    entries: int
    anomaly_count: int = 0
    last_seen: Optional[datetime] = None


class EdgeAnalytics(_ApiModel):
    edge_id: str
    eiri: Optional[float] = None
    total_surveys: int = 0
    total_entries: int = 0
    surveys: List[SurveySummary] = Field(default_factory=list)
