"""ORM tables.

``Base`` holds the rating tables and works on any SQLAlchemy backend.
``SpatialBase`` holds the PostGIS road table and is only created on PostgreSQL.
"""
from __future__ import annotations

from datetime import datetime, timezone

from geoalchemy2 import Geometry
from sqlalchemy import Column, DateTime, Float, Index, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()
SpatialBase = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RatingHistory(Base):
    """Append-only eIRI fact for one (scope, road, segment) key."""

    __tablename__ = "road_rating_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scope_id = Column(String(64), nullable=True)
    road_id = Column(String(128), nullable=False)
    segment_index = Column(Integer, nullable=True)
    eiri = Column(Float, nullable=False)
    contributor_id = Column(String(64), nullable=True)
    survey_id = Column(String(64), nullable=True, index=True)
    project_id = Column(String(64), nullable=True)
    anomaly_count = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_rating_history_key", "scope_id", "road_id", "segment_index"),
        Index("ix_rating_history_created", "scope_id", "created_at"),
    )


class CurrentRating(Base):
    """Mean of the live history rows for one key; deleted when none remain."""

    __tablename__ = "road_rating"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scope_id = Column(String(64), nullable=True)
    road_id = Column(String(128), nullable=False)
    segment_index = Column(Integer, nullable=True)
    eiri = Column(Float, nullable=False)
    history_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_rating_key", "scope_id", "road_id", "segment_index"),
    )


class Road(SpatialBase):
    __tablename__ = "roads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    edge_id = Column(String(128), nullable=False, index=True)
    scope_id = Column(String(64), nullable=True, index=True)
    name = Column(String(255), nullable=True)
    highway = Column(String(64), nullable=True)
    geom = Column(Geometry(geometry_type="LINESTRING", srid=4326, spatial_index=True), nullable=False)
