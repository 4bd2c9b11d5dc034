"""Rating aggregation: survey ingest, survey retraction and full rebuilds.

Every write keeps ``road_rating.eiri`` equal to the mean of the live
``road_rating_history`` rows for the same ``(scope, road, segment)`` key.  Writes
for one key are serialized by an in-process ``KeyedLock`` held across the whole
transaction (commit included) and, on PostgreSQL, by transaction-scoped
advisory locks so several server processes can share one database.
"""
from __future__ import annotations

import hashlib
import logging
import math
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select, text
from sqlalchemy.orm import Session

from roadnet.config import settings
from roadnet.contracts.geometry import LineGeometry, SegmentKey
from roadnet.core import segmenter
from roadnet.core.locks import KeyedLock
from roadnet.core.models import IngestReport, KeyRating, Measurement, RebuildReport, RetractReport
from roadnet.errors import AggregationConflict, SourceUnavailable, ValidationError
from roadnet.geo.geodesy import is_valid_lonlat
from roadnet.storage.db import get_session_factory, unit_of_work
from roadnet.storage.tables import CurrentRating, RatingHistory

log = logging.getLogger(__name__)

# (road_id, segment_index); segment_index None = whole edge
Key = Tuple[str, Optional[int]]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _lock_token(scope_id: Optional[str], key: Key) -> Tuple[str, str, int]:
    road_id, idx = key
    return (scope_id or "", road_id, -1 if idx is None else idx)


def _advisory_id(scope_id: Optional[str], key: Key) -> int:
    raw = "|".join(str(p) for p in _lock_token(scope_id, key)).encode()
    return int.from_bytes(hashlib.blake2b(raw, digest_size=8).digest(), "big", signed=True)


def _match(model, scope_id: Optional[str], key: Optional[Key] = None) -> list:
    conds = [model.scope_id.is_(None) if scope_id is None else model.scope_id == scope_id]
    if key is not None:
        road_id, idx = key
        conds.append(model.road_id == road_id)
        conds.append(model.segment_index.is_(None) if idx is None else model.segment_index == idx)
    return conds


def _key_rating(key: Key, batch: Optional[float], current: Optional[Tuple[float, int]]) -> KeyRating:
    road_id, idx = key
    return KeyRating(
        road_id=road_id,
        segment_index=idx,
        segment_id=SegmentKey(road_id, idx).segment_id,
        batch_eiri=batch,
        eiri=current[0] if current else None,
        history_count=current[1] if current else 0,
    )


def validate_measurement(m: Measurement) -> Measurement:
    """Raise ``ValidationError`` for a reading that must not be aggregated."""
    if not m.road_id or not str(m.road_id).strip():
        raise ValidationError("measurement has no road id")
    if not isinstance(m.value, (int, float)) or not math.isfinite(m.value):
        raise ValidationError(f"non-finite value {m.value!r} for road {m.road_id}")
    if m.point is not None:
        if len(m.point) != 2:
            raise ValidationError(f"point must be [lon, lat], got {m.point!r}")
        lon, lat = m.point
        if not is_valid_lonlat(float(lon), float(lat)):
            raise ValidationError(f"point out of range {m.point!r} for road {m.road_id}")
    return m


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------

class RatingAggregator:
    def __init__(
        self,
        resolver=None,
        session_factory=None,
        locks: Optional[KeyedLock] = None,
        segment_length_m: Optional[float] = None,
        tolerance_m: Optional[float] = None,
    ):
        # ``resolver`` needs only ``get_geometries(road_ids)``; None = never segment
        self.resolver = resolver
        self._session_factory = session_factory
        self.locks = locks or KeyedLock()
        self.segment_length_m = segment_length_m or settings.segment_length_m
        self.tolerance_m = settings.segment_match_tolerance_m if tolerance_m is None else tolerance_m

    @property
    def session_factory(self):
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    # ------------------------------------------------------------------
    # Attribution (no I/O besides the geometry lookup)
    # ------------------------------------------------------------------

    def _geometries(self, road_ids: Sequence[str]) -> Tuple[Dict[str, LineGeometry], bool]:
        if self.resolver is None or not road_ids:
            return {}, self.resolver is None
        try:
            return self.resolver.get_geometries(road_ids), False
        except SourceUnavailable as e:
            log.warning("Road geometries unavailable, rating %d road(s) unsegmented: %s", len(road_ids), e)
            return {}, True

    def attribute(
        self, measurements: Iterable[Measurement]
    ) -> Tuple["OrderedDict[Key, float]", int, List[str], bool]:
        """Validate, segment and average a batch.

        Returns (mean value per key, dropped count, unsegmented road ids,
        geometry_unavailable).
        """
        groups: "OrderedDict[str, List[Measurement]]" = OrderedDict()
        dropped = 0
        for m in measurements:
            try:
                validate_measurement(m)
            except ValidationError as e:
                dropped += 1
                log.warning("Dropping measurement: %s", e)
                continue
            groups.setdefault(str(m.road_id), []).append(m)

        geometries, unavailable = self._geometries(list(groups))

        values: "OrderedDict[Key, List[float]]" = OrderedDict()
        unsegmented: List[str] = []
        for road_id, items in groups.items():
            geom = geometries.get(road_id)
            segs = []
            if geom is not None and segmenter.edge_length_m(geom) > 0:
                segs = segmenter.split(road_id, geom, self.segment_length_m)
            if not segs:
                unsegmented.append(road_id)
                values.setdefault((road_id, None), []).extend(float(m.value) for m in items)
                continue
            for m in items:
                if m.point is not None:
                    point = (float(m.point[0]), float(m.point[1]))
                    idxs = segmenter.segments_for_point(point, segs, self.tolerance_m)
                else:
                    # No position: the reading counts for every segment of the edge
                    idxs = [s.index for s in segs]
                for idx in idxs:
                    values.setdefault((road_id, idx), []).append(float(m.value))

        means: "OrderedDict[Key, float]" = OrderedDict(
            (k, sum(v) / len(v)) for k, v in values.items()
        )
        return means, dropped, unsegmented, unavailable

    # ------------------------------------------------------------------
    # Storage primitives (caller owns the transaction)
    # ------------------------------------------------------------------

    def _lock_in_db(self, session: Session, scope_id: Optional[str], keys: Iterable[Key]) -> None:
        if session.get_bind().dialect.name != "postgresql":
            return
        for key in sorted(keys, key=lambda k: _lock_token(scope_id, k)):
            session.execute(text("SELECT pg_advisory_xact_lock(:k)"), {"k": _advisory_id(scope_id, key)})

    def recompute(self, session: Session, scope_id: Optional[str], key: Key) -> Optional[Tuple[float, int]]:
        """Set the current rating for ``key`` from its history; delete it when none remains."""
        mean, count = session.execute(
            select(func.avg(RatingHistory.eiri), func.count(RatingHistory.id)).where(
                *_match(RatingHistory, scope_id, key)
            )
        ).one()
        rows = session.execute(
            select(CurrentRating).where(*_match(CurrentRating, scope_id, key))
        ).scalars().all()
        if len(rows) > 1:
            log.critical(
                "%d current-rating rows for scope=%s road=%s segment=%s; concurrent writers were not serialized",
                len(rows), scope_id, key[0], key[1],
            )
            raise AggregationConflict(f"duplicate current ratings for {key[0]} segment {key[1]}")

        if not count:
            if rows:
                session.delete(rows[0])
            return None

        row = rows[0] if rows else None
        if row is None:
            row = CurrentRating(scope_id=scope_id, road_id=key[0], segment_index=key[1])
            session.add(row)
        row.eiri = float(mean)
        row.history_count = int(count)
        row.updated_at = datetime.now(timezone.utc)
        return row.eiri, row.history_count

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def ingest(
        self,
        scope_id: Optional[str],
        survey_id: str,
        project_id: Optional[str],
        measurements: Iterable[Measurement],
        contributor_id: Optional[str] = None,
        anomaly_count: Optional[int] = None,
    ) -> IngestReport:
        """Append one history row per key and refresh the affected ratings, atomically."""
        measurements = list(measurements)
        means, dropped, unsegmented, unavailable = self.attribute(measurements)
        report = IngestReport(
            scope_id=scope_id,
            survey_id=survey_id,
            accepted=len(measurements) - dropped,
            dropped=dropped,
            unsegmented_roads=unsegmented,
            geometry_unavailable=unavailable,
        )
        if not means:
            log.info("Survey %s: nothing to aggregate (%d dropped)", survey_id, dropped)
            return report

        now = datetime.now(timezone.utc)
        keys = list(means)
        with self.locks.hold(_lock_token(scope_id, k) for k in keys):
            with unit_of_work(self.session_factory) as session:
                self._lock_in_db(session, scope_id, keys)
                for key in keys:
                    road_id, idx = key
                    session.add(
                        RatingHistory(
                            scope_id=scope_id,
                            road_id=road_id,
                            segment_index=idx,
                            eiri=means[key],
                            contributor_id=contributor_id,
                            survey_id=survey_id,
                            project_id=project_id,
                            anomaly_count=anomaly_count,
                            created_at=now,
                        )
                    )
                session.flush()
                for key in keys:
                    report.keys.append(_key_rating(key, means[key], self.recompute(session, scope_id, key)))

        log.info(
            "Survey %s ingested: %d key(s), %d accepted, %d dropped, %d unsegmented road(s)",
            survey_id, len(keys), report.accepted, dropped, len(unsegmented),
        )
        return report

    def _survey_keys(self, session: Session, scope_id: Optional[str], survey_id: str) -> List[Key]:
        rows = session.execute(
            select(RatingHistory.road_id, RatingHistory.segment_index)
            .where(*_match(RatingHistory, scope_id), RatingHistory.survey_id == survey_id)
            .distinct()
        ).all()
        return sorted({(r[0], r[1]) for r in rows}, key=lambda k: _lock_token(scope_id, k))

    def retract(self, scope_id: Optional[str], survey_id: str) -> RetractReport:
        """Remove a survey's history and recompute (or delete) every rating it touched."""
        report = RetractReport(scope_id=scope_id, survey_id=survey_id)
        with unit_of_work(self.session_factory) as session:
            keys = self._survey_keys(session, scope_id, survey_id)
        if not keys:
            log.info("Survey %s has no rating history in scope %s", survey_id, scope_id)
            return report

        with self.locks.hold(_lock_token(scope_id, k) for k in keys):
            with unit_of_work(self.session_factory) as session:
                self._lock_in_db(session, scope_id, keys)
                # Rows written between the two reads are locked in the database only
                keys = sorted(set(keys) | set(self._survey_keys(session, scope_id, survey_id)),
                              key=lambda k: _lock_token(scope_id, k))
                result = session.execute(
                    delete(RatingHistory)
                    .where(*_match(RatingHistory, scope_id), RatingHistory.survey_id == survey_id)
                    .execution_options(synchronize_session=False)
                )
                report.deleted_entries = int(result.rowcount or 0)
                for key in keys:
                    report.keys.append(_key_rating(key, None, self.recompute(session, scope_id, key)))

        log.info("Survey %s retracted: %d history row(s), %d key(s)", survey_id, report.deleted_entries, len(keys))
        return report

    def rebuild(self, scope_id: Optional[str]) -> RebuildReport:
        """Recompute every current rating of a scope from history.

        Repairs duplicate rows and drops ratings whose history is gone.
        """
        report = RebuildReport(scope_id=scope_id)
        with unit_of_work(self.session_factory) as session:
            history_keys = {
                (r[0], r[1])
                for r in session.execute(
                    select(RatingHistory.road_id, RatingHistory.segment_index)
                    .where(*_match(RatingHistory, scope_id))
                    .distinct()
                ).all()
            }
            rating_keys = {
                (r[0], r[1])
                for r in session.execute(
                    select(CurrentRating.road_id, CurrentRating.segment_index).where(*_match(CurrentRating, scope_id))
                ).all()
            }
        keys = sorted(history_keys | rating_keys, key=lambda k: _lock_token(scope_id, k))

        with self.locks.hold(_lock_token(scope_id, k) for k in keys):
            with unit_of_work(self.session_factory) as session:
                self._lock_in_db(session, scope_id, keys)
                for key in keys:
                    rows = session.execute(
                        select(CurrentRating).where(*_match(CurrentRating, scope_id, key)).order_by(CurrentRating.id)
                    ).scalars().all()
                    for extra in rows[1:]:
                        log.warning("Removing duplicate rating row %s for %s segment %s", extra.id, key[0], key[1])
                        session.delete(extra)
                    if rows[1:]:
                        session.flush()
                    if self.recompute(session, scope_id, key) is None:
                        if key in rating_keys:
                            report.removed += 1
                    else:
                        report.ratings += 1

        log.info("Rebuilt scope %s: %d rating(s), %d removed", scope_id, report.ratings, report.removed)
        return report
