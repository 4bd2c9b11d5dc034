"""Error taxonomy for the road network engine.

- ``DecodeError``: a geometry blob could not be decoded; the feature is skipped.
- ``SourceUnavailable``: a geometry source timed out, lost its connection or has
  no data; the resolver moves on to the next source.
- ``ValidationError``: a coordinate or measurement value is unusable; the item
  is dropped and the rest of the batch continues.
- ``AggregationConflict``: the rating aggregate disagrees with its history
  (duplicate rows for one key).  Indicates a concurrency-control bug.
"""
from __future__ import annotations


class RoadnetError(Exception):
    """Base class for all engine errors."""


class DecodeError(RoadnetError):
    pass


class SourceUnavailable(RoadnetError):
    def __init__(self, source: str, reason: str):
        super().__init__(f"{source} unavailable: {reason}")
        self.source = source
        self.reason = reason


class ValidationError(RoadnetError):
    pass


class AggregationConflict(RoadnetError):
    pass
