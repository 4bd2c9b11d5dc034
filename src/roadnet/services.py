"""Process-wide engine components, built once and handed out as FastAPI dependencies."""
from __future__ import annotations

import logging
import threading
from typing import Optional

from roadnet.config import settings
from roadnet.core.aggregator import RatingAggregator
from roadnet.sources.resolver import NearestEdgeResolver, build_resolver
from roadnet.tiles.renderer import TileRenderer

log = logging.getLogger(__name__)

_lock = threading.Lock()
_resolver: Optional[NearestEdgeResolver] = None
_aggregator: Optional[RatingAggregator] = None
_renderer: Optional[TileRenderer] = None


def get_resolver() -> NearestEdgeResolver:
    global _resolver
    with _lock:
        if _resolver is None:
            _resolver = build_resolver(settings.geometry_sources)
            log.info("Geometry sources: %s", ", ".join(s.name for s in _resolver.sources))
        return _resolver


def get_aggregator() -> RatingAggregator:
    global _aggregator
    resolver = get_resolver()
    with _lock:
        if _aggregator is None:
            _aggregator = RatingAggregator(resolver=resolver)
        return _aggregator


def get_renderer() -> TileRenderer:
    global _renderer
    resolver = get_resolver()
    with _lock:
        if _renderer is None:
            _renderer = TileRenderer(resolver)
        return _renderer


def reset_services() -> None:
    """Close and forget every component; the next call rebuilds from settings."""
    global _resolver, _aggregator, _renderer
    with _lock:
        if _renderer is not None:
            _renderer.close()
        if _resolver is not None:
            _resolver.close()
        _resolver = _aggregator = _renderer = None
