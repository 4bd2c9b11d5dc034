"""Optional Redis L2 cache for nearest-edge answers and rendered tiles.

Every helper degrades to a miss (or a no-op) when Redis is disabled or failing;
the engine never depends on it for correctness.
"""
from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Optional, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

_client = None
_resolved = False
_init_lock = threading.Lock()


def get_redis():
    """Shared ``redis.Redis`` (binary responses), or None when not configured or unreachable."""
    global _client, _resolved
    if _resolved:
        return _client
    with _init_lock:
        if _resolved:
            return _client
        from roadnet.config import settings

        client = None
        if settings.redis_url:
            import redis

            try:
                client = redis.Redis.from_url(settings.redis_url, socket_connect_timeout=3)
                client.ping()
                log.info("Redis cache enabled at %s", settings.redis_url)
            except redis.RedisError as exc:
                log.warning("Redis unavailable (%s), caching in-process only", exc)
                client = None
        _client = client
        _resolved = True
    return _client


def reset_redis() -> None:
    """Forget the connection so the next call re-reads settings."""
    global _client, _resolved
    with _init_lock:
        _client = None
        _resolved = False


def _with_redis(op: Callable[[Any], T], default: T) -> T:
    r = get_redis()
    if r is None:
        return default
    try:
        return op(r)
    except Exception as exc:
        log.debug("Redis operation failed: %s", exc)
        return default


# ── JSON ─────────────────────────────────────────────────────────────────

def cache_get_json(key: str) -> Optional[Any]:
    raw = _with_redis(lambda r: r.get(key), None)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        log.debug("Discarding undecodable cache entry %s", key)
        return None


def cache_set_json(key: str, value: Any, ttl: int) -> None:
    _with_redis(lambda r: r.set(key, json.dumps(value), ex=ttl), None)


# ── Bytes (tiles) ────────────────────────────────────────────────────────

def cache_get_bytes(key: str) -> Optional[bytes]:
    return _with_redis(lambda r: r.get(key), None)


def cache_set_bytes(key: str, value: bytes, ttl: int) -> None:
    _with_redis(lambda r: r.set(key, value, ex=ttl), None)


def cache_delete_pattern(pattern: str) -> int:
    """Delete every key matching ``pattern``; returns how many went."""

    def _delete(r) -> int:
        return sum(r.delete(k) for k in r.scan_iter(match=pattern, count=500))

    return _with_redis(_delete, 0)
