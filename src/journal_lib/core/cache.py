"""
Redis caching layer for computed analytics.

Falls back to an in-memory dict if Redis is unavailable (or
``DISABLE_REDIS=1``), so the service still works without Redis running.
Cache failures are logged and treated as misses; they never propagate
to callers.

Key layout (prefix ``stonks:analytics:``)::

    stonks:analytics:{user}:{request-hash}        full analytics responses
    stonks:analytics:quick:{user}                 quick stats (5 min)
    stonks:analytics:time:{user}:{type}:{period}  per-aggregation results
"""

import fnmatch
import hashlib
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger("cache")

_DISABLED = os.getenv("DISABLE_REDIS", "").strip() in ("1", "true", "yes")

try:
    if _DISABLED:
        raise RuntimeError("Redis disabled via DISABLE_REDIS")
    import redis

    _redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    _r: "redis.Redis | None" = redis.from_url(
        _redis_url, decode_responses=False, socket_connect_timeout=2
    )
    _r.ping()  # type: ignore[union-attr]
    REDIS_AVAILABLE = True
except Exception as exc:
    logger.info("Redis unavailable, using in-memory cache: %s", exc)
    _r = None
    REDIS_AVAILABLE = False

# Fallback in-memory cache when Redis is not available
_mem_cache: dict = {}

KEY_PREFIX = "stonks:analytics:"
DEFAULT_TTL = int(os.getenv("ANALYTICS_CACHE_TTL", "3600"))
QUICK_STATS_TTL = 300

# Per-aggregation TTLs in seconds
TIME_AGGREGATION_TTLS = {
    "hourly": 300,
    "daily": 1800,
    "weekly": 3600,
    "monthly": 7200,
}

DEFAULT_TIME_ZONE = "America/New_York"


def _now_ts() -> float:
    return datetime.now(tz=timezone.utc).timestamp()


# ---------------------------------------------------------------------------
# Low-level get / set
# ---------------------------------------------------------------------------


def cache_get(key: str) -> bytes | None:
    if REDIS_AVAILABLE and _r is not None:
        result = _r.get(key)
        if isinstance(result, bytes):
            return result
        return None
    entry = _mem_cache.get(key)
    if entry is None:
        return None
    if _now_ts() > entry["expires"]:
        del _mem_cache[key]
        return None
    return entry["data"]


def cache_set(key: str, data: bytes, ttl: int) -> None:
    if REDIS_AVAILABLE and _r is not None:
        _r.setex(key, ttl, data)
    else:
        _mem_cache[key] = {"data": data, "expires": _now_ts() + ttl}


def cache_delete_pattern(pattern: str) -> int:
    """Delete every key matching a glob *pattern*; returns the count."""
    deleted = 0
    if REDIS_AVAILABLE and _r is not None:
        for key in _r.scan_iter(match=pattern, count=500):
            deleted += int(_r.delete(key))
        return deleted
    for key in [k for k in _mem_cache if fnmatch.fnmatchcase(k, pattern)]:
        del _mem_cache[key]
        deleted += 1
    return deleted


def flush_all() -> None:
    """Clear all cached analytics."""
    if REDIS_AVAILABLE and _r is not None:
        for key in _r.scan_iter(KEY_PREFIX + "*"):
            _r.delete(key)
    else:
        _mem_cache.clear()


# ---------------------------------------------------------------------------
# Analytics cache
# ---------------------------------------------------------------------------


def _normalize_request(request: dict) -> dict:
    """Order-insensitive view of an analytics request, used for hashing.

    Symbols follow ``TradeFilters.from_dict``: a singular ``symbol`` other
    than ``"all"`` replaces ``symbols``, and names compare stripped and
    upper-cased.
    """
    filters = dict(request.get("filters") or {})
    symbols = filters.get("symbols") or []
    if filters.get("symbol") and filters["symbol"] != "all":
        symbols = [filters["symbol"]]
    side = filters.get("side")
    return {
        "date_range": request.get("date_range") or {},
        "filters": {
            "symbols": sorted({s.strip().upper() for s in symbols if s and s.strip()}),
            "tags": sorted(t for t in (filters.get("tags") or []) if t),
            "side": side.upper() if isinstance(side, str) else side,
            "duration": filters.get("duration"),
            "time_zone": filters.get("time_zone") or DEFAULT_TIME_ZONE,
        },
        "aggregations": sorted(request.get("aggregations") or []),
    }


class AnalyticsCache:
    """JSON value cache for analytics results.

    Every public method swallows backend errors after logging them, so a
    Redis outage degrades analytics to uncached computation.
    """

    def __init__(self, prefix: str = KEY_PREFIX, default_ttl: int = DEFAULT_TTL):
        self.prefix = prefix
        self.default_ttl = default_ttl
        self.hits = 0
        self.misses = 0

    # -- keys --------------------------------------------------------------

    def generate_analytics_key(self, user_id: str, request: dict) -> str:
        normalized = json.dumps(_normalize_request(request), sort_keys=True, default=str)
        digest = hashlib.md5(normalized.encode()).hexdigest()
        return f"{self.prefix}{user_id}:{digest}"

    def quick_stats_key(self, user_id: str) -> str:
        return f"{self.prefix}quick:{user_id}"

    def time_aggregation_key(self, user_id: str, agg_type: str, period: str) -> str:
        return f"{self.prefix}time:{user_id}:{agg_type}:{period}"

    # -- generic json get / set --------------------------------------------

    def _get_json(self, key: str) -> Optional[Any]:
        try:
            raw = cache_get(key)
        except Exception as exc:
            logger.error("Cache get failed for %s: %s", key, exc)
            self.misses += 1
            return None
        if raw is None:
            self.misses += 1
            return None
        try:
            value = json.loads(raw)
        except ValueError as exc:
            logger.warning("Discarding undecodable cache entry %s: %s", key, exc)
            self.misses += 1
            return None
        self.hits += 1
        return value

    def _set_json(self, key: str, value: Any, ttl: int) -> bool:
        try:
            cache_set(key, json.dumps(value, default=str).encode(), ttl)
            return True
        except Exception as exc:
            logger.error("Cache set failed for %s: %s", key, exc)
            return False

    # -- analytics responses -----------------------------------------------

    def get_analytics(self, user_id: str, request: dict) -> Optional[dict]:
        return self._get_json(self.generate_analytics_key(user_id, request))

    def set_analytics(
        self, user_id: str, request: dict, data: dict, ttl: Optional[int] = None
    ) -> bool:
        key = self.generate_analytics_key(user_id, request)
        return self._set_json(key, data, ttl or self.default_ttl)

    # -- quick stats -------------------------------------------------------

    def get_quick_stats(self, user_id: str) -> Optional[dict]:
        return self._get_json(self.quick_stats_key(user_id))

    def set_quick_stats(self, user_id: str, stats: dict) -> bool:
        return self._set_json(self.quick_stats_key(user_id), stats, QUICK_STATS_TTL)

    # -- time aggregations -------------------------------------------------

    def get_time_aggregation(
        self, user_id: str, agg_type: str, period: str
    ) -> Optional[Any]:
        return self._get_json(self.time_aggregation_key(user_id, agg_type, period))

    def set_time_aggregation(
        self, user_id: str, agg_type: str, period: str, data: Any
    ) -> bool:
        ttl = TIME_AGGREGATION_TTLS.get(period, self.default_ttl)
        return self._set_json(
            self.time_aggregation_key(user_id, agg_type, period), data, ttl
        )

    # -- bulk / maintenance ------------------------------------------------

    def batch_set(self, entries: list[tuple[str, Any, Optional[int]]]) -> int:
        """Store several ``(key, value, ttl)`` entries; returns how many were written."""
        if not entries:
            return 0
        try:
            if REDIS_AVAILABLE and _r is not None:
                pipe = _r.pipeline()
                for key, value, ttl in entries:
                    pipe.setex(
                        key, ttl or self.default_ttl, json.dumps(value, default=str).encode()
                    )
                pipe.execute()
                return len(entries)
        except Exception as exc:
            logger.error("Cache batch set failed: %s", exc)
            return 0
        return sum(
            1 for key, value, ttl in entries if self._set_json(key, value, ttl or self.default_ttl)
        )

    def invalidate_user_analytics(self, user_id: str) -> int:
        """Drop every cached entry belonging to *user_id*."""
        patterns = (
            f"{self.prefix}{user_id}:*",
            self.quick_stats_key(user_id),
            f"{self.prefix}time:{user_id}:*",
        )
        deleted = 0
        try:
            for pattern in patterns:
                deleted += cache_delete_pattern(pattern)
        except Exception as exc:
            logger.error("Cache invalidation failed for user %s: %s", user_id, exc)
            return deleted
        logger.info("Invalidated %d cache entries for user %s", deleted, user_id)
        return deleted

    def get_cache_stats(self) -> dict:
        stats = {
            "backend": "redis" if REDIS_AVAILABLE else "memory",
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": _hit_rate(self.hits, self.misses),
            "total_keys": 0,
            "memory_usage": "0B",
            "evictions": 0,
        }
        try:
            if REDIS_AVAILABLE and _r is not None:
                info = _r.info()
                stats["total_keys"] = sum(1 for _ in _r.scan_iter(self.prefix + "*"))
                stats["memory_usage"] = str(info.get("used_memory_human", "0B"))
                stats["evictions"] = int(info.get("evicted_keys", 0))
                server_hits = int(info.get("keyspace_hits", 0))
                server_misses = int(info.get("keyspace_misses", 0))
                stats["hit_rate"] = _hit_rate(server_hits, server_misses)
            else:
                stats["total_keys"] = sum(
                    1 for k in _mem_cache if k.startswith(self.prefix)
                )
                stats["memory_usage"] = f"{sum(len(e['data']) for e in _mem_cache.values())}B"
        except Exception as exc:
            logger.error("Failed to read cache stats: %s", exc)
        return stats


def _hit_rate(hits: int, misses: int) -> float:
    total = hits + misses
    return round(hits / total * 100, 2) if total else 0.0


_analytics_cache: Optional[AnalyticsCache] = None


def get_analytics_cache() -> AnalyticsCache:
    """Process-wide AnalyticsCache singleton."""
    global _analytics_cache
    if _analytics_cache is None:
        _analytics_cache = AnalyticsCache()
    return _analytics_cache
