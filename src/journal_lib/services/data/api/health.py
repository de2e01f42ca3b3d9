"""
Health check router.

    GET /health   - Redis and database connectivity
"""

import logging
from datetime import datetime
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Request

from src.journal_lib.core import models
from src.journal_lib.services.data.api.rate_limit import PUBLIC_LIMIT, get_limiter

_EST = ZoneInfo("America/New_York")
logger = logging.getLogger("api.health")

router = APIRouter(tags=["health"])
limiter = get_limiter()


def _check_redis() -> dict:
    try:
        from src.journal_lib.core.cache import REDIS_AVAILABLE, _r

        if REDIS_AVAILABLE and _r is not None:
            _r.ping()
            return {"status": "ok", "connected": True}
        return {"status": "unavailable", "connected": False}
    except Exception as exc:
        return {"status": "error", "connected": False, "error": str(exc)}


def _check_database() -> dict:
    backend = "postgres" if models._is_using_postgres() else "sqlite"
    try:
        with models.get_connection() as conn:
            conn.execute("SELECT 1").fetchone()
        return {"status": "ok", "backend": backend}
    except Exception as exc:
        logger.error("Database health check failed: %s", exc)
        return {"status": "error", "backend": backend, "error": str(exc)}


@router.get("/health")
@limiter.limit(PUBLIC_LIMIT)
def health(request: Request):
    """Service health check.

    ``ok`` needs a working database; Redis is optional (the cache falls
    back to memory), so a missing Redis alone does not degrade status.
    """
    database = _check_database()
    return {
        "status": "ok" if database["status"] == "ok" else "degraded",
        "timestamp": datetime.now(tz=_EST).isoformat(),
        "components": {
            "redis": _check_redis(),
            "database": database,
        },
    }
