"""
Rate limiting for the journal data-service, using ``slowapi``.

Limits, applied per client bucket:
  - Public endpoints (``/health``, ``/metrics/prometheus``, the webhook): 60 req/min
  - API endpoints (default, via ``SlowAPIMiddleware``): 30 req/min
  - Import staging and account mutations: 20 req/min
  - Format approve / reject, orphan processing, staging cleanup: 5 req/min

Routers attach the non-default limits with the shared limiter::

    limiter = get_limiter()

    @router.post("/{format_id}/approve")
    @limiter.limit(HEAVY_LIMIT)
    def approve_format(request: Request, ...):
        ...

Decorated routes are skipped by the middleware, so each request is
counted against exactly one limit.

Configuration via environment variables:
  - ``RATE_LIMIT_ENABLED``   - "1" to enable, "0" to disable (default: "1")
  - ``RATE_LIMIT_DEFAULT``   - default limit string (default: "30/minute")
  - ``RATE_LIMIT_PUBLIC``    - public endpoint limit (default: "60/minute")
  - ``RATE_LIMIT_MUTATIONS`` - mutation limit (default: "20/minute")
  - ``RATE_LIMIT_HEAVY``     - heavy admin actions (default: "5/minute")
  - ``RATE_LIMIT_STORAGE``   - "memory://" or a redis URL (default: "memory://")

``RATE_LIMIT_ENABLED=0`` builds the limiter with ``enabled=False``: the
decorators and middleware stay installed but never count or block.
"""

import logging
import os
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

logger = logging.getLogger("api.rate_limit")

_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "1").strip() in ("1", "true", "yes")
_STORAGE_URI = os.getenv("RATE_LIMIT_STORAGE", "memory://")

DEFAULT_LIMIT = os.getenv("RATE_LIMIT_DEFAULT", "30/minute")
PUBLIC_LIMIT = os.getenv("RATE_LIMIT_PUBLIC", "60/minute")
MUTATIONS_LIMIT = os.getenv("RATE_LIMIT_MUTATIONS", "20/minute")
HEAVY_LIMIT = os.getenv("RATE_LIMIT_HEAVY", "5/minute")


def _client_key_func(request: Request) -> str:
    """Rate-limit bucket for a request.

    Priority: the acting user, then the API key prefix, then the client
    IP (``X-Forwarded-For`` first).
    """
    user_id = request.headers.get("x-user-id")
    if user_id:
        return f"user:{user_id}"

    api_key = request.headers.get("x-api-key")
    if api_key:
        key_prefix = api_key[:8] if len(api_key) >= 8 else api_key
        return f"apikey:{key_prefix}"

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"

    return f"ip:{get_remote_address(request)}"


def _get_storage_uri() -> str:
    uri = _STORAGE_URI
    if uri == "redis":
        return os.getenv("REDIS_URL", "memory://")
    if uri.startswith("redis"):
        return uri
    return "memory://"


_limiter: Optional[Limiter] = None


def get_limiter() -> Limiter:
    """Return the singleton ``Limiter``, creating it on first call.

    Router modules decorate their routes with this instance at import
    time, so it lives for the whole process.
    """
    global _limiter
    if _limiter is None:
        storage_uri = _get_storage_uri()

        _limiter = Limiter(
            key_func=_client_key_func,
            default_limits=[DEFAULT_LIMIT],
            storage_uri=storage_uri,
            strategy="fixed-window",
            enabled=_ENABLED,
        )
        logger.info(
            "Rate limiter initialised: enabled=%s default=%s storage=%s",
            _ENABLED,
            DEFAULT_LIMIT,
            storage_uri,
        )

    return _limiter


def reset_limiter() -> None:
    """Clear every counter held by the limiter (useful in tests)."""
    if _limiter is not None:
        _limiter.reset()


def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Structured JSON 429 response."""
    retry_after = exc.detail or "unknown"

    logger.warning(
        "Rate limit exceeded: %s %s from %s, limit %s",
        request.method,
        request.url.path,
        _client_key_func(request),
        retry_after,
    )

    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "detail": f"Rate limit exceeded: {retry_after}",
            "retry_after": str(retry_after),
        },
        headers={"Retry-After": str(retry_after)},
    )


def setup_rate_limiting(app: FastAPI) -> Limiter:
    """Install the limiter on *app*: state, 429 handler and middleware."""
    limiter = get_limiter()
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)
    app.add_middleware(SlowAPIMiddleware)

    logger.info(
        "Rate limiting configured: enabled=%s, default=%s, public=%s, mutations=%s, heavy=%s",
        limiter.enabled,
        DEFAULT_LIMIT,
        PUBLIC_LIMIT,
        MUTATIONS_LIMIT,
        HEAVY_LIMIT,
    )
    return limiter


def is_rate_limiting_enabled() -> bool:
    return get_limiter().enabled
