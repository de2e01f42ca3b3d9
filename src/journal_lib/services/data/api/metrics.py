"""
Prometheus metrics - ``GET /metrics/prometheus``.

Tracked metrics:
  - ``http_requests_total``             - Counter: requests by method, path, status
  - ``http_request_duration_seconds``   - Histogram: latency by method and path
  - ``analytics_requests_total``        - Counter: analytics responses by cache result
  - ``staged_orders_total``             - Counter: rows staged / rejected at import
  - ``format_approvals_total``          - Counter: approvals by outcome
  - ``migrated_orders_total``           - Counter: staged rows promoted to orders
  - ``webhook_events_total``            - Counter: webhook deliveries by type and outcome
  - ``account_deletions_total``         - Counter: deletion steps executed
  - ``staging_pending_count``           - Gauge: PENDING staged rows (refreshed on scrape)
  - ``redis_connected``                 - Gauge: 1 if Redis is connected

The ``/metrics/prometheus`` path is public (no API key required).
"""

import logging
import time

from fastapi import APIRouter, Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response as StarletteResponse

from src.journal_lib.services.data.api.rate_limit import PUBLIC_LIMIT, get_limiter

logger = logging.getLogger("api.metrics")

# Custom registry so tests can inspect it without the global default
_registry = CollectorRegistry()

HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests received",
    labelnames=["method", "path", "status"],
    registry=_registry,
)

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=_registry,
)

ANALYTICS_REQUESTS_TOTAL = Counter(
    "analytics_requests_total",
    "Analytics responses served",
    labelnames=["cache"],  # hit, miss
    registry=_registry,
)

STAGED_ORDERS_TOTAL = Counter(
    "staged_orders_total",
    "Order rows processed by CSV staging",
    labelnames=["result"],  # staged, error
    registry=_registry,
)

FORMAT_APPROVALS_TOTAL = Counter(
    "format_approvals_total",
    "Broker format approvals",
    labelnames=["outcome"],  # success, failure
    registry=_registry,
)

MIGRATED_ORDERS_TOTAL = Counter(
    "migrated_orders_total",
    "Staged rows promoted into orders",
    registry=_registry,
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "webhook_events_total",
    "Billing webhook deliveries",
    labelnames=["event_type", "outcome"],  # processed, duplicate, rejected, failed
    registry=_registry,
)

ACCOUNT_DELETIONS_TOTAL = Counter(
    "account_deletions_total",
    "Account deletion steps executed",
    labelnames=["step"],
    registry=_registry,
)

STAGING_PENDING_COUNT = Gauge(
    "staging_pending_count",
    "Staged order rows awaiting format approval",
    registry=_registry,
)

REDIS_CONNECTED = Gauge(
    "redis_connected",
    "Whether Redis is currently connected (1=yes, 0=no)",
    registry=_registry,
)


# ---------------------------------------------------------------------------
# Recording helpers
# ---------------------------------------------------------------------------


def record_analytics_request(cache_hit: bool) -> None:
    ANALYTICS_REQUESTS_TOTAL.labels(cache="hit" if cache_hit else "miss").inc()


def record_staging(staged: int, errors: int) -> None:
    if staged:
        STAGED_ORDERS_TOTAL.labels(result="staged").inc(staged)
    if errors:
        STAGED_ORDERS_TOTAL.labels(result="error").inc(errors)


def record_format_approval(success: bool, migrated: int = 0) -> None:
    FORMAT_APPROVALS_TOTAL.labels(outcome="success" if success else "failure").inc()
    if migrated:
        MIGRATED_ORDERS_TOTAL.inc(migrated)


def record_webhook(event_type: str, outcome: str) -> None:
    WEBHOOK_EVENTS_TOTAL.labels(event_type=event_type, outcome=outcome).inc()


def record_deletion_step(step: str, count: int = 1) -> None:
    if count:
        ACCOUNT_DELETIONS_TOTAL.labels(step=step).inc(count)


def update_redis_status(connected: bool) -> None:
    REDIS_CONNECTED.set(1 if connected else 0)


# ---------------------------------------------------------------------------
# Path normalization for HTTP metrics
# ---------------------------------------------------------------------------

# Prefixes whose next segment is an identifier
_PATH_PREFIXES_TO_NORMALIZE = [
    "/admin/formats/",
    "/imports/batches/",
    "/billing/events/",
]

_STATIC_SEGMENTS = frozenset({"stats", "staging-stats", "cleanup", "process-orphaned"})


def _normalize_path(path: str) -> str:
    """Collapse id segments to ``{id}`` to bound label cardinality.

        /admin/formats/12/approve  → /admin/formats/{id}/approve
        /billing/events/evt_123    → /billing/events/{id}
        /admin/formats/stats       → /admin/formats/stats  (unchanged)
    """
    if not path:
        return "/"

    for prefix in _PATH_PREFIXES_TO_NORMALIZE:
        if path.startswith(prefix) and len(path) > len(prefix):
            rest = path[len(prefix) :]
            slash_pos = rest.find("/")
            segment = rest if slash_pos == -1 else rest[:slash_pos]
            if segment in _STATIC_SEGMENTS:
                return path
            if slash_pos == -1:
                return prefix + "{id}"
            return prefix + "{id}" + rest[slash_pos:]

    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Records HTTP request count and latency for every request."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> StarletteResponse:
        method = request.method
        path = _normalize_path(request.url.path)

        start = time.perf_counter()
        status_code = "500"

        try:
            response = await call_next(request)
            status_code = str(response.status_code)
        finally:
            duration = time.perf_counter() - start
            HTTP_REQUESTS_TOTAL.labels(method=method, path=path, status=status_code).inc()
            HTTP_REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def _collect_live_gauges() -> None:
    """Refresh gauges from Redis and the database before a scrape."""
    try:
        from src.journal_lib.core.cache import REDIS_AVAILABLE, _r

        if REDIS_AVAILABLE and _r is not None:
            _r.ping()
            update_redis_status(True)
        else:
            update_redis_status(False)
    except Exception:
        update_redis_status(False)

    try:
        from src.journal_lib.core.models import get_connection

        with get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM order_staging WHERE migration_status = 'PENDING'"
            ).fetchone()
        STAGING_PENDING_COUNT.set(int(row[0]))
    except Exception as exc:
        logger.debug("Could not refresh staging gauge: %s", exc)


router = APIRouter(tags=["Metrics"])
limiter = get_limiter()


@router.get(
    "/metrics/prometheus",
    response_class=Response,
    summary="Prometheus metrics",
    description="Returns all application metrics in Prometheus text exposition format.",
)
@limiter.limit(PUBLIC_LIMIT)
def prometheus_metrics(request: Request):
    """Serve metrics in Prometheus text exposition format."""
    _collect_live_gauges()
    return Response(content=generate_latest(_registry), media_type=CONTENT_TYPE_LATEST)


def get_registry() -> CollectorRegistry:
    """Return the application's Prometheus CollectorRegistry."""
    return _registry
