"""
Trading Journal Data Service - FastAPI
======================================
HTTP surface of the journal back-end:
  - Trade analytics and the dashboard
  - CSV import staging and admin format approval
  - Account deletion lifecycle
  - Stripe billing webhooks

Usage (from project root):
    uvicorn src.journal_lib.services.data.main:app --host 0.0.0.0 --port 8000
"""

import json
import math
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response


class _SafeFloatEncoder(json.JSONEncoder):
    """JSON encoder that converts inf/-inf/NaN to None."""

    def encode(self, o: Any) -> str:
        return super().encode(_sanitize(o))


def _sanitize(obj: Any) -> Any:
    """Recursively replace non-finite floats with None."""
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            return None
        return obj
    if isinstance(obj, dict):
        return {k: _sanitize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_sanitize(v) for v in obj]
    return obj


class SafeJSONResponse(JSONResponse):
    """JSONResponse subclass that handles inf/NaN floats gracefully.

    Profit factors and Sharpe ratios can be infinite for one-sided
    samples; those are sent as null.
    """

    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            cls=_SafeFloatEncoder,
            ensure_ascii=False,
            allow_nan=False,
            default=str,
        ).encode("utf-8")


# ---------------------------------------------------------------------------
# Logging - structured via structlog
# ---------------------------------------------------------------------------
from src.journal_lib.core.logging_config import (  # noqa: E402
    bind_request_context,
    clear_request_context,
    get_logger,
    setup_logging,
)

setup_logging(service="data-service")
logger = get_logger("data_service")

from src.journal_lib.core.errors import JournalError  # noqa: E402
from src.journal_lib.core.models import init_db  # noqa: E402
from src.journal_lib.services.data.api.account import router as account_router  # noqa: E402
from src.journal_lib.services.data.api.admin import router as admin_router  # noqa: E402
from src.journal_lib.services.data.api.analytics import (  # noqa: E402
    router as analytics_router,
)
from src.journal_lib.services.data.api.auth import require_api_key  # noqa: E402
from src.journal_lib.services.data.api.billing import router as billing_router  # noqa: E402
from src.journal_lib.services.data.api.health import router as health_router  # noqa: E402
from src.journal_lib.services.data.api.imports import router as imports_router  # noqa: E402
from src.journal_lib.services.data.api.metrics import PrometheusMiddleware  # noqa: E402
from src.journal_lib.services.data.api.metrics import (  # noqa: E402
    router as metrics_router,
)
from src.journal_lib.services.data.api.rate_limit import setup_rate_limiting  # noqa: E402


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("data_service_starting")
    try:
        init_db()
        logger.info("database_initialised", db_path=os.getenv("DB_PATH", "trading_journal.db"))
    except Exception as exc:
        logger.error("database_init_failed", error=str(exc))
    yield
    logger.info("data_service_stopped")


async def journal_error_handler(request: Request, exc: JournalError) -> SafeJSONResponse:
    """Render service errors as ``{"error", "message", "details"}``."""
    logger.warning(
        "request_failed",
        method=request.method,
        path=request.url.path,
        error=exc.error_code,
        message=exc.message,
    )
    return SafeJSONResponse(status_code=exc.status_code, content=exc.to_dict())


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a request id and the acting user to every log line of a request.

    The id comes from ``X-Request-Id`` when the caller sends one and is
    echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = bind_request_context(
            request.headers.get("x-request-id"), request.headers.get("x-user-id")
        )
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["X-Request-Id"] = request_id
        return response


def register_routers(app: FastAPI) -> None:
    """Mount every router on *app* (shared with the test app builder)."""
    app.add_exception_handler(JournalError, journal_error_handler)

    # Analytics: /analytics/query, /analytics/quick-stats, /analytics/dashboard
    app.include_router(analytics_router, prefix="/analytics", tags=["Analytics"])

    # Imports: /imports/stage, /imports/status, /imports/staged
    app.include_router(imports_router, prefix="/imports", tags=["Imports"])

    # Admin: /admin/formats, /admin/formats/{id}/approve, ...
    app.include_router(admin_router, prefix="/admin/formats", tags=["Admin"])

    # Account: /account/delete, /account/deletion-status, /account/reactivate
    app.include_router(account_router, prefix="/account", tags=["Account"])

    # Billing: /billing/webhook, /billing/events/{id}
    app.include_router(billing_router, prefix="/billing", tags=["Billing"])

    # Health: /health  (no prefix - top-level)
    app.include_router(health_router, tags=["Health"])

    # Prometheus metrics: /metrics/prometheus
    app.include_router(metrics_router, tags=["Metrics"])


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Trading Journal Data Service",
    description=(
        "Trade analytics, CSV import staging, account lifecycle and "
        "billing webhooks for the trading journal."
    ),
    version="1.0.0",
    lifespan=lifespan,
    default_response_class=SafeJSONResponse,
    dependencies=[Depends(require_api_key)],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(PrometheusMiddleware)

app.add_middleware(RequestContextMiddleware)

setup_rate_limiting(app)

register_routers(app)


@app.get("/api/info")
def api_info():
    """Service info and links to docs."""
    return {
        "service": "trading-journal-data-service",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "analytics": "/analytics/query",
            "quick_stats": "/analytics/quick-stats",
            "dashboard": "/analytics/dashboard",
            "stage_orders": "/imports/stage",
            "staging_status": "/imports/status",
            "formats": "/admin/formats",
            "account_deletion": "/account/delete",
            "webhook": "/billing/webhook",
            "health": "/health",
            "metrics": "/metrics/prometheus",
        },
    }


if __name__ == "__main__":
    import uvicorn

    host = os.getenv("DATA_SERVICE_HOST", "0.0.0.0")
    port = int(os.getenv("DATA_SERVICE_PORT", "8000"))

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
    )
