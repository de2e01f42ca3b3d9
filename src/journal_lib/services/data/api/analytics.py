"""
Analytics API router.

    POST   /analytics/query        - requested aggregations for a date range + filters
    GET    /analytics/quick-stats  - headline P&L numbers (today / week / month)
    GET    /analytics/dashboard    - dashboard KPIs, cumulative P&L and risk block
    DELETE /analytics/cache        - drop the caller's cached analytics
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from src.journal_lib.analytics.dashboard import calculate_dashboard_data
from src.journal_lib.analytics.date_range import parse_date_range
from src.journal_lib.analytics.filters import TradeFilters
from src.journal_lib.analytics.service import AnalyticsService
from src.journal_lib.core.errors import JournalError, ValidationError
from src.journal_lib.services.data.api.auth import get_current_user_id
from src.journal_lib.services.data.api.metrics import record_analytics_request

logger = logging.getLogger("api.analytics")

router = APIRouter(tags=["analytics"])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class DateRangeRequest(BaseModel):
    start: Optional[str] = Field(None, description="Range start (ISO date or timestamp)")
    end: Optional[str] = Field(None, description="Range end (ISO date or timestamp)")
    preset: Optional[str] = Field(
        None, description="1w, 2w, 30d, 60d, 90d, 6m, ytd, last-year, yesterday"
    )


class FiltersRequest(BaseModel):
    symbols: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    side: Optional[Literal["LONG", "SHORT", "ALL"]] = None
    duration: Optional[Literal["intraday", "swing", "all"]] = None
    time_zone: Optional[str] = Field(
        None,
        description="Accepted for compatibility; periods are always computed in America/New_York",
    )


class AnalyticsRequest(BaseModel):
    date_range: DateRangeRequest = Field(default_factory=DateRangeRequest)
    filters: FiltersRequest = Field(default_factory=FiltersRequest)
    aggregations: Optional[list[str]] = Field(
        None, description="Subset of aggregations; all when omitted"
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/query")
def query_analytics(body: AnalyticsRequest, user_id: str = Depends(get_current_user_id)):
    """Compute (or serve from cache) the requested aggregations."""
    try:
        result = AnalyticsService(user_id).get_analytics(body.model_dump(exclude_none=True))
    except JournalError:
        raise
    except Exception as exc:
        logger.error("Analytics query failed for %s: %s", user_id, exc)
        raise HTTPException(status_code=500, detail=f"Failed to compute analytics: {exc}")
    record_analytics_request(result["metadata"]["cache_hit"])
    return result


@router.get("/quick-stats")
def quick_stats(user_id: str = Depends(get_current_user_id)):
    try:
        return AnalyticsService(user_id).get_quick_stats()
    except Exception as exc:
        raise HTTPException(status_code=500, detail=f"Failed to load quick stats: {exc}")


@router.get("/dashboard")
def dashboard(
    user_id: str = Depends(get_current_user_id),
    start: Optional[str] = Query(None, description="Range start"),
    end: Optional[str] = Query(None, description="Range end"),
    preset: Optional[str] = Query(None, description="Named range preset"),
    symbol: Optional[str] = Query(None, description="Single symbol, or 'all'"),
    side: Optional[Literal["LONG", "SHORT", "ALL"]] = Query(None),
    duration: Optional[Literal["intraday", "swing", "all"]] = Query(None),
    tags: Optional[list[str]] = Query(None, description="Any of these tags"),
):
    """Dashboard data over closed trades, ranged by close time.

    Without any range parameters the whole history is used.
    """
    date_range = None
    if start or end or preset:
        try:
            date_range = parse_date_range(start, end, preset)
        except ValueError as exc:
            raise ValidationError(str(exc), field="date_range") from exc
    filters = TradeFilters.from_dict(
        {"symbol": symbol, "side": side, "duration": duration, "tags": tags or []}, date_range
    )
    try:
        return calculate_dashboard_data(user_id, filters)
    except Exception as exc:
        logger.error("Dashboard failed for %s: %s", user_id, exc)
        raise HTTPException(status_code=500, detail=f"Failed to load dashboard: {exc}")


@router.delete("/cache")
def invalidate_cache(user_id: str = Depends(get_current_user_id)):
    removed = AnalyticsService(user_id).invalidate()
    return {"status": "invalidated", "keys_removed": removed}
