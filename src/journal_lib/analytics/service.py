"""
AnalyticsService - per-user analytics over closed trades.

Trade rows matching a request are loaded once with the parameterised
WHERE clause from ``filters`` and every aggregation is computed in
memory.  Whole responses are cached per normalised request; the
individual ``calculate_*`` entry points use the per-aggregation time
cache.
"""

import hashlib
import json
import logging
import time
from datetime import timedelta
from typing import Optional

import pandas as pd

from src.journal_lib.analytics import distributions, performance, statistics
from src.journal_lib.analytics.date_range import (
    DateRange,
    determine_optimal_interval,
    parse_date_range,
)
from src.journal_lib.analytics.filters import TradeFilters, build_where_clause
from src.journal_lib.core.cache import AnalyticsCache, get_analytics_cache
from src.journal_lib.core.errors import ValidationError
from src.journal_lib.core.models import (
    STATUS_CLOSED,
    _query_one,
    _query_to_df,
    fmt_ts,
    get_connection,
    now_est,
    now_str,
)

logger = logging.getLogger("analytics.service")

AGGREGATIONS = (
    "distribution",
    "performance",
    "statistics",
    "time_analysis",
    "volume_analysis",
    "time_intervals",
)

_TRADE_COLUMNS = (
    "id, symbol, side, pnl, quantity, commission, fees, trade_date, open_time, "
    "close_time, time_in_trade, market_session, holding_period, tags"
)

_NUMERIC_COLUMNS = ("pnl", "quantity", "commission", "fees", "time_in_trade")
_DATETIME_COLUMNS = ("trade_date", "open_time", "close_time")


def _decode_tags(value) -> list:
    if isinstance(value, list):
        return value
    if not value:
        return []
    try:
        decoded = json.loads(value)
    except (TypeError, ValueError):
        return []
    return decoded if isinstance(decoded, list) else []


def load_trades(user_id: str, filters: TradeFilters) -> pd.DataFrame:
    """Closed, calculated trades matching *filters*, ordered by trade date."""
    where, params = build_where_clause(user_id, filters)
    with get_connection() as conn:
        df = _query_to_df(
            conn,
            f"SELECT {_TRADE_COLUMNS} FROM trades WHERE {where} ORDER BY trade_date, id",
            params,
        )
    if df.empty:
        return df
    for col in _NUMERIC_COLUMNS:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df["pnl"] = df["pnl"].fillna(0.0)
    for col in _DATETIME_COLUMNS:
        raw = df[col]
        df[col] = pd.to_datetime(raw, format="mixed", errors="coerce")
        unparsed = int((df[col].isna() & raw.notna()).sum())
        if unparsed:
            logger.warning(
                "%d %s value(s) could not be parsed for user %s", unparsed, col, user_id
            )
    df["tags"] = df["tags"].apply(_decode_tags)
    return df.reset_index(drop=True)


def _request_digest(request: dict) -> str:
    return hashlib.md5(
        json.dumps(request, sort_keys=True, default=str).encode()
    ).hexdigest()[:12]


class AnalyticsService:
    def __init__(self, user_id: str, cache: Optional[AnalyticsCache] = None):
        self.user_id = user_id
        self.cache = cache or get_analytics_cache()

    # -- request parsing ---------------------------------------------------

    @staticmethod
    def resolve(request: Optional[dict]) -> tuple[DateRange, TradeFilters, list[str]]:
        request = request or {}
        dr = request.get("date_range") or {}
        try:
            date_range = parse_date_range(dr.get("start"), dr.get("end"), dr.get("preset"))
        except ValueError as exc:
            raise ValidationError(str(exc), field="date_range") from exc

        aggregations = list(request.get("aggregations") or AGGREGATIONS)
        unknown = sorted(set(aggregations) - set(AGGREGATIONS))
        if unknown:
            raise ValidationError(
                f"Unknown aggregations: {', '.join(unknown)}", field="aggregations"
            )
        filters = TradeFilters.from_dict(request.get("filters"), date_range)
        return date_range, filters, aggregations

    # -- full response -----------------------------------------------------

    def get_analytics(self, request: Optional[dict] = None) -> dict:
        """Compute (or fetch from cache) the requested aggregations."""
        request = request or {}
        cached = self.cache.get_analytics(self.user_id, request)
        if cached is not None:
            cached.setdefault("metadata", {})["cache_hit"] = True
            return cached

        started = time.perf_counter()
        date_range, filters, aggregations = self.resolve(request)
        df = load_trades(self.user_id, filters)

        result: dict = {}
        if "distribution" in aggregations:
            result["distribution"] = distributions.calculate_distribution_metrics(df)
        if "performance" in aggregations:
            result["performance"] = performance.calculate_performance_metrics(df)
        if "statistics" in aggregations:
            result["statistics"] = statistics.calculate_statistics(df)
        if "time_analysis" in aggregations:
            result["time_analysis"] = performance.calculate_time_analysis(df)
        if "volume_analysis" in aggregations:
            result["volume_analysis"] = performance.calculate_volume_metrics(df, date_range)
        if "time_intervals" in aggregations:
            result["time_intervals"] = performance.calculate_time_interval_data(df, date_range)

        compute_ms = round((time.perf_counter() - started) * 1000, 2)
        result["metadata"] = {
            "date_range": date_range.to_dict(),
            "total_trades": int(len(df)),
            "cache_hit": False,
            "compute_time_ms": compute_ms,
            "last_updated": now_str(),
        }
        logger.info(
            "Analytics for %s: %d trades, %s in %.1fms",
            self.user_id,
            len(df),
            ",".join(aggregations),
            compute_ms,
        )
        self.cache.set_analytics(self.user_id, request, result)
        return result

    # -- quick stats -------------------------------------------------------

    def get_quick_stats(self) -> dict:
        cached = self.cache.get_quick_stats(self.user_id)
        if cached is not None:
            return cached

        now = now_est()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_start = today - timedelta(days=(today.weekday() + 1) % 7)
        month_start = today.replace(day=1)

        with get_connection() as conn:
            row = _query_one(
                conn,
                """
                SELECT
                    COUNT(*) AS total_trades,
                    SUM(pnl) AS total_pnl,
                    SUM(CASE WHEN pnl > 0 THEN 1 ELSE 0 END) AS wins,
                    SUM(CASE WHEN trade_date >= ? THEN pnl ELSE 0 END) AS today_pnl,
                    SUM(CASE WHEN trade_date >= ? THEN pnl ELSE 0 END) AS week_pnl,
                    SUM(CASE WHEN trade_date >= ? THEN pnl ELSE 0 END) AS month_pnl
                FROM trades
                WHERE user_id = ? AND is_calculated = 1 AND status = ?
                """,
                (
                    fmt_ts(today),
                    fmt_ts(week_start),
                    fmt_ts(month_start),
                    self.user_id,
                    STATUS_CLOSED,
                ),
            ) or {}

        total = int(row.get("total_trades") or 0)
        stats = {
            "total_pnl": float(row.get("total_pnl") or 0),
            "total_trades": total,
            "win_rate": int(row.get("wins") or 0) / total * 100 if total else 0.0,
            "today_pnl": float(row.get("today_pnl") or 0),
            "this_week_pnl": float(row.get("week_pnl") or 0),
            "this_month_pnl": float(row.get("month_pnl") or 0),
            "last_updated": now_str(),
        }
        self.cache.set_quick_stats(self.user_id, stats)
        return stats

    # -- single aggregations -----------------------------------------------

    def _cached(self, agg_type: str, request: Optional[dict], compute):
        date_range, filters, _ = self.resolve(request)
        period = determine_optimal_interval(date_range)
        key_type = f"{agg_type}:{_request_digest(request or {})}"
        cached = self.cache.get_time_aggregation(self.user_id, key_type, period)
        if cached is not None:
            return cached
        data = compute(load_trades(self.user_id, filters), date_range)
        self.cache.set_time_aggregation(self.user_id, key_type, period, data)
        return data

    def calculate_distribution_metrics(self, request: Optional[dict] = None) -> dict:
        return self._cached(
            "distribution", request, lambda df, _: distributions.calculate_distribution_metrics(df)
        )

    def calculate_performance_metrics(self, request: Optional[dict] = None) -> dict:
        return self._cached(
            "performance", request, lambda df, _: performance.calculate_performance_metrics(df)
        )

    def calculate_statistics(self, request: Optional[dict] = None) -> dict:
        return self._cached(
            "statistics", request, lambda df, _: statistics.calculate_statistics(df)
        )

    def calculate_time_analysis(self, request: Optional[dict] = None) -> dict:
        return self._cached(
            "time_analysis", request, lambda df, _: performance.calculate_time_analysis(df)
        )

    def calculate_volume_metrics(self, request: Optional[dict] = None) -> dict:
        return self._cached("volume", request, performance.calculate_volume_metrics)

    def calculate_time_interval_data(self, request: Optional[dict] = None) -> dict:
        return self._cached("intervals", request, performance.calculate_time_interval_data)

    def invalidate(self) -> int:
        return self.cache.invalidate_user_analytics(self.user_id)
