"""
Dashboard KPIs aggregated inside the database.

The heavy lifting (counts, sums, averages, per-day totals) runs as SQL
that both SQLite and Postgres accept; the few remaining reductions
(streaks, weekday / month roll-ups, cumulative curve) work on the
per-day rows.  Dates refer to the trade's exit (``close_time``).
"""

import logging
import math
from datetime import date

import numpy as np

from src.journal_lib.analytics.filters import TradeFilters, build_where_clause
from src.journal_lib.analytics.statistics import (
    DAY_NAMES,
    calculate_consecutive_streaks,
    calculate_max_drawdown,
)
from src.journal_lib.core.models import _query_one, _query_to_list, get_connection

logger = logging.getLogger("analytics.dashboard")

MONTH_NAMES = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

KELLY_CAP = 0.25

# Periods per year used to annualise the Sharpe ratio
_ANNUALISATION = {"daily": 252, "weekly": 52, "monthly": 12}

_R_BUCKETS = [
    (-2, "< -2R"),
    (-1, "-2R to -1R"),
    (0, "-1R to 0R"),
    (1, "0R to 1R"),
    (2, "1R to 2R"),
    (3, "2R to 3R"),
    (5, "3R to 5R"),
    (math.inf, "> 5R"),
]


def _num(value, default: float = 0.0) -> float:
    return float(value) if value is not None else default


def _where(user_id: str, filters: TradeFilters) -> tuple[str, tuple]:
    return build_where_clause(user_id, filters, date_column="close_time")


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def _fetch_totals(conn, user_id: str, filters: TradeFilters) -> dict:
    where, params = _where(user_id, filters)
    row = _query_one(
        conn,
        f"""
        SELECT
            COUNT(*) AS total_trades,
            SUM(pnl) AS total_pnl,
            SUM(quantity) AS total_volume,
            SUM(CASE WHEN pnl > 0 THEN 1 ELSE 0 END) AS winning_trades,
            SUM(CASE WHEN pnl < 0 THEN 1 ELSE 0 END) AS losing_trades,
            AVG(CASE WHEN pnl > 0 THEN pnl END) AS avg_win,
            AVG(CASE WHEN pnl < 0 THEN pnl END) AS avg_loss,
            MAX(pnl) AS largest_gain,
            MIN(pnl) AS largest_loss,
            AVG(CASE WHEN pnl > 0 THEN time_in_trade END) AS avg_hold_time_winning,
            AVG(CASE WHEN pnl < 0 THEN time_in_trade END) AS avg_hold_time_losing,
            COUNT(DISTINCT SUBSTR(close_time, 1, 10)) AS trading_days
        FROM trades
        WHERE {where}
        """,
        params,
    )
    return row or {}


def _fetch_daily(conn, user_id: str, filters: TradeFilters) -> list[dict]:
    where, params = _where(user_id, filters)
    return _query_to_list(
        conn,
        f"""
        SELECT
            SUBSTR(close_time, 1, 10) AS day,
            SUM(pnl) AS pnl,
            COUNT(*) AS trades,
            SUM(CASE WHEN pnl > 0 THEN 1 ELSE 0 END) AS wins
        FROM trades
        WHERE {where}
        GROUP BY SUBSTR(close_time, 1, 10)
        ORDER BY SUBSTR(close_time, 1, 10)
        """,
        params,
    )


def _fetch_pnls(conn, user_id: str, filters: TradeFilters) -> list[float]:
    where, params = _where(user_id, filters)
    rows = conn.execute(
        f"SELECT pnl FROM trades WHERE {where} ORDER BY close_time, id", params
    ).fetchall()
    return [_num(r[0]) for r in rows]


def _fetch_duration_split(conn, user_id: str, filters: TradeFilters) -> list[dict]:
    where, params = _where(user_id, filters)
    return _query_to_list(
        conn,
        f"""
        SELECT
            CASE WHEN time_in_trade <= 86400 THEN 'Intraday' ELSE 'Swing' END AS category,
            SUM(pnl) AS pnl,
            COUNT(*) AS trades,
            SUM(CASE WHEN pnl > 0 THEN 1 ELSE 0 END) AS wins
        FROM trades
        WHERE {where} AND time_in_trade IS NOT NULL
        GROUP BY CASE WHEN time_in_trade <= 86400 THEN 'Intraday' ELSE 'Swing' END
        """,
        params,
    )


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


def _build_metrics(totals: dict, pnls: list[float]) -> dict:
    total_trades = int(totals.get("total_trades") or 0)
    total_volume = _num(totals.get("total_volume"))
    winning = int(totals.get("winning_trades") or 0)
    avg_win = _num(totals.get("avg_win"))
    avg_loss = _num(totals.get("avg_loss"))
    trading_days = int(totals.get("trading_days") or 0)
    max_wins, max_losses = calculate_consecutive_streaks(pnls)

    return {
        "total_pnl": _num(totals.get("total_pnl")),
        "total_trades": total_trades,
        "win_rate": winning / total_trades * 100 if total_trades else 0.0,
        "avg_win": avg_win,
        "avg_loss": avg_loss,
        "profit_factor": abs(avg_win / avg_loss) if avg_loss < 0 else 0.0,
        "max_consecutive_wins": max_wins,
        "max_consecutive_losses": max_losses,
        "avg_hold_time_winning": _num(totals.get("avg_hold_time_winning")),
        "avg_hold_time_losing": _num(totals.get("avg_hold_time_losing")),
        "largest_gain": _num(totals.get("largest_gain")),
        "largest_loss": _num(totals.get("largest_loss")),
        "total_volume": total_volume,
        "avg_daily_volume": total_volume / trading_days if trading_days else 0.0,
    }


def calculate_dashboard_metrics(user_id: str, filters: TradeFilters) -> dict:
    with get_connection() as conn:
        totals = _fetch_totals(conn, user_id, filters)
        pnls = _fetch_pnls(conn, user_id, filters)
    return _build_metrics(totals, pnls)


def _roll_up(daily: list[dict], key_func, names: list[str], label: str) -> list[dict]:
    buckets: dict[int, dict] = {}
    for row in daily:
        key = key_func(date.fromisoformat(row["day"]))
        bucket = buckets.setdefault(key, {"pnl": 0.0, "trades": 0, "wins": 0})
        bucket["pnl"] += _num(row["pnl"])
        bucket["trades"] += int(row["trades"])
        bucket["wins"] += int(row["wins"] or 0)
    return [
        {
            label: names[key],
            "pnl": b["pnl"],
            "trades": b["trades"],
            "win_rate": b["wins"] / b["trades"] * 100 if b["trades"] else 0.0,
        }
        for key, b in sorted(buckets.items())
    ]


def performance_by_day_of_week(daily: list[dict]) -> list[dict]:
    return _roll_up(daily, lambda d: (d.weekday() + 1) % 7, DAY_NAMES, "day")


def performance_by_month_of_year(daily: list[dict]) -> list[dict]:
    return _roll_up(daily, lambda d: d.month - 1, MONTH_NAMES, "month")


def cumulative_pnl(daily: list[dict]) -> list[dict]:
    running = 0.0
    curve = []
    for row in daily:
        running += _num(row["pnl"])
        curve.append({"date": row["day"], "value": running})
    return curve


def calculate_performance_by_day_of_week(user_id: str, filters: TradeFilters) -> list[dict]:
    with get_connection() as conn:
        return performance_by_day_of_week(_fetch_daily(conn, user_id, filters))


def calculate_performance_by_month_of_year(user_id: str, filters: TradeFilters) -> list[dict]:
    with get_connection() as conn:
        return performance_by_month_of_year(_fetch_daily(conn, user_id, filters))


def calculate_cumulative_pnl(user_id: str, filters: TradeFilters) -> list[dict]:
    with get_connection() as conn:
        return cumulative_pnl(_fetch_daily(conn, user_id, filters))


# ---------------------------------------------------------------------------
# Risk metrics
# ---------------------------------------------------------------------------


def kelly_fraction(win_rate: float, avg_win: float, avg_loss: float) -> float:
    """Kelly criterion from win rate (%) and average win / loss, capped at 25%."""
    if not avg_loss or not avg_win:
        return 0.0
    ratio = avg_win / abs(avg_loss)
    p = win_rate / 100
    kelly = (p * ratio - (1 - p)) / ratio
    return max(0.0, min(KELLY_CAP, kelly))


def kelly_recommendation(kelly: float) -> str:
    if kelly <= 0:
        return "No position recommended"
    if kelly < 0.05:
        return "Very small position (< 5%)"
    if kelly < 0.10:
        return "Small position (5-10%)"
    if kelly < 0.15:
        return "Moderate position (10-15%)"
    if kelly < 0.20:
        return "Large position (15-20%)"
    return "Maximum position (capped at 25%)"


def period_sharpe(daily: list[dict], period: str = "daily") -> float:
    """Annualised Sharpe ratio of P&L summed per day, ISO week or month."""
    buckets: dict[str, float] = {}
    for row in daily:
        day = date.fromisoformat(row["day"])
        if period == "weekly":
            year, week, _ = day.isocalendar()
            key = f"{year}-{week}"
        elif period == "monthly":
            key = row["day"][:7]
        else:
            key = row["day"]
        buckets[key] = buckets.get(key, 0.0) + _num(row["pnl"])
    returns = np.asarray(list(buckets.values()), dtype=float)
    if returns.size < 2:
        return 0.0
    std = float(returns.std(ddof=1))
    if std == 0:
        return 0.0
    return float(returns.mean() / std * math.sqrt(_ANNUALISATION[period]))


def r_multiple_distribution(pnls: list[float], initial_risk: float = 100.0) -> dict:
    """Bucket trades by P&L expressed in multiples of *initial_risk*."""
    if initial_risk <= 0:
        raise ValueError("initial_risk must be positive")
    order = {label: rank for rank, (_, label) in enumerate(_R_BUCKETS)}
    buckets: dict[str, dict] = {}
    for pnl in pnls:
        r = pnl / initial_risk
        label = next(lbl for bound, lbl in _R_BUCKETS if r < bound)
        bucket = buckets.setdefault(label, {"r_multiple": label, "count": 0, "total_pnl": 0.0})
        bucket["count"] += 1
        bucket["total_pnl"] += pnl
    avg_r = sum(pnls) / initial_risk / len(pnls) if pnls else 0.0
    return {
        "distribution": sorted(buckets.values(), key=lambda b: order[b["r_multiple"]]),
        "avg_r_multiple": avg_r,
        "expectancy": avg_r,
    }


# ---------------------------------------------------------------------------
# Dashboard bundle
# ---------------------------------------------------------------------------


def calculate_dashboard_data(user_id: str, filters: TradeFilters) -> dict:
    """Everything the dashboard renders, from one connection."""
    with get_connection() as conn:
        totals = _fetch_totals(conn, user_id, filters)
        pnls = _fetch_pnls(conn, user_id, filters)
        daily = _fetch_daily(conn, user_id, filters)
        durations = _fetch_duration_split(conn, user_id, filters)

    metrics = _build_metrics(totals, pnls)
    winning_count = round(metrics["total_trades"] * (metrics["win_rate"] / 100))
    day_totals = [_num(r["pnl"]) for r in daily]

    by_duration = {r["category"]: r for r in durations}
    performance_by_duration = []
    for category in ("Intraday", "Swing"):
        row = by_duration.get(category)
        trades = int(row["trades"]) if row else 0
        performance_by_duration.append(
            {
                "category": category,
                "pnl": _num(row["pnl"]) if row else 0.0,
                "trades": trades,
                "win_rate": int(row["wins"] or 0) / trades * 100 if trades else 0.0,
            }
        )

    kelly = kelly_fraction(metrics["win_rate"], metrics["avg_win"], metrics["avg_loss"])
    logger.debug("Dashboard computed for %s: %d trades", user_id, metrics["total_trades"])

    return {
        "kpi_data": {
            **metrics,
            "performance_by_day_of_week": performance_by_day_of_week(daily),
            "performance_by_month_of_year": performance_by_month_of_year(daily),
            "performance_by_duration": performance_by_duration,
            "winning_trades_count": winning_count,
            "losing_trades_count": metrics["total_trades"] - winning_count,
        },
        "cumulative_pnl": cumulative_pnl(daily),
        "risk": {
            "kelly": kelly,
            "kelly_recommendation": kelly_recommendation(kelly),
            "sharpe": {p: period_sharpe(daily, p) for p in ("daily", "weekly", "monthly")},
            "max_drawdown": calculate_max_drawdown(day_totals),
            "r_multiples": r_multiple_distribution(pnls),
        },
        "summary": {
            "total_trades": metrics["total_trades"],
            "total_pnl": metrics["total_pnl"],
            "win_rate": metrics["win_rate"],
            "avg_win": metrics["avg_win"],
            "avg_loss": metrics["avg_loss"],
            "best_day": max(day_totals) if day_totals else 0.0,
            "worst_day": min(day_totals) if day_totals else 0.0,
        },
    }
