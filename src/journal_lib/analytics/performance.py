"""
Time-bucketed performance, session / holding-period breakdowns and
volume per interval.
"""

import math

import pandas as pd

from src.journal_lib.analytics.date_range import (
    DateRange,
    determine_optimal_interval,
    period_label,
)

SESSIONS = {
    "pre_market": "PRE_MARKET",
    "regular": "REGULAR",
    "after_hours": "AFTER_HOURS",
}

HOLDING_PERIODS = {
    "scalp": "SCALP",
    "intraday": "INTRADAY",
    "swing": "SWING",
    "position": "POSITION",
    "long_term": "LONG_TERM",
}


def _win_rate(pnl: pd.Series) -> float:
    return round(float((pnl > 0).sum()) / len(pnl) * 100, 2) if len(pnl) else 0.0


def _monthly_sharpe(pnl: pd.Series) -> float:
    """Average over sample standard deviation, rounded to 3 places."""
    std = pnl.std(ddof=1)
    if pd.isna(std) or std <= 0:
        return 0.0
    return round(float(pnl.mean() / std), 3)


# ---------------------------------------------------------------------------
# Performance over time
# ---------------------------------------------------------------------------


def calculate_performance_metrics(df: pd.DataFrame) -> dict:
    if df.empty:
        return {"by_day": [], "by_week": [], "by_month": [], "by_hour": []}

    by_day = []
    cumulative = 0.0
    for day, group in df.groupby(df["trade_date"].dt.strftime("%Y-%m-%d"), sort=True):
        pnl = float(group["pnl"].sum())
        cumulative += pnl
        by_day.append(
            {
                "date": day,
                "pnl": pnl,
                "win_rate": _win_rate(group["pnl"]),
                "trades": int(len(group)),
                "cumulative_pnl": cumulative,
            }
        )

    week_start = df["trade_date"].dt.normalize() - pd.to_timedelta(
        df["trade_date"].dt.dayofweek, unit="D"
    )
    by_week = [
        {
            "period": period_label(start, "weekly"),
            "pnl": float(group["pnl"].sum()),
            "win_rate": _win_rate(group["pnl"]),
            "trades": int(len(group)),
        }
        for start, group in df.groupby(week_start, sort=True)
    ]

    by_month = [
        {
            "period": month,
            "pnl": float(group["pnl"].sum()),
            "win_rate": _win_rate(group["pnl"]),
            "trades": int(len(group)),
            "sharpe_ratio": _monthly_sharpe(group["pnl"]),
        }
        for month, group in df.groupby(df["trade_date"].dt.strftime("%Y-%m"), sort=True)
    ]

    opened = df[df["open_time"].notna()]
    by_hour = [
        {
            "hour": int(hour),
            "avg_pnl": round(float(group["pnl"].mean()), 2),
            "win_rate": _win_rate(group["pnl"]),
            "trades": int(len(group)),
        }
        for hour, group in opened.groupby(opened["open_time"].dt.hour, sort=True)
    ]

    return {"by_day": by_day, "by_week": by_week, "by_month": by_month, "by_hour": by_hour}


# ---------------------------------------------------------------------------
# Session & holding period
# ---------------------------------------------------------------------------


def _group_summary(group: pd.DataFrame, with_duration: bool = False) -> dict:
    summary = {
        "trades": int(len(group)),
        "pnl": float(group["pnl"].sum()) if len(group) else 0.0,
        "win_rate": _win_rate(group["pnl"]),
    }
    if with_duration:
        durations = group["time_in_trade"].dropna()
        summary["avg_duration"] = round(float(durations.mean())) if len(durations) else 0
    return summary


def calculate_time_analysis(df: pd.DataFrame) -> dict:
    session_analysis = {
        key: _group_summary(df[df["market_session"] == value] if not df.empty else df)
        for key, value in SESSIONS.items()
    }
    holding_period_analysis = {
        key: _group_summary(
            df[df["holding_period"] == value] if not df.empty else df, with_duration=True
        )
        for key, value in HOLDING_PERIODS.items()
    }
    return {
        "session_analysis": session_analysis,
        "holding_period_analysis": holding_period_analysis,
    }


# ---------------------------------------------------------------------------
# Volume & intervals
# ---------------------------------------------------------------------------


def calculate_volume_metrics(df: pd.DataFrame, date_range: DateRange) -> dict:
    """Share volume and results per optimal interval of *date_range*."""
    interval = determine_optimal_interval(date_range)
    rows = []
    sized = df[df["quantity"].notna()] if not df.empty else df
    if not sized.empty:
        if interval == "weekly":
            anchor = sized["trade_date"].dt.normalize() - pd.to_timedelta(
                sized["trade_date"].dt.dayofweek, unit="D"
            )
        else:
            anchor = sized["trade_date"]
        periods = anchor.apply(lambda ts: period_label(ts, interval))
        for period, group in sized.groupby(periods, sort=True):
            shares = float(group["quantity"].sum())
            trading_days = int(group["trade_date"].dt.date.nunique())
            rows.append(
                {
                    "period": period,
                    "shares": shares,
                    "trading_days": trading_days,
                    "normalized_daily_volume": round(shares / trading_days, 2)
                    if trading_days
                    else 0.0,
                    "trades": int(len(group)),
                    "avg_daily_pnl": round(float(group["pnl"].mean()), 2),
                    "win_rate": _win_rate(group["pnl"]),
                }
            )
    return {"interval_type": interval, "data": rows}


def calculate_averaged_daily_pnl(total_pnl: float, date_range: DateRange) -> float:
    days = math.ceil(date_range.days)
    return total_pnl / days if days > 0 else 0.0


def calculate_time_interval_data(df: pd.DataFrame, date_range: DateRange) -> dict:
    volume = calculate_volume_metrics(df, date_range)
    total = float(df["pnl"].sum()) if not df.empty else 0.0
    return {
        "interval_type": volume["interval_type"],
        "intervals": volume["data"],
        "averaged_daily_pnl": calculate_averaged_daily_pnl(total, date_range),
    }
