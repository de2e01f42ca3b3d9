"""
Distribution of trade results across calendar buckets and holding times.
"""

import math
from typing import Optional

import pandas as pd

from src.journal_lib.analytics.statistics import DAY_NAMES

# (upper bound in seconds, label); bounds are exclusive
DURATION_BRACKETS = [
    (300, "< 5 min"),
    (900, "5-15 min"),
    (1800, "15-30 min"),
    (3600, "30-60 min"),
    (14400, "1-4 hours"),
    (86400, "4-24 hours"),
    (math.inf, "> 1 day"),
]

INTRADAY_BRACKETS = [
    (60, "< 1 min"),
    (300, "1-5 min"),
    (900, "5-15 min"),
    (1800, "15-30 min"),
    (3600, "30-60 min"),
    (7200, "1-2 hours"),
    (math.inf, "> 2 hours"),
]

UNKNOWN_BRACKET = "Unknown"


def duration_bracket(seconds: Optional[float], brackets=DURATION_BRACKETS) -> str:
    if seconds is None or pd.isna(seconds):
        return UNKNOWN_BRACKET
    for bound, label in brackets:
        if seconds < bound:
            return label
    return brackets[-1][1]


def _win_rate(pnl: pd.Series) -> float:
    return round(float((pnl > 0).sum()) / len(pnl) * 100, 2) if len(pnl) else 0.0


def _bucket_rows(df: pd.DataFrame, keys: pd.Series, key_name: str) -> list[dict]:
    rows = []
    for key, group in df.groupby(keys, sort=True):
        rows.append(
            {
                key_name: int(key),
                "trades": int(len(group)),
                "pnl": float(group["pnl"].sum()),
                "win_rate": _win_rate(group["pnl"]),
            }
        )
    return rows


def _bracket_rows(df: pd.DataFrame, brackets) -> list[dict]:
    if df.empty:
        return []
    labels = df["time_in_trade"].apply(lambda s: duration_bracket(s, brackets))
    order = {label: rank for rank, (_, label) in enumerate(brackets)}
    rows = []
    for label, group in df.groupby(labels):
        durations = group["time_in_trade"].dropna()
        rows.append(
            {
                "bracket": label,
                "trades": int(len(group)),
                "pnl": float(group["pnl"].sum()),
                "avg_duration": round(float(durations.mean())) if len(durations) else 0,
            }
        )
    rows.sort(key=lambda r: order.get(r["bracket"], len(order)))
    return rows


def calculate_distribution_metrics(df: pd.DataFrame) -> dict:
    """Month, weekday, hour and holding-time distributions of closed trades."""
    if df.empty:
        return {
            "month_of_year": [],
            "day_of_week": [],
            "hour_of_day": [],
            "duration": [],
            "intraday_duration": [],
        }

    day_of_week = []
    for row in _bucket_rows(df, (df["trade_date"].dt.dayofweek + 1) % 7, "day_num"):
        row["day"] = DAY_NAMES[row.pop("day_num")]
        day_of_week.append(row)

    opened = df[df["open_time"].notna()]
    hour_of_day = (
        _bucket_rows(opened, opened["open_time"].dt.hour, "hour") if not opened.empty else []
    )

    intraday = df[df["holding_period"] == "INTRADAY"]

    return {
        "month_of_year": _bucket_rows(df, df["trade_date"].dt.month, "month"),
        "day_of_week": day_of_week,
        "hour_of_day": hour_of_day,
        "duration": _bracket_rows(df, DURATION_BRACKETS),
        "intraday_duration": _bracket_rows(intraday, INTRADAY_BRACKETS),
    }
