"""
Overall trading statistics computed from a frame of closed trades.

The frame is expected to be ordered by ``trade_date`` and to carry the
columns produced by ``service.load_trades``: ``pnl``, ``quantity``,
``commission``, ``fees``, ``trade_date`` and ``open_time`` (datetimes).
"""

from typing import Iterable

import numpy as np
import pandas as pd

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


# ---------------------------------------------------------------------------
# Sequence reductions
# ---------------------------------------------------------------------------


def calculate_consecutive_streaks(pnls: Iterable[float]) -> tuple[int, int]:
    """Return ``(max_wins, max_losses)``; a break-even trade ends both runs."""
    max_wins = max_losses = 0
    wins = losses = 0
    for pnl in pnls:
        if pnl > 0:
            wins += 1
            losses = 0
            max_wins = max(max_wins, wins)
        elif pnl < 0:
            losses += 1
            wins = 0
            max_losses = max(max_losses, losses)
        else:
            wins = losses = 0
    return max_wins, max_losses


def calculate_max_drawdown(pnls: Iterable[float]) -> float:
    """Largest peak-to-trough fall of cumulative P&L, peak starting at 0."""
    max_drawdown = 0.0
    peak = 0.0
    cumulative = 0.0
    for pnl in pnls:
        cumulative += pnl
        peak = max(peak, cumulative)
        max_drawdown = max(max_drawdown, peak - cumulative)
    return max_drawdown


def calculate_sharpe(pnls: Iterable[float]) -> float:
    """Per-trade Sharpe: mean over population standard deviation."""
    values = np.asarray(list(pnls), dtype=float)
    if values.size == 0:
        return 0.0
    std = float(values.std())
    return float(values.mean() / std) if std > 0 else 0.0


def calculate_profit_factor(pnls: Iterable[float]) -> float:
    values = np.asarray(list(pnls), dtype=float)
    gross_profit = float(values[values > 0].sum())
    gross_loss = abs(float(values[values < 0].sum()))
    return gross_profit / gross_loss if gross_loss > 0 else gross_profit


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def empty_statistics() -> dict:
    return {
        "overall": {
            "total_pnl": 0.0,
            "avg_daily_pnl": 0.0,
            "win_rate": 0.0,
            "avg_win": 0.0,
            "avg_loss": 0.0,
            "max_consecutive_wins": 0,
            "max_consecutive_losses": 0,
            "profit_factor": 0.0,
            "sharpe_ratio": 0.0,
            "max_drawdown": 0.0,
            "total_volume": 0.0,
            "avg_position_size": 0.0,
            "total_commissions": 0.0,
            "total_fees": 0.0,
        },
        "time_based_metrics": _empty_time_based(),
    }


def _empty_time_based() -> dict:
    return {
        "best_hour": {"hour": 0, "avg_pnl": 0.0},
        "worst_hour": {"hour": 0, "avg_pnl": 0.0},
        "best_day_of_week": {"day": "Monday", "avg_pnl": 0.0},
        "worst_day_of_week": {"day": "Monday", "avg_pnl": 0.0},
        "best_month": {"month": 1, "avg_pnl": 0.0},
        "worst_month": {"month": 1, "avg_pnl": 0.0},
    }


def calculate_statistics(df: pd.DataFrame) -> dict:
    """Overall performance statistics plus best/worst time buckets."""
    if df.empty:
        return empty_statistics()

    pnls = df["pnl"].astype(float)
    wins = pnls[pnls > 0]
    losses = pnls[pnls < 0]
    max_wins, max_losses = calculate_consecutive_streaks(pnls)

    daily = pnls.groupby(df["trade_date"].dt.date).sum()
    quantity = df["quantity"].fillna(0).astype(float)

    return {
        "overall": {
            "total_pnl": float(pnls.sum()),
            "avg_daily_pnl": float(daily.sum() / max(len(daily), 1)),
            "win_rate": len(wins) / len(pnls) * 100,
            "avg_win": float(wins.mean()) if len(wins) else 0.0,
            "avg_loss": float(losses.mean()) if len(losses) else 0.0,
            "max_consecutive_wins": max_wins,
            "max_consecutive_losses": max_losses,
            "profit_factor": calculate_profit_factor(pnls),
            "sharpe_ratio": calculate_sharpe(pnls),
            "max_drawdown": calculate_max_drawdown(pnls),
            "total_volume": float(quantity.sum()),
            "avg_position_size": float(quantity.sum() / len(df)),
            "total_commissions": float(df["commission"].fillna(0).sum()),
            "total_fees": float(df["fees"].fillna(0).sum()),
        },
        "time_based_metrics": calculate_time_based_metrics(df),
    }


def _rank(avg: pd.Series) -> pd.Series:
    """Average P&L per bucket, rounded to cents, best first."""
    return avg.round(2).sort_values(ascending=False, kind="mergesort")


def calculate_time_based_metrics(df: pd.DataFrame) -> dict:
    """Best and worst hour of entry, weekday and month by average P&L."""
    result = _empty_time_based()
    if df.empty:
        return result

    opened = df[df["open_time"].notna()]
    if not opened.empty:
        by_hour = _rank(opened.groupby(opened["open_time"].dt.hour)["pnl"].mean())
        result["best_hour"] = {"hour": int(by_hour.index[0]), "avg_pnl": float(by_hour.iloc[0])}
        result["worst_hour"] = {"hour": int(by_hour.index[-1]), "avg_pnl": float(by_hour.iloc[-1])}

    day_num = (df["trade_date"].dt.dayofweek + 1) % 7
    by_day = _rank(df.groupby(day_num)["pnl"].mean())
    result["best_day_of_week"] = {
        "day": DAY_NAMES[int(by_day.index[0])],
        "avg_pnl": float(by_day.iloc[0]),
    }
    result["worst_day_of_week"] = {
        "day": DAY_NAMES[int(by_day.index[-1])],
        "avg_pnl": float(by_day.iloc[-1]),
    }

    by_month = _rank(df.groupby(df["trade_date"].dt.month)["pnl"].mean())
    result["best_month"] = {"month": int(by_month.index[0]), "avg_pnl": float(by_month.iloc[0])}
    result["worst_month"] = {"month": int(by_month.index[-1]), "avg_pnl": float(by_month.iloc[-1])}
    return result
