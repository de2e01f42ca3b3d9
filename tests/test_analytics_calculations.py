"""
Tests for the in-memory analytics reductions (statistics, distributions,
performance over time) on hand-built trade frames.
"""

from datetime import datetime

import pandas as pd
import pytest

from src.journal_lib.analytics import distributions, performance, statistics
from src.journal_lib.analytics.date_range import DateRange

COLUMNS = [
    "pnl",
    "quantity",
    "commission",
    "fees",
    "trade_date",
    "open_time",
    "close_time",
    "time_in_trade",
    "market_session",
    "holding_period",
]


def _frame(rows):
    """rows: (open_time, pnl, quantity, time_in_trade, session, holding_period)"""
    records = []
    for opened, pnl, qty, seconds, session, holding in rows:
        ts = pd.Timestamp(opened)
        records.append(
            {
                "pnl": pnl,
                "quantity": qty,
                "commission": 1.0,
                "fees": 0.5,
                "trade_date": ts,
                "open_time": ts,
                "close_time": ts + pd.Timedelta(seconds=seconds),
                "time_in_trade": seconds,
                "market_session": session,
                "holding_period": holding,
            }
        )
    return pd.DataFrame(records, columns=COLUMNS)


@pytest.fixture()
def trades():
    # Mon 3 Mar, Tue 4 Mar and Mon 7 Apr 2025
    return _frame(
        [
            ("2025-03-03 09:45:00", 100.0, 100, 600, "REGULAR", "INTRADAY"),
            ("2025-03-03 14:00:00", -50.0, 50, 1200, "REGULAR", "INTRADAY"),
            ("2025-03-04 09:45:00", 200.0, 200, 7200, "REGULAR", "INTRADAY"),
            ("2025-04-07 10:30:00", -100.0, 100, 200000, "AFTER_HOURS", "SWING"),
        ]
    )


@pytest.fixture()
def empty():
    return pd.DataFrame(columns=COLUMNS)


# ===========================================================================
# Sequence reductions
# ===========================================================================


class TestSequenceReductions:
    def test_streaks(self):
        assert statistics.calculate_consecutive_streaks([1, 2, 3, -1, -2, 5]) == (3, 2)

    def test_break_even_resets_both_streaks(self):
        assert statistics.calculate_consecutive_streaks([1, 1, 0, 1, -1, 0, -1]) == (2, 1)

    def test_empty_streaks(self):
        assert statistics.calculate_consecutive_streaks([]) == (0, 0)

    def test_drawdown_peak_starts_at_zero(self):
        # Losing from the first trade counts as drawdown from 0
        assert statistics.calculate_max_drawdown([-30, 10, -50]) == 70

    def test_drawdown_after_new_high(self):
        assert statistics.calculate_max_drawdown([100, -50, 200, -100]) == 100

    def test_profit_factor_without_losses_is_gross_profit(self):
        assert statistics.calculate_profit_factor([10, 20]) == 30

    def test_profit_factor(self):
        assert statistics.calculate_profit_factor([100, -50, 200, -100]) == 2.0

    def test_sharpe_zero_when_flat(self):
        assert statistics.calculate_sharpe([5, 5, 5]) == 0.0
        assert statistics.calculate_sharpe([]) == 0.0


# ===========================================================================
# Statistics
# ===========================================================================


class TestCalculateStatistics:
    def test_empty_frame_gives_zeroed_shape(self, empty):
        result = statistics.calculate_statistics(empty)
        assert result == statistics.empty_statistics()
        assert result["time_based_metrics"]["best_day_of_week"]["day"] == "Monday"

    def test_overall(self, trades):
        overall = statistics.calculate_statistics(trades)["overall"]
        assert overall["total_pnl"] == 150.0
        assert overall["avg_daily_pnl"] == 50.0
        assert overall["win_rate"] == 50.0
        assert overall["avg_win"] == 150.0
        assert overall["avg_loss"] == -75.0
        assert overall["max_consecutive_wins"] == 1
        assert overall["max_consecutive_losses"] == 1
        assert overall["profit_factor"] == 2.0
        assert overall["max_drawdown"] == 100.0
        assert overall["total_volume"] == 450.0
        assert overall["avg_position_size"] == 112.5
        assert overall["total_commissions"] == 4.0
        assert overall["total_fees"] == 2.0

    def test_sharpe_uses_population_std(self, trades):
        overall = statistics.calculate_statistics(trades)["overall"]
        expected = 37.5 / (14218.75**0.5)
        assert overall["sharpe_ratio"] == pytest.approx(expected)

    def test_time_based_metrics(self, trades):
        tb = statistics.calculate_statistics(trades)["time_based_metrics"]
        assert tb["best_hour"] == {"hour": 9, "avg_pnl": 150.0}
        assert tb["worst_hour"] == {"hour": 10, "avg_pnl": -100.0}
        assert tb["best_day_of_week"] == {"day": "Tuesday", "avg_pnl": 200.0}
        assert tb["worst_day_of_week"] == {"day": "Monday", "avg_pnl": -16.67}
        assert tb["best_month"] == {"month": 3, "avg_pnl": 83.33}
        assert tb["worst_month"] == {"month": 4, "avg_pnl": -100.0}


# ===========================================================================
# Distributions
# ===========================================================================


class TestDurationBracket:
    def test_unknown_for_missing(self):
        assert distributions.duration_bracket(None) == "Unknown"
        assert distributions.duration_bracket(float("nan")) == "Unknown"

    def test_bounds_are_exclusive(self):
        assert distributions.duration_bracket(299) == "< 5 min"
        assert distributions.duration_bracket(300) == "5-15 min"
        assert distributions.duration_bracket(86400) == "> 1 day"

    def test_intraday_brackets(self):
        brackets = distributions.INTRADAY_BRACKETS
        assert distributions.duration_bracket(59, brackets) == "< 1 min"
        assert distributions.duration_bracket(7200, brackets) == "> 2 hours"


class TestDistributionMetrics:
    def test_empty(self, empty):
        result = distributions.calculate_distribution_metrics(empty)
        assert all(v == [] for v in result.values())
        assert set(result) == {
            "month_of_year",
            "day_of_week",
            "hour_of_day",
            "duration",
            "intraday_duration",
        }

    def test_month_of_year(self, trades):
        months = distributions.calculate_distribution_metrics(trades)["month_of_year"]
        assert months == [
            {"month": 3, "trades": 3, "pnl": 250.0, "win_rate": 66.67},
            {"month": 4, "trades": 1, "pnl": -100.0, "win_rate": 0.0},
        ]

    def test_day_of_week_named(self, trades):
        days = distributions.calculate_distribution_metrics(trades)["day_of_week"]
        assert [d["day"] for d in days] == ["Monday", "Tuesday"]
        assert days[0]["trades"] == 3
        assert days[0]["pnl"] == -50.0
        assert days[0]["win_rate"] == 33.33

    def test_hour_of_day(self, trades):
        hours = distributions.calculate_distribution_metrics(trades)["hour_of_day"]
        assert [h["hour"] for h in hours] == [9, 10, 14]
        assert hours[0]["pnl"] == 300.0

    def test_duration_brackets_in_bracket_order(self, trades):
        result = distributions.calculate_distribution_metrics(trades)
        assert [d["bracket"] for d in result["duration"]] == [
            "5-15 min",
            "15-30 min",
            "1-4 hours",
            "> 1 day",
        ]
        assert result["duration"][-1]["avg_duration"] == 200000

    def test_intraday_only_counts_intraday_trades(self, trades):
        result = distributions.calculate_distribution_metrics(trades)
        intraday = result["intraday_duration"]
        assert sum(d["trades"] for d in intraday) == 3
        assert [d["bracket"] for d in intraday] == ["5-15 min", "15-30 min", "> 2 hours"]


# ===========================================================================
# Performance
# ===========================================================================


class TestPerformanceMetrics:
    def test_empty(self, empty):
        assert performance.calculate_performance_metrics(empty) == {
            "by_day": [],
            "by_week": [],
            "by_month": [],
            "by_hour": [],
        }

    def test_by_day_cumulative(self, trades):
        by_day = performance.calculate_performance_metrics(trades)["by_day"]
        assert [d["date"] for d in by_day] == ["2025-03-03", "2025-03-04", "2025-04-07"]
        assert [d["cumulative_pnl"] for d in by_day] == [50.0, 250.0, 150.0]
        assert by_day[0]["win_rate"] == 50.0
        assert by_day[0]["trades"] == 2

    def test_by_week_uses_iso_labels(self, trades):
        by_week = performance.calculate_performance_metrics(trades)["by_week"]
        assert by_week[0] == {"period": "2025-W10", "pnl": 250.0, "win_rate": 66.67, "trades": 3}
        assert by_week[1]["period"] == "2025-W15"

    def test_by_month_sharpe(self, trades):
        by_month = performance.calculate_performance_metrics(trades)["by_month"]
        march = pd.Series([100.0, -50.0, 200.0])
        assert by_month[0]["period"] == "2025-03"
        assert by_month[0]["sharpe_ratio"] == round(march.mean() / march.std(ddof=1), 3)
        # A single trade has no deviation
        assert by_month[1]["sharpe_ratio"] == 0.0

    def test_by_hour(self, trades):
        by_hour = performance.calculate_performance_metrics(trades)["by_hour"]
        assert by_hour[0] == {"hour": 9, "avg_pnl": 150.0, "win_rate": 100.0, "trades": 2}


class TestTimeAnalysis:
    def test_sessions(self, trades):
        sessions = performance.calculate_time_analysis(trades)["session_analysis"]
        assert sessions["regular"] == {"trades": 3, "pnl": 250.0, "win_rate": 66.67}
        assert sessions["after_hours"]["pnl"] == -100.0
        assert sessions["pre_market"] == {"trades": 0, "pnl": 0.0, "win_rate": 0.0}

    def test_holding_periods(self, trades):
        holding = performance.calculate_time_analysis(trades)["holding_period_analysis"]
        assert holding["intraday"]["avg_duration"] == 3000
        assert holding["swing"]["avg_duration"] == 200000
        assert holding["scalp"] == {"trades": 0, "pnl": 0.0, "win_rate": 0.0, "avg_duration": 0}
        assert set(holding) == {"scalp", "intraday", "swing", "position", "long_term"}


class TestVolumeAndIntervals:
    def test_monthly_volume(self, trades):
        dr = DateRange(datetime(2025, 3, 1), datetime(2025, 4, 30))
        result = performance.calculate_volume_metrics(trades, dr)
        assert result["interval_type"] == "monthly"
        march, april = result["data"]
        assert march["period"] == "2025-03"
        assert march["shares"] == 350.0
        assert march["trading_days"] == 2
        assert march["normalized_daily_volume"] == 175.0
        assert march["avg_daily_pnl"] == 83.33
        assert april["shares"] == 100.0

    def test_weekly_volume_anchors_on_monday(self, trades):
        dr = DateRange(datetime(2025, 3, 1), datetime(2025, 3, 31))
        result = performance.calculate_volume_metrics(trades, dr)
        assert result["interval_type"] == "weekly"
        assert result["data"][0]["period"] == "2025-W10"
        assert result["data"][0]["trades"] == 3

    def test_empty_volume(self, empty):
        dr = DateRange(datetime(2025, 3, 1), datetime(2025, 3, 5))
        assert performance.calculate_volume_metrics(empty, dr) == {
            "interval_type": "daily",
            "data": [],
        }

    def test_averaged_daily_pnl(self, trades):
        dr = DateRange(datetime(2025, 3, 1), datetime(2025, 4, 30))
        result = performance.calculate_time_interval_data(trades, dr)
        assert result["averaged_daily_pnl"] == 2.5
        assert result["interval_type"] == "monthly"
        assert len(result["intervals"]) == 2

    def test_zero_length_range(self):
        moment = datetime(2025, 3, 1)
        assert performance.calculate_averaged_daily_pnl(100.0, DateRange(moment, moment)) == 0.0
