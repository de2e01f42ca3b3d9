"""
Tests for date-range presets, interval bucketing and trade filters.
"""

from datetime import datetime, timedelta

import pytest

from src.journal_lib.analytics.date_range import (
    DateRange,
    determine_optimal_interval,
    parse_date_range,
    period_label,
    week_label,
)
from src.journal_lib.analytics.filters import (
    INTRADAY_MAX_SECONDS,
    TradeFilters,
    build_where_clause,
)

NOW = datetime(2025, 6, 15, 12, 30, 0)


# ===========================================================================
# Date ranges
# ===========================================================================


class TestParseDateRange:
    def test_explicit_range_wins_over_preset(self):
        dr = parse_date_range("2025-01-01 00:00:00", "2025-01-31 23:59:59", "ytd", now=NOW)
        assert dr.start == datetime(2025, 1, 1)
        assert dr.end == datetime(2025, 1, 31, 23, 59, 59)

    def test_date_only_strings_accepted(self):
        dr = parse_date_range("2025-02-01", "2025-02-10", now=NOW)
        assert dr.start == datetime(2025, 2, 1)
        assert dr.end == datetime(2025, 2, 10)

    def test_invalid_explicit_range_raises(self):
        with pytest.raises(ValueError):
            parse_date_range("yesterday-ish", "2025-01-31", now=NOW)

    def test_start_without_end_falls_back_to_default(self):
        dr = parse_date_range("2025-01-01", None, now=NOW)
        assert dr.start == NOW - timedelta(days=30)

    def test_last_year_is_previous_calendar_year(self):
        dr = parse_date_range(preset="last-year", now=NOW)
        assert dr.start == datetime(2024, 1, 1)
        assert dr.end == datetime(2024, 12, 31, 23, 59, 59)

    def test_ytd_starts_on_january_first(self):
        dr = parse_date_range(preset="ytd", now=NOW)
        assert dr.start == datetime(2025, 1, 1)
        assert dr.end == datetime(2025, 6, 15, 23, 59, 59)

    def test_yesterday_covers_whole_day(self):
        dr = parse_date_range(preset="yesterday", now=NOW)
        assert dr.start == datetime(2025, 6, 14)
        assert dr.end == datetime(2025, 6, 14, 23, 59, 59)

    @pytest.mark.parametrize(
        "preset,days",
        [("1w", 7), ("2w", 14), ("30d", 30), ("1m", 30), ("60d", 60), ("3m", 90), ("6m", 180)],
    )
    def test_rolling_presets(self, preset, days):
        dr = parse_date_range(preset=preset, now=NOW)
        assert dr.start == NOW - timedelta(days=days)
        assert dr.end == datetime(2025, 6, 15, 23, 59, 59)

    def test_unknown_preset_means_thirty_days(self):
        dr = parse_date_range(preset="forever", now=NOW)
        assert dr.start == NOW - timedelta(days=30)

    def test_to_dict_uses_storage_format(self):
        dr = DateRange(datetime(2025, 1, 1), datetime(2025, 1, 2, 9, 30))
        assert dr.to_dict() == {"start": "2025-01-01 00:00:00", "end": "2025-01-02 09:30:00"}


class TestIntervals:
    def _range(self, days):
        start = datetime(2025, 1, 1)
        return DateRange(start, start + timedelta(days=days))

    def test_week_or_less_is_daily(self):
        assert determine_optimal_interval(self._range(7)) == "daily"

    def test_month_is_weekly(self):
        assert determine_optimal_interval(self._range(30)) == "weekly"

    def test_partial_day_rounds_up(self):
        start = datetime(2025, 1, 1)
        dr = DateRange(start, start + timedelta(days=30, hours=1))
        assert determine_optimal_interval(dr) == "monthly"

    def test_year_is_monthly(self):
        assert determine_optimal_interval(self._range(365)) == "monthly"

    def test_longer_is_yearly(self):
        assert determine_optimal_interval(self._range(400)) == "yearly"

    def test_week_label_uses_iso_year(self):
        # Monday 30 Dec 2024 belongs to ISO week 1 of 2025
        assert week_label(datetime(2024, 12, 30)) == "2025-W01"
        assert week_label(datetime(2025, 3, 12)) == "2025-W11"

    def test_period_labels(self):
        moment = datetime(2025, 3, 12, 15, 0)
        assert period_label(moment, "daily") == "2025-03-12"
        assert period_label(moment, "weekly") == "2025-W11"
        assert period_label(moment, "monthly") == "2025-03"
        assert period_label(moment, "yearly") == "2025"


# ===========================================================================
# Filters
# ===========================================================================


class TestTradeFilters:
    def test_from_dict_defaults(self):
        filters = TradeFilters.from_dict(None)
        assert filters.symbols == []
        assert filters.tags == []
        assert filters.side is None
        assert filters.time_zone == "America/New_York"

    def test_single_symbol_is_uppercased(self):
        filters = TradeFilters.from_dict({"symbol": "aapl"})
        assert filters.symbols == ["AAPL"]

    def test_symbol_all_keeps_symbol_list(self):
        filters = TradeFilters.from_dict({"symbol": "all", "symbols": ["msft", " tsla ", ""]})
        assert filters.symbols == ["MSFT", "TSLA"]

    def test_empty_tags_dropped(self):
        filters = TradeFilters.from_dict({"tags": ["breakout", "", None]})
        assert filters.tags == ["breakout"]


class TestBuildWhereClause:
    def test_base_clause(self):
        sql, params = build_where_clause("u1", TradeFilters())
        assert sql == "user_id = ? AND is_calculated = 1 AND status = ?"
        assert params == ("u1", "CLOSED")

    def test_date_range_bound_as_parameters(self):
        dr = DateRange(datetime(2025, 1, 1), datetime(2025, 1, 31, 23, 59, 59))
        sql, params = build_where_clause("u1", TradeFilters(date_range=dr))
        assert "trade_date BETWEEN ? AND ?" in sql
        assert params[-2:] == ("2025-01-01 00:00:00", "2025-01-31 23:59:59")

    def test_close_time_column(self):
        dr = DateRange(datetime(2025, 1, 1), datetime(2025, 1, 2))
        sql, _ = build_where_clause("u1", TradeFilters(date_range=dr), date_column="close_time")
        assert "close_time IS NOT NULL" in sql
        assert "close_time BETWEEN ? AND ?" in sql

    def test_unsupported_column_rejected(self):
        with pytest.raises(ValueError):
            build_where_clause("u1", TradeFilters(), date_column="created_at; DROP TABLE trades")

    def test_symbols_use_placeholders(self):
        sql, params = build_where_clause("u1", TradeFilters(symbols=["AAPL", "MSFT"]))
        assert "symbol IN (?, ?)" in sql
        assert params[-2:] == ("AAPL", "MSFT")

    def test_side_all_adds_nothing(self):
        sql, _ = build_where_clause("u1", TradeFilters(side="ALL"))
        assert "side" not in sql

    def test_side_is_uppercased(self):
        sql, params = build_where_clause("u1", TradeFilters(side="short"))
        assert "side = ?" in sql
        assert params[-1] == "SHORT"

    def test_tags_match_any(self):
        sql, params = build_where_clause("u1", TradeFilters(tags=["gap", "news_play"]))
        assert sql.count("tags LIKE ?") == 2
        assert " OR " in sql
        assert params[-2] == '%"gap"%'
        # LIKE wildcards inside a tag are escaped
        assert params[-1] == '%"news\\_play"%'

    def test_duration_filters(self):
        sql, params = build_where_clause("u1", TradeFilters(duration="intraday"))
        assert "time_in_trade <= ?" in sql
        assert params[-1] == INTRADAY_MAX_SECONDS

        sql, params = build_where_clause("u1", TradeFilters(duration="swing"))
        assert "time_in_trade > ?" in sql

        sql, _ = build_where_clause("u1", TradeFilters(duration="all"))
        assert "time_in_trade" not in sql

    def test_hostile_symbol_stays_a_parameter(self):
        hostile = "AAPL' OR '1'='1"
        sql, params = build_where_clause("u1", TradeFilters(symbols=[hostile]))
        assert hostile not in sql
        assert hostile in params
