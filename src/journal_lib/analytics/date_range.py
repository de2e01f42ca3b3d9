"""
Date-range presets and period bucketing for analytics queries.

All datetimes are naive US/Eastern wall-clock values, matching how the
journal stores timestamps.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from src.journal_lib.core.models import fmt_ts, now_est, parse_ts

# Preset -> number of days back from "now"
_PRESET_DAYS = {
    "1w": 7,
    "2w": 14,
    "30d": 30,
    "1m": 30,
    "60d": 60,
    "90d": 90,
    "3m": 90,
    "6m": 180,
}

DEFAULT_DAYS = 30


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    @property
    def days(self) -> float:
        return (self.end - self.start).total_seconds() / 86400

    def to_dict(self) -> dict:
        return {"start": fmt_ts(self.start), "end": fmt_ts(self.end)}


def _end_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=23, minute=59, second=59, microsecond=0)


def parse_date_range(
    start: Optional[str] = None,
    end: Optional[str] = None,
    preset: Optional[str] = None,
    now: Optional[datetime] = None,
) -> DateRange:
    """Resolve an explicit range or a named preset into a DateRange.

    Explicit ``start`` and ``end`` win over a preset.  Rolling presets
    count back from *now* and end at the end of today; ``last-year`` is
    the previous calendar year and ``yesterday`` the whole previous day.
    Anything unrecognised means the last 30 days.
    """
    now = now or now_est()
    end_of_today = _end_of_day(now)

    if start and end:
        start_dt, end_dt = parse_ts(start), parse_ts(end)
        if start_dt is None or end_dt is None:
            raise ValueError(f"Invalid date range: {start!r} - {end!r}")
        return DateRange(start_dt, end_dt)

    if preset == "last-year":
        year = now.year - 1
        return DateRange(datetime(year, 1, 1), datetime(year, 12, 31, 23, 59, 59))
    if preset == "ytd":
        return DateRange(datetime(now.year, 1, 1), end_of_today)
    if preset == "yesterday":
        day = (now - timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        return DateRange(day, _end_of_day(day))

    days = _PRESET_DAYS.get(preset or "", DEFAULT_DAYS)
    return DateRange(now - timedelta(days=days), end_of_today)


# ---------------------------------------------------------------------------
# Interval bucketing
# ---------------------------------------------------------------------------


def determine_optimal_interval(date_range: DateRange) -> str:
    days = math.ceil(date_range.days)
    if days <= 7:
        return "daily"
    if days <= 30:
        return "weekly"
    if days <= 365:
        return "monthly"
    return "yearly"


def week_label(moment: datetime) -> str:
    """ISO-style week label ``YYYY-Www`` for the week containing *moment*."""
    year, week, _ = moment.isocalendar()
    return f"{year}-W{week:02d}"


def period_label(moment: datetime, interval: str) -> str:
    if interval == "daily":
        return moment.strftime("%Y-%m-%d")
    if interval == "weekly":
        return week_label(moment)
    if interval == "monthly":
        return moment.strftime("%Y-%m")
    return moment.strftime("%Y")
