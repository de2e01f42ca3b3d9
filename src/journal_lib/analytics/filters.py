"""
Trade filters and the parameterized WHERE clause they compile to.

Only closed, calculated trades are analysed.  Every filter value is bound
as a parameter.  Tags live in a JSON text column; a tag matches when its
JSON-encoded form occurs in that text (any overlap counts).
"""

import json
from dataclasses import dataclass, field
from typing import Optional

from src.journal_lib.analytics.date_range import DateRange
from src.journal_lib.core.models import STATUS_CLOSED, fmt_ts

INTRADAY_MAX_SECONDS = 86400


@dataclass
class TradeFilters:
    date_range: Optional[DateRange] = None
    symbols: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    side: Optional[str] = None
    duration: Optional[str] = None  # "intraday" | "swing"
    # Accepted but not applied: timestamps are stored and bucketed in Eastern time.
    time_zone: str = "America/New_York"

    @classmethod
    def from_dict(cls, data: Optional[dict], date_range: Optional[DateRange] = None):
        data = data or {}
        symbols = data.get("symbols") or []
        if data.get("symbol") and data["symbol"] != "all":
            symbols = [data["symbol"]]
        return cls(
            date_range=date_range,
            symbols=[s.strip().upper() for s in symbols if s and s.strip()],
            tags=[t for t in (data.get("tags") or []) if t],
            side=data.get("side"),
            duration=data.get("duration"),
            time_zone=data.get("time_zone") or "America/New_York",
        )


def _like_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_where_clause(
    user_id: str, filters: TradeFilters, date_column: str = "trade_date"
) -> tuple[str, tuple]:
    """Compile *filters* into ``(sql, params)`` for the trades table.

    *date_column* selects which timestamp the date range applies to:
    ``trade_date`` (entry) for analytics, ``close_time`` for the dashboard.
    """
    if date_column not in ("trade_date", "close_time"):
        raise ValueError(f"Unsupported date column: {date_column}")

    clauses = ["user_id = ?", "is_calculated = 1", "status = ?"]
    params: list = [user_id, STATUS_CLOSED]

    if date_column != "trade_date":
        clauses.append(f"{date_column} IS NOT NULL")

    if filters.date_range is not None:
        clauses.append(f"{date_column} BETWEEN ? AND ?")
        params += [fmt_ts(filters.date_range.start), fmt_ts(filters.date_range.end)]

    if filters.symbols:
        clauses.append("symbol IN ({})".format(", ".join("?" for _ in filters.symbols)))
        params += filters.symbols

    side = (filters.side or "").upper()
    if side and side != "ALL":
        clauses.append("side = ?")
        params.append(side)

    if filters.tags:
        clauses.append(
            "(" + " OR ".join("tags LIKE ? ESCAPE '\\'" for _ in filters.tags) + ")"
        )
        params += [f"%{_like_escape(json.dumps(tag))}%" for tag in filters.tags]

    if filters.duration == "intraday":
        clauses.append("time_in_trade <= ?")
        params.append(INTRADAY_MAX_SECONDS)
    elif filters.duration == "swing":
        clauses.append("time_in_trade > ?")
        params.append(INTRADAY_MAX_SECONDS)

    return " AND ".join(clauses), tuple(params)
