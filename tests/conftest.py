"""
Shared pytest fixtures for the trading journal test suite.

Every test runs against a fresh SQLite file and the in-memory cache, so
no Redis or Postgres server is needed.  Helpers below seed users, trades
and broker formats in the shapes the services expect.
"""

import os

# ---------------------------------------------------------------------------
# Disable Redis connections during tests so cache tests don't hang waiting
# for a Redis server that isn't running locally.  Rate limiting is off
# unless a test turns it on explicitly.
# ---------------------------------------------------------------------------
os.environ.setdefault("DISABLE_REDIS", "1")
os.environ.setdefault("RATE_LIMIT_ENABLED", "0")

from datetime import datetime, timedelta  # noqa: E402

import pytest  # noqa: E402

from src.journal_lib.core import cache, models  # noqa: E402


@pytest.fixture(autouse=True)
def _use_sqlite_tempdb(tmp_path, monkeypatch):
    """Point DB_PATH to a temp SQLite file for every test."""
    db_file = str(tmp_path / "test_journal.db")
    monkeypatch.setenv("DB_PATH", db_file)
    monkeypatch.setenv("DATABASE_URL", "")

    models.DB_PATH = db_file
    models.DATABASE_URL = ""
    models._USE_POSTGRES = False
    models._sa_engine = None
    models.init_db()

    cache.flush_all()
    yield
    cache.flush_all()


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def user_id():
    return models.create_user("trader@example.com", name="Trader")


@pytest.fixture()
def admin_id():
    return models.create_user("admin@example.com", name="Admin", role=models.ROLE_ADMIN)


def make_closed_trade(
    user_id: str,
    close_time: datetime,
    pnl: float,
    symbol: str = "AAPL",
    side: str = "LONG",
    hold_seconds: int = 3600,
    quantity: float = 100,
    tags=None,
    **extra,
) -> int:
    """Insert a CLOSED trade that closed at *close_time* after *hold_seconds*."""
    open_time = close_time - timedelta(seconds=hold_seconds)
    fields = {
        "symbol": symbol,
        "side": side,
        "status": models.STATUS_CLOSED,
        "open_time": models.fmt_ts(open_time),
        "close_time": models.fmt_ts(close_time),
        "trade_date": models.fmt_ts(open_time),
        "entry_price": 100.0,
        "exit_price": 100.0 + pnl / quantity,
        "quantity": quantity,
        "pnl": pnl,
        "time_in_trade": hold_seconds,
        "market_session": "REGULAR",
        "holding_period": "INTRADAY" if hold_seconds <= 86400 else "SWING",
        "tags": list(tags or []),
    }
    fields.update(extra)
    return models.create_trade(user_id, **fields)


@pytest.fixture()
def closed_trade():
    """Factory fixture wrapping ``make_closed_trade``."""
    return make_closed_trade


DEFAULT_MAPPINGS = {
    "Symbol": "symbol",
    "Side": "side",
    "Qty": "quantity",
    "Price": "price",
    "Time": "orderExecutedTime",
}


@pytest.fixture()
def broker_format():
    """An unapproved broker CSV format with simple one-to-one mappings."""
    return models.create_broker_format(
        broker_name="Interactive Brokers",
        format_name="IB Activity Statement",
        field_mappings=dict(DEFAULT_MAPPINGS),
    )


def csv_row(symbol="AAPL", side="BUY", qty="100", price="150.25", time="2025-03-03 10:15:00"):
    return {"Symbol": symbol, "Side": side, "Qty": qty, "Price": price, "Time": time}


@pytest.fixture()
def make_row():
    """Factory fixture wrapping ``csv_row``."""
    return csv_row
