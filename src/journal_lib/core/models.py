"""
Database schema and helpers for the trading journal.

Supports dual-database backends:
  - PostgreSQL via DATABASE_URL (production / Docker)
  - SQLite via DB_PATH (local dev / tests)

The active backend is chosen automatically at module load time:
  - If DATABASE_URL is set and starts with "postgresql", use Postgres.
  - Otherwise, fall back to SQLite at DB_PATH.

Service modules (analytics, imports, accounts, billing) share the
connection helpers below and write their SQL with ``?`` placeholders.
Timestamps are stored as ``YYYY-MM-DD HH:MM:SS`` text in US/Eastern so
that string comparison matches chronological order on both backends.
JSON columns (tags, mappings, raw CSV rows, error lists) are stored as
text and decoded by ``_row_to_dict``.
"""

import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Iterator, Optional
from zoneinfo import ZoneInfo

import pandas as pd

_EST = ZoneInfo("America/New_York")

logger = logging.getLogger("models")

# ---------------------------------------------------------------------------
# Database configuration
# ---------------------------------------------------------------------------
DB_PATH = os.getenv("DB_PATH", "trading_journal.db")
DATABASE_URL = os.getenv("DATABASE_URL", "")

_USE_POSTGRES = DATABASE_URL.startswith("postgresql")

# SQLAlchemy engine (lazy-initialised for Postgres)
_sa_engine = None

TS_FORMAT = "%Y-%m-%d %H:%M:%S"

# ---------------------------------------------------------------------------
# Statuses
# ---------------------------------------------------------------------------
STATUS_OPEN = "OPEN"
STATUS_CLOSED = "CLOSED"

TIER_FREE = "FREE"
TIER_PREMIUM = "PREMIUM"

ROLE_USER = "USER"
ROLE_ADMIN = "ADMIN"

# Columns holding JSON text, decoded on read
_JSON_COLUMNS = frozenset(
    {
        "tags",
        "errors",
        "headers",
        "field_mappings",
        "raw_csv_row",
        "initial_mapped_data",
        "processing_errors",
        "details",
        "result",
        "payload",
    }
)


# ═══════════════════════════════════════════════════════════════════════════
# Time helpers
# ═══════════════════════════════════════════════════════════════════════════


def now_est() -> datetime:
    """Current wall-clock time in US/Eastern, without tzinfo."""
    return datetime.now(tz=_EST).replace(tzinfo=None)


def fmt_ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(_EST).replace(tzinfo=None)
    return value.strftime(TS_FORMAT)


def now_str() -> str:
    return fmt_ts(now_est())  # type: ignore[return-value]


def parse_ts(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp back into a naive US/Eastern datetime.

    Accepts the storage format, date-only strings, ISO-8601 strings
    (aware values are converted to Eastern) and datetime / date objects.
    Returns None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(_EST).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(_EST).replace(tzinfo=None)
    return parsed


def new_id() -> str:
    """Random hex identifier used for user ids."""
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════════════
# Database abstraction layer
# ═══════════════════════════════════════════════════════════════════════════
#
# Two backends, same interface:
#   - SQLite: uses sqlite3 directly
#   - Postgres: uses psycopg via SQLAlchemy's raw connection interface
#
# SQL is written with `?` placeholders and converted to `%s` at
# execution time when using Postgres.
# ═══════════════════════════════════════════════════════════════════════════


def _get_sa_engine():
    """Lazily create the SQLAlchemy engine for Postgres."""
    global _sa_engine
    if _sa_engine is None:
        from sqlalchemy import create_engine

        _sa_engine = create_engine(
            DATABASE_URL,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
        logger.info("Postgres engine created: %s", DATABASE_URL.split("@")[-1])
    return _sa_engine


def _convert_placeholders(sql: str) -> str:
    """Convert SQLite-style `?` placeholders to Postgres-style `%s`."""
    return sql.replace("?", "%s")


class _RowProxy:
    """Dict-like wrapper around a Postgres row tuple, matching sqlite3.Row."""

    __slots__ = ("_data",)

    def __init__(self, columns: list[str], values: tuple):
        self._data = dict(zip(columns, values))

    def __getitem__(self, key):
        if isinstance(key, int):
            return list(self._data.values())[key]
        return self._data[key]

    def __contains__(self, key: str):
        return key in self._data

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def keys(self):
        return self._data.keys()

    def __iter__(self):
        return iter(self._data.values())

    def __repr__(self):
        return repr(self._data)


class _PgCursorWrapper:
    """Wraps a psycopg cursor to convert `?` to `%s` and return _RowProxy rows."""

    def __init__(self, cursor):
        self._cursor = cursor

    def execute(self, sql: str, params=None):
        converted = _convert_placeholders(sql)
        if params:
            self._cursor.execute(converted, params)
        else:
            self._cursor.execute(converted)
        return self

    def _columns(self) -> list[str]:
        return [desc[0] for desc in self._cursor.description]

    def fetchone(self):
        row = self._cursor.fetchone()
        if row is None or not self._cursor.description:
            return row
        return _RowProxy(self._columns(), row)

    def fetchall(self):
        rows = self._cursor.fetchall()
        if not rows or not self._cursor.description:
            return rows
        columns = self._columns()
        return [_RowProxy(columns, r) for r in rows]

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount

    @property
    def lastrowid(self):
        return getattr(self._cursor, "lastrowid", None)

    @property
    def description(self):
        return self._cursor.description


class _PgConnectionWrapper:
    """Wraps a SQLAlchemy raw connection to match the sqlite3.Connection API."""

    def __init__(self, raw_conn):
        self._conn = raw_conn

    def execute(self, sql: str, params=None):
        wrapper = _PgCursorWrapper(self._conn.cursor())
        wrapper.execute(sql, params)
        return wrapper

    def executemany(self, sql: str, seq_of_params):
        cursor = self._conn.cursor()
        cursor.executemany(_convert_placeholders(sql), list(seq_of_params))
        return _PgCursorWrapper(cursor)

    def executescript(self, sql: str):
        cursor = self._conn.cursor()
        for stmt in sql.split(";"):
            if stmt.strip():
                cursor.execute(stmt)
        return _PgCursorWrapper(cursor)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def _get_sqlite_conn() -> sqlite3.Connection:
    """Create a SQLite connection with WAL mode and row factory."""
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def _get_conn():
    """Get a database connection (Postgres or SQLite).

    Returns an object with execute(), executemany(), executescript(),
    commit(), rollback() and close().  Rows support access by column name.
    """
    if _USE_POSTGRES:
        try:
            raw = _get_sa_engine().raw_connection()
            return _PgConnectionWrapper(raw)
        except Exception as exc:
            logger.warning(
                "Postgres connection failed, falling back to SQLite: %s", exc
            )
            return _get_sqlite_conn()
    return _get_sqlite_conn()


def _is_using_postgres() -> bool:
    return _USE_POSTGRES


@contextmanager
def get_connection() -> Iterator[Any]:
    """Connection that commits on success and rolls back on error."""
    conn = _get_conn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------
# Written for SQLite; _pg_schema() rewrites the few type differences.

_SCHEMA_SQLITE = """
CREATE TABLE IF NOT EXISTS users (
    id                      TEXT PRIMARY KEY,
    email                   TEXT NOT NULL UNIQUE,
    name                    TEXT,
    role                    TEXT NOT NULL DEFAULT 'USER',
    external_id             TEXT,
    subscription_tier       TEXT NOT NULL DEFAULT 'FREE',
    subscription_status     TEXT NOT NULL DEFAULT 'INACTIVE',
    stripe_customer_id      TEXT,
    deletion_requested_at   TEXT,
    deleted_at              TEXT,
    deletion_reason         TEXT,
    final_deletion_at       TEXT,
    can_reactivate          INTEGER NOT NULL DEFAULT 1,
    anonymized_at           TEXT,
    created_at              TEXT NOT NULL,
    updated_at              TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS broker_csv_formats (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    broker_name         TEXT NOT NULL,
    broker_id           TEXT,
    format_name         TEXT NOT NULL,
    headers             TEXT NOT NULL DEFAULT '[]',
    field_mappings      TEXT NOT NULL DEFAULT '{}',
    is_approved         INTEGER NOT NULL DEFAULT 0,
    approved_by         TEXT,
    approved_at         TEXT,
    created_by          TEXT,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS import_batches (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id                 TEXT NOT NULL,
    broker_csv_format_id    INTEGER,
    file_name               TEXT,
    status                  TEXT NOT NULL DEFAULT 'PROCESSING',
    total_records           INTEGER NOT NULL DEFAULT 0,
    success_count           INTEGER NOT NULL DEFAULT 0,
    error_count             INTEGER NOT NULL DEFAULT 0,
    errors                  TEXT,
    user_review_required    INTEGER NOT NULL DEFAULT 0,
    created_at              TEXT NOT NULL,
    updated_at              TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS order_staging (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id                 TEXT NOT NULL,
    import_batch_id         INTEGER NOT NULL,
    broker_csv_format_id    INTEGER NOT NULL,
    raw_csv_row             TEXT NOT NULL,
    row_index               INTEGER NOT NULL,
    initial_mapped_data     TEXT,
    migration_status        TEXT NOT NULL DEFAULT 'PENDING',
    processing_errors       TEXT,
    retry_count             INTEGER NOT NULL DEFAULT 0,
    last_retry_at           TEXT,
    migrated_at             TEXT,
    order_id                INTEGER,
    retention_date          TEXT,
    created_at              TEXT NOT NULL,
    updated_at              TEXT
);

CREATE TABLE IF NOT EXISTS orders (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id                 TEXT NOT NULL,
    import_batch_id         INTEGER,
    order_id                TEXT,
    symbol                  TEXT NOT NULL,
    order_type              TEXT NOT NULL DEFAULT 'MARKET',
    side                    TEXT NOT NULL,
    time_in_force           TEXT NOT NULL DEFAULT 'DAY',
    order_quantity          INTEGER NOT NULL,
    limit_price             REAL,
    stop_price              REAL,
    price                   REAL,
    order_status            TEXT NOT NULL DEFAULT 'FILLED',
    order_placed_time       TEXT,
    order_executed_time     TEXT,
    account_id              TEXT,
    broker_type             TEXT,
    broker_id               TEXT,
    tags                    TEXT NOT NULL DEFAULT '[]',
    used_in_trade           INTEGER NOT NULL DEFAULT 0,
    trade_id                INTEGER,
    created_at              TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS trades (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id             TEXT NOT NULL,
    symbol              TEXT NOT NULL,
    side                TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'CLOSED',
    trade_date          TEXT NOT NULL,
    open_time           TEXT,
    close_time          TEXT,
    entry_price         REAL,
    exit_price          REAL,
    quantity            REAL NOT NULL DEFAULT 0,
    pnl                 REAL NOT NULL DEFAULT 0,
    commission          REAL NOT NULL DEFAULT 0,
    fees                REAL NOT NULL DEFAULT 0,
    time_in_trade       INTEGER,
    market_session      TEXT,
    holding_period      TEXT,
    tags                TEXT NOT NULL DEFAULT '[]',
    is_calculated       INTEGER NOT NULL DEFAULT 1,
    created_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS account_deletion_logs (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         TEXT NOT NULL,
    action          TEXT NOT NULL,
    reason          TEXT,
    performed_by    TEXT,
    details         TEXT,
    scheduled_for   TEXT,
    completed_at    TEXT,
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS subscriptions (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id                 TEXT NOT NULL,
    stripe_subscription_id  TEXT NOT NULL UNIQUE,
    stripe_customer_id      TEXT,
    stripe_price_id         TEXT,
    status                  TEXT NOT NULL,
    tier                    TEXT NOT NULL DEFAULT 'FREE',
    current_period_start    TEXT,
    current_period_end      TEXT,
    cancel_at_period_end    INTEGER NOT NULL DEFAULT 0,
    canceled_at             TEXT,
    trial_end               TEXT,
    created_at              TEXT NOT NULL,
    updated_at              TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS payment_history (
    id                          INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id                     TEXT NOT NULL,
    stripe_payment_intent_id    TEXT UNIQUE,
    stripe_invoice_id           TEXT,
    amount                      INTEGER NOT NULL DEFAULT 0,
    currency                    TEXT NOT NULL DEFAULT 'usd',
    status                      TEXT NOT NULL,
    description                 TEXT,
    created_at                  TEXT NOT NULL,
    updated_at                  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS webhook_events (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    stripe_event_id TEXT NOT NULL UNIQUE,
    event_type      TEXT NOT NULL,
    processed       INTEGER NOT NULL DEFAULT 0,
    processed_at    TEXT,
    error           TEXT,
    payload         TEXT,
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS idempotency_keys (
    idempotency_key TEXT PRIMARY KEY,
    operation   TEXT NOT NULL,
    status      TEXT NOT NULL,
    result      TEXT,
    created_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_trades_user_date ON trades (user_id, trade_date);
CREATE INDEX IF NOT EXISTS idx_orders_user_symbol ON orders (user_id, symbol, order_executed_time);
CREATE INDEX IF NOT EXISTS idx_staging_user_status ON order_staging (user_id, migration_status);
CREATE INDEX IF NOT EXISTS idx_staging_format_status ON order_staging (broker_csv_format_id, migration_status);
CREATE INDEX IF NOT EXISTS idx_deletion_logs_user ON account_deletion_logs (user_id);
"""


def _pg_schema(sql: str) -> str:
    """Rewrite the SQLite DDL for Postgres."""
    return sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "SERIAL PRIMARY KEY").replace(
        " REAL", " DOUBLE PRECISION"
    )


def init_db() -> None:
    """Create every table and index idempotently."""
    conn = _get_conn()
    try:
        if _USE_POSTGRES:
            conn.executescript(_pg_schema(_SCHEMA_SQLITE))
        else:
            conn.executescript(_SCHEMA_SQLITE)
        conn.commit()
        logger.info(
            "Database initialised (%s)", "postgres" if _USE_POSTGRES else DB_PATH
        )
    except Exception as exc:
        logger.error("init_db failed: %s", exc)
        conn.rollback()
        raise
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Row / value helpers
# ---------------------------------------------------------------------------


def _row_to_dict(row) -> dict:
    """Convert a database row to a plain dict, decoding JSON columns."""
    if row is None:
        return {}
    if isinstance(row, dict):
        data = dict(row)
    else:
        data = {k: row[k] for k in row.keys()}
    for key in _JSON_COLUMNS.intersection(data):
        value = data[key]
        if isinstance(value, str) and value:
            try:
                data[key] = json.loads(value)
            except ValueError:
                pass
    return data


def _encode_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return fmt_ts(value)
    return value


def _insert_returning_id(conn, sql: str, params: tuple) -> int:
    """Execute an INSERT and return the new row's id.

    Postgres gets ``RETURNING id``; SQLite uses ``cursor.lastrowid``.
    """
    if _USE_POSTGRES:
        row = conn.execute(sql + " RETURNING id", params).fetchone()
        return row["id"] if row else 0
    cur = conn.execute(sql, params)
    return cur.lastrowid  # type: ignore[return-value]


def _insert(conn, table: str, data: dict, returning_id: bool = True) -> Optional[int]:
    """INSERT a column -> value mapping into *table*."""
    columns = list(data.keys())
    sql = "INSERT INTO {} ({}) VALUES ({})".format(
        table, ", ".join(columns), ", ".join("?" for _ in columns)
    )
    params = tuple(_encode_value(data[c]) for c in columns)
    if returning_id:
        return _insert_returning_id(conn, sql, params)
    conn.execute(sql, params)
    return None


def _update(conn, table: str, key_column: str, key: Any, data: dict) -> int:
    """UPDATE the given columns of one row; returns affected row count."""
    if not data:
        return 0
    assignments = ", ".join(f"{c} = ?" for c in data)
    params = tuple(_encode_value(v) for v in data.values()) + (key,)
    cur = conn.execute(
        f"UPDATE {table} SET {assignments} WHERE {key_column} = ?", params
    )
    return cur.rowcount


def _query_to_list(conn, sql: str, params: tuple = ()) -> list[dict]:
    """Execute a SELECT and return a list of dicts."""
    rows = conn.execute(sql, params).fetchall()
    return [_row_to_dict(r) for r in rows]


def _query_one(conn, sql: str, params: tuple = ()) -> Optional[dict]:
    row = conn.execute(sql, params).fetchone()
    return _row_to_dict(row) if row is not None else None


def _query_to_df(conn, sql: str, params: tuple = ()) -> pd.DataFrame:
    """Execute a SELECT into a DataFrame.

    SQLite goes through pd.read_sql; for Postgres the rows are fetched
    through the wrapper, avoiding pd.read_sql connection issues.
    """
    if _USE_POSTGRES:
        cur = conn.execute(sql, params)
        rows = cur.fetchall()
        columns = [d[0] for d in cur.description] if cur.description else []
        return pd.DataFrame([tuple(r) for r in rows], columns=columns)
    return pd.read_sql(sql, conn, params=params)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

_USER_COLUMNS = frozenset(
    {
        "email",
        "name",
        "role",
        "external_id",
        "subscription_tier",
        "subscription_status",
        "stripe_customer_id",
        "deletion_requested_at",
        "deleted_at",
        "deletion_reason",
        "final_deletion_at",
        "can_reactivate",
        "anonymized_at",
    }
)


def create_user(
    email: str,
    name: Optional[str] = None,
    role: str = ROLE_USER,
    user_id: Optional[str] = None,
    external_id: Optional[str] = None,
    stripe_customer_id: Optional[str] = None,
) -> str:
    """Insert a user and return its id."""
    user_id = user_id or new_id()
    now = now_str()
    with get_connection() as conn:
        _insert(
            conn,
            "users",
            {
                "id": user_id,
                "email": email,
                "name": name,
                "role": role,
                "external_id": external_id,
                "stripe_customer_id": stripe_customer_id,
                "created_at": now,
                "updated_at": now,
            },
            returning_id=False,
        )
    return user_id


def get_user(user_id: str) -> Optional[dict]:
    with get_connection() as conn:
        return _query_one(conn, "SELECT * FROM users WHERE id = ?", (user_id,))


def get_user_by_email(email: str) -> Optional[dict]:
    with get_connection() as conn:
        return _query_one(conn, "SELECT * FROM users WHERE email = ?", (email,))


def get_user_by_customer_id(customer_id: str) -> Optional[dict]:
    with get_connection() as conn:
        return _query_one(
            conn, "SELECT * FROM users WHERE stripe_customer_id = ?", (customer_id,)
        )


def update_user(user_id: str, conn=None, **fields) -> None:
    """Update user columns; unknown column names raise ValueError."""
    unknown = set(fields) - _USER_COLUMNS
    if unknown:
        raise ValueError(f"Unknown user fields: {sorted(unknown)}")
    fields["updated_at"] = now_str()
    if conn is not None:
        _update(conn, "users", "id", user_id, fields)
        return
    with get_connection() as own:
        _update(own, "users", "id", user_id, fields)


# ---------------------------------------------------------------------------
# Trades & orders
# ---------------------------------------------------------------------------


def create_trade(user_id: str, conn=None, **fields) -> int:
    """Insert a trade row and return its id.

    ``trade_date`` defaults to ``open_time``; ``tags`` to an empty list.
    """
    data = {"user_id": user_id, "created_at": now_str(), "tags": []}
    data.update(fields)
    data["symbol"] = str(data["symbol"]).upper()
    if "trade_date" not in data:
        data["trade_date"] = data.get("open_time") or data["created_at"]
    if conn is not None:
        return _insert(conn, "trades", data)  # type: ignore[return-value]
    with get_connection() as own:
        return _insert(own, "trades", data)  # type: ignore[return-value]


def get_trades(user_id: str, status: Optional[str] = None) -> list[dict]:
    sql = "SELECT * FROM trades WHERE user_id = ?"
    params: tuple = (user_id,)
    if status:
        sql += " AND status = ?"
        params += (status,)
    sql += " ORDER BY trade_date, id"
    with get_connection() as conn:
        return _query_to_list(conn, sql, params)


def create_order(user_id: str, conn=None, **fields) -> int:
    """Insert an order row and return its id."""
    data = {"user_id": user_id, "created_at": now_str(), "tags": []}
    data.update(fields)
    if conn is not None:
        return _insert(conn, "orders", data)  # type: ignore[return-value]
    with get_connection() as own:
        return _insert(own, "orders", data)  # type: ignore[return-value]


def get_orders(user_id: str, used_in_trade: Optional[bool] = None) -> list[dict]:
    sql = "SELECT * FROM orders WHERE user_id = ?"
    params: tuple = (user_id,)
    if used_in_trade is not None:
        sql += " AND used_in_trade = ?"
        params += (int(used_in_trade),)
    sql += " ORDER BY order_executed_time, id"
    with get_connection() as conn:
        return _query_to_list(conn, sql, params)


# ---------------------------------------------------------------------------
# Broker formats & import batches
# ---------------------------------------------------------------------------


def create_broker_format(
    broker_name: str,
    format_name: str,
    field_mappings: dict,
    headers: Optional[list] = None,
    broker_id: Optional[str] = None,
    created_by: Optional[str] = None,
    is_approved: bool = False,
) -> int:
    now = now_str()
    with get_connection() as conn:
        return _insert(  # type: ignore[return-value]
            conn,
            "broker_csv_formats",
            {
                "broker_name": broker_name,
                "broker_id": broker_id or broker_name.lower().replace(" ", "-"),
                "format_name": format_name,
                "headers": headers or list(field_mappings.keys()),
                "field_mappings": field_mappings,
                "is_approved": is_approved,
                "created_by": created_by,
                "created_at": now,
                "updated_at": now,
            },
        )


def get_broker_format(format_id: int, conn=None) -> Optional[dict]:
    sql = "SELECT * FROM broker_csv_formats WHERE id = ?"
    if conn is not None:
        return _query_one(conn, sql, (format_id,))
    with get_connection() as own:
        return _query_one(own, sql, (format_id,))


def list_broker_formats(approved: Optional[bool] = None) -> list[dict]:
    sql = "SELECT * FROM broker_csv_formats"
    params: tuple = ()
    if approved is not None:
        sql += " WHERE is_approved = ?"
        params = (int(approved),)
    sql += " ORDER BY id"
    with get_connection() as conn:
        return _query_to_list(conn, sql, params)


def create_import_batch(
    user_id: str,
    broker_csv_format_id: Optional[int] = None,
    file_name: Optional[str] = None,
    total_records: int = 0,
) -> int:
    now = now_str()
    with get_connection() as conn:
        return _insert(  # type: ignore[return-value]
            conn,
            "import_batches",
            {
                "user_id": user_id,
                "broker_csv_format_id": broker_csv_format_id,
                "file_name": file_name,
                "total_records": total_records,
                "status": "PROCESSING",
                "created_at": now,
                "updated_at": now,
            },
        )


def get_import_batch(batch_id: int) -> Optional[dict]:
    with get_connection() as conn:
        return _query_one(conn, "SELECT * FROM import_batches WHERE id = ?", (batch_id,))


def update_import_batch(batch_id: int, **fields) -> None:
    fields["updated_at"] = now_str()
    with get_connection() as conn:
        _update(conn, "import_batches", "id", batch_id, fields)
