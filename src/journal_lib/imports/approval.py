"""
FormatApprovalService - approve broker formats and migrate staged orders.

Approving a format applies its (optionally corrected) field mappings to
every PENDING row staged against it and inserts the resulting orders.
The format update and the whole migration share one transaction.
Results are recorded under an optional idempotency key so a retried
request returns the first outcome instead of migrating twice.
"""

import json
import logging
import time
from datetime import timedelta
from typing import Any, Optional

from src.journal_lib.core.cache import get_analytics_cache
from src.journal_lib.core.errors import ConflictError, JournalError, NotFoundError, ValidationError
from src.journal_lib.core.logging_config import logged_operation
from src.journal_lib.core.models import (
    _insert,
    _is_using_postgres,
    _query_one,
    _query_to_list,
    _update,
    fmt_ts,
    get_connection,
    now_est,
    now_str,
    parse_ts,
)
from src.journal_lib.imports.staging import FAILED, MIGRATED, PENDING, REJECTED
from src.journal_lib.imports.trade_builder import build_trades_for_user
from src.journal_lib.imports.validator import (
    VALID_SIDES,
    normalize_field_name,
    parse_date_with_multiple_formats,
    validate_staging_order_data,
)

logger = logging.getLogger("imports.approval")

BATCH_SIZE = 100

DATE_FIELDS = frozenset(
    {
        "order_placed_time",
        "order_executed_time",
        "trade_date",
        "execution_time",
        "settlement_date",
    }
)

_ACTION_FIELDS = ("action", "transaction_type", "type", "transaction", "order_action")

_TIMEFRAME_DAYS = {"day": 1, "week": 7, "month": 30}

_BROKER_TYPES = (
    (("interactive", "ibkr"), "INTERACTIVE_BROKERS"),
    (("schwab", "charles"), "CHARLES_SCHWAB"),
    (("ameritrade", "thinkorswim", "tos"), "TD_AMERITRADE"),
    (("etrade", "e*trade"), "E_TRADE"),
    (("fidelity",), "FIDELITY"),
    (("robinhood",), "ROBINHOOD"),
)


def get_broker_type_from_name(broker_name: str) -> str:
    normalized = (broker_name or "").lower()
    for needles, broker_type in _BROKER_TYPES:
        if any(n in normalized for n in needles):
            return broker_type
    return "GENERIC_CSV"


# ---------------------------------------------------------------------------
# Row transformation
# ---------------------------------------------------------------------------


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def combine_field_values(row: dict, column: str, mapping: Any) -> Any:
    """Value of *column*, joined with its ``combinedWith`` columns by a space."""
    combined = mapping.get("combinedWith") if isinstance(mapping, dict) else None
    if not combined:
        return row.get(column)
    values = [
        str(row[c]).strip() for c in [column, *combined] if not _is_empty(row.get(c))
    ]
    return " ".join(values)


def transform_value(value: Any, mapping: Any) -> Any:
    transform = mapping.get("transform") if isinstance(mapping, dict) else None
    if transform == "uppercase":
        return str(value).upper()
    if transform == "lowercase":
        return str(value).lower()
    if transform == "number":
        try:
            return float(str(value).replace(",", "").strip())
        except ValueError:
            return value
    if transform == "date":
        return parse_date_with_multiple_formats(value)
    return value


def apply_approved_mappings(row: dict, field_mappings: dict) -> dict:
    """Map a raw CSV row onto order fields.

    Date fields are parsed even without an explicit ``date`` transform,
    and a missing placed / executed time is filled from the other one.
    """
    result: dict = {}
    for column, mapping in (field_mappings or {}).items():
        value = combine_field_values(row, column, mapping)
        if _is_empty(value):
            continue
        if isinstance(mapping, str):
            targets = [mapping]
        elif isinstance(mapping, dict) and mapping.get("field"):
            targets = [mapping["field"]]
        elif isinstance(mapping, dict) and isinstance(mapping.get("fields"), list):
            targets = mapping["fields"]
        else:
            continue
        for target in targets:
            name = normalize_field_name(target)
            mapped = transform_value(value, mapping)
            if name in DATE_FIELDS and isinstance(mapped, str):
                mapped = parse_date_with_multiple_formats(mapped)
            result[name] = mapped

    if not result.get("order_placed_time") and result.get("order_executed_time"):
        result["order_placed_time"] = result["order_executed_time"]
    if not result.get("order_executed_time") and result.get("order_placed_time"):
        result["order_executed_time"] = result["order_placed_time"]
    return result


def infer_side(data: dict) -> dict:
    """Fill ``side`` from action-like fields or the sign of the quantity."""
    side = data.get("side")
    if side and str(side).upper().strip() in VALID_SIDES:
        return data

    for name in _ACTION_FIELDS:
        if not data.get(name):
            continue
        value = str(data[name]).upper().strip()
        if value == "B" or any(w in value for w in ("BUY", "BOT", "BOUGHT", "PURCHASE")):
            data["side"] = "BUY"
            return data
        if value == "S" or any(w in value for w in ("SELL", "SLD", "SOLD")):
            data["side"] = "SELL"
            return data

    quantity = data.get("quantity")
    if _is_empty(quantity):
        quantity = data.get("order_quantity")
    try:
        number = float(str(quantity).replace(",", "")) if not _is_empty(quantity) else 0.0
    except ValueError:
        number = 0.0
    if number:
        data["side"] = "SELL" if number < 0 else "BUY"
        data["quantity"] = data["order_quantity"] = abs(number)
    else:
        logger.warning("Could not infer side; available fields: %s", sorted(data))
    return data


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class FormatApprovalService:
    # -- idempotency -------------------------------------------------------

    def _check_idempotency(self, key: str) -> Optional[dict]:
        with get_connection() as conn:
            row = _query_one(
                conn, "SELECT * FROM idempotency_keys WHERE idempotency_key = ?", (key,)
            )
        if row is None:
            return None
        logger.info("Idempotent operation found for key %s", key)
        return row["result"]

    def _record_idempotency(self, key: str, result: dict) -> None:
        with get_connection() as conn:
            conn.execute(
                "INSERT INTO idempotency_keys"
                " (idempotency_key, operation, status, result, created_at)"
                " VALUES (?, ?, ?, ?, ?) ON CONFLICT (idempotency_key) DO NOTHING",
                (
                    key,
                    "approve_format",
                    "SUCCEEDED" if result["success"] else "FAILED",
                    json.dumps(result, default=str),
                    now_str(),
                ),
            )

    # -- approval ----------------------------------------------------------

    @logged_operation("format_id", "admin_user_id", "idempotency_key")
    def approve_format_and_migrate_orders(
        self,
        format_id: int,
        admin_user_id: str,
        corrected_mappings: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        if idempotency_key:
            existing = self._check_idempotency(idempotency_key)
            if existing is not None:
                return existing

        started = time.perf_counter()
        logger.info("Approving format %s by admin %s", format_id, admin_user_id)
        try:
            with get_connection() as conn:
                lock = " FOR UPDATE" if _is_using_postgres() else ""
                fmt = _query_one(
                    conn, f"SELECT * FROM broker_csv_formats WHERE id = ?{lock}", (format_id,)
                )
                if fmt is None:
                    raise NotFoundError(f"Format {format_id} not found")
                if fmt["is_approved"]:
                    raise ConflictError(f"Format {format_id} is already approved")

                mappings = corrected_mappings or fmt["field_mappings"]
                now = now_str()
                _update(
                    conn,
                    "broker_csv_formats",
                    "id",
                    format_id,
                    {
                        "is_approved": True,
                        "approved_by": admin_user_id,
                        "approved_at": now,
                        "field_mappings": mappings,
                        "updated_at": now,
                    },
                )
                migration = self._migrate_staged_orders(
                    conn,
                    format_id,
                    mappings,
                    get_broker_type_from_name(fmt["broker_name"]),
                    fmt["broker_id"],
                )
        except Exception as exc:
            message = exc.message if isinstance(exc, JournalError) else str(exc)
            logger.error("Approval failed for format %s: %s", format_id, message)
            if idempotency_key:
                self._record_idempotency(
                    idempotency_key,
                    {
                        "success": False,
                        "format_id": format_id,
                        "migrated_count": 0,
                        "failed_count": 0,
                        "errors": [message],
                        "duration_ms": _elapsed_ms(started),
                    },
                )
            raise

        affected = migration.pop("affected_users")
        result = {
            "success": True,
            "format_id": format_id,
            **migration,
            "duration_ms": _elapsed_ms(started),
        }
        if idempotency_key:
            self._record_idempotency(idempotency_key, result)
        self._refresh_users(affected)
        logger.info(
            "Approved format %s: %d migrated, %d failed",
            format_id,
            result["migrated_count"],
            result["failed_count"],
        )
        return result

    def _refresh_users(self, user_ids: list[str]) -> None:
        """Rebuild trades and drop cached analytics for users with new orders."""
        cache = get_analytics_cache()
        for user_id in user_ids:
            try:
                build_trades_for_user(user_id)
            except Exception as exc:
                logger.error("Trade rebuild failed for %s: %s", user_id, exc)
            cache.invalidate_user_analytics(user_id)

    # -- migration ---------------------------------------------------------

    def _migrate_staged_orders(
        self, conn, format_id: int, mappings: dict, broker_type: str, broker_id: str
    ) -> dict:
        migrated = failed = 0
        errors: list[str] = []
        affected: set[str] = set()
        last_id = 0
        while True:
            batch = _query_to_list(
                conn,
                """
                SELECT * FROM order_staging
                WHERE broker_csv_format_id = ? AND migration_status = ? AND id > ?
                ORDER BY id
                LIMIT ?
                """,
                (format_id, PENDING, last_id, BATCH_SIZE),
            )
            if not batch:
                break
            for record in batch:
                error = self._migrate_record(conn, record, mappings, broker_type, broker_id)
                if error is None:
                    migrated += 1
                    affected.add(record["user_id"])
                else:
                    failed += 1
                    errors.append(error)
            last_id = batch[-1]["id"]
        return {
            "migrated_count": migrated,
            "failed_count": failed,
            "errors": errors,
            "affected_users": sorted(affected),
        }

    def _migrate_record(
        self, conn, record: dict, mappings: dict, broker_type: str, broker_id: str
    ) -> Optional[str]:
        """Promote one staged row; returns an error message when it fails."""
        now = now_str()
        try:
            mapped = infer_side(apply_approved_mappings(record["raw_csv_row"] or {}, mappings))
            order = validate_staging_order_data(mapped)
        except ValidationError as exc:
            return self._fail_record(conn, record, exc.message, now)

        executed = fmt_ts(order.order_executed_time)
        duplicate = _query_one(
            conn,
            """
            SELECT id FROM orders
            WHERE user_id = ? AND symbol = ? AND order_executed_time = ? AND broker_id = ?
            """,
            (record["user_id"], order.symbol, executed, broker_id),
        )
        if duplicate is not None:
            return self._fail_record(
                conn, record, f"Duplicate order exists (Order ID: {duplicate['id']})", now
            )

        order_id = _insert(
            conn,
            "orders",
            {
                "user_id": record["user_id"],
                "import_batch_id": record["import_batch_id"],
                "order_id": f"{record['id']}-{int(time.time() * 1000)}",
                "symbol": order.symbol,
                "order_type": order.order_type,
                "side": order.side,
                "time_in_force": "DAY",
                "order_quantity": order.quantity,
                "limit_price": order.limit_price,
                "stop_price": order.stop_price,
                "price": order.price,
                "order_status": "FILLED",
                "order_placed_time": order.order_placed_time,
                "order_executed_time": executed,
                "account_id": order.account_id,
                "broker_type": broker_type,
                "broker_id": broker_id,
                "tags": [],
                "used_in_trade": False,
                "created_at": now,
            },
        )
        _update(
            conn,
            "order_staging",
            "id",
            record["id"],
            {
                "migration_status": MIGRATED,
                "migrated_at": now,
                "order_id": order_id,
                "updated_at": now,
            },
        )
        return None

    def _fail_record(self, conn, record: dict, message: str, now: str) -> str:
        conn.execute(
            """
            UPDATE order_staging
            SET migration_status = ?, processing_errors = ?, retry_count = retry_count + 1,
                last_retry_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (FAILED, json.dumps([message]), now, now, record["id"]),
        )
        logger.warning(
            "Staged row %s (row %s) failed: %s", record["id"], record["row_index"], message
        )
        return f"Row {record['row_index']}: {message}"

    # -- rejection ---------------------------------------------------------

    @logged_operation("format_id", "admin_user_id")
    def reject_format(self, format_id: int, admin_user_id: str, reason: str) -> dict:
        with get_connection() as conn:
            found = _query_one(
                conn, "SELECT id FROM broker_csv_formats WHERE id = ?", (format_id,)
            )
            if found is None:
                raise NotFoundError(f"Format {format_id} not found")
            rejected = conn.execute(
                """
                UPDATE order_staging
                SET migration_status = ?, processing_errors = ?, updated_at = ?
                WHERE broker_csv_format_id = ? AND migration_status = ?
                """,
                (REJECTED, json.dumps([reason]), now_str(), format_id, PENDING),
            ).rowcount
        logger.info(
            "Format %s rejected by %s: %d orders rejected", format_id, admin_user_id, rejected
        )
        return {"rejected_count": rejected}

    # -- orphans -----------------------------------------------------------

    @logged_operation("admin_user_id")
    def process_orphaned_staging_records(self, admin_user_id: str, dry_run: bool = False) -> dict:
        """Migrate PENDING rows left behind on formats that are already approved."""
        with get_connection() as conn:
            formats = _query_to_list(
                conn,
                """
                SELECT f.id, f.broker_name, f.broker_id, f.field_mappings,
                       COUNT(s.id) AS pending_count
                FROM broker_csv_formats f
                JOIN order_staging s ON s.broker_csv_format_id = f.id
                WHERE f.is_approved = 1 AND s.migration_status = ?
                GROUP BY f.id, f.broker_name, f.broker_id, f.field_mappings
                ORDER BY f.id
                """,
                (PENDING,),
            )

        processed = error_count = 0
        errors: list[str] = []
        affected: set[str] = set()
        logger.info(
            "Admin %s processing orphaned staging rows: %d approved formats with pending rows",
            admin_user_id,
            len(formats),
        )
        for fmt in formats:
            if dry_run:
                processed += int(fmt["pending_count"])
                continue
            try:
                with get_connection() as conn:
                    result = self._migrate_staged_orders(
                        conn,
                        fmt["id"],
                        fmt["field_mappings"],
                        get_broker_type_from_name(fmt["broker_name"]),
                        fmt["broker_id"],
                    )
            except Exception as exc:
                logger.error("Orphan processing failed for format %s: %s", fmt["id"], exc)
                errors.append(f"Format {fmt['id']}: {exc}")
                error_count += int(fmt["pending_count"])
                continue
            processed += result["migrated_count"]
            error_count += result["failed_count"]
            errors.extend(result["errors"])
            affected.update(result["affected_users"])

        if not dry_run:
            self._refresh_users(sorted(affected))
        return {
            "success": error_count == 0,
            "processed_count": processed,
            "error_count": error_count,
            "skipped_count": 0,
            "approved_formats_checked": len(formats),
            "errors": errors,
        }

    # -- stats -------------------------------------------------------------

    def get_approval_stats(self, timeframe: str = "week") -> dict:
        if timeframe not in _TIMEFRAME_DAYS:
            raise ValidationError(f"Unknown timeframe: {timeframe}", field="timeframe")
        since = fmt_ts(now_est() - timedelta(days=_TIMEFRAME_DAYS[timeframe]))
        with get_connection() as conn:
            def count(sql: str, params: tuple) -> int:
                return int(conn.execute(sql, params).fetchone()[0])

            return {
                "approved_formats": count(
                    "SELECT COUNT(*) FROM broker_csv_formats"
                    " WHERE is_approved = 1 AND approved_at >= ?",
                    (since,),
                ),
                "pending_formats": count(
                    "SELECT COUNT(*) FROM broker_csv_formats WHERE is_approved = 0", ()
                ),
                "rejected_orders": count(
                    "SELECT COUNT(*) FROM order_staging"
                    " WHERE migration_status = ? AND updated_at >= ?",
                    (REJECTED, since),
                ),
                "migrated_orders": count(
                    "SELECT COUNT(*) FROM order_staging"
                    " WHERE migration_status = ? AND migrated_at >= ?",
                    (MIGRATED, since),
                ),
                "timeframe": timeframe,
            }

    def get_pending_staging_stats(self) -> dict:
        with get_connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(s.id), COUNT(DISTINCT s.broker_csv_format_id), MIN(s.created_at)
                FROM order_staging s
                JOIN broker_csv_formats f ON f.id = s.broker_csv_format_id
                WHERE s.migration_status = ? AND f.is_approved = 1
                """,
                (PENDING,),
            ).fetchone()
        oldest = parse_ts(row[2])
        hours = (now_est() - oldest).total_seconds() / 3600 if oldest else 0.0
        return {
            "pending_count": int(row[0] or 0),
            "approved_formats_with_pending": int(row[1] or 0),
            "oldest_pending_hours": round(hours, 2),
        }


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
