"""
OrderStagingService - hold CSV-derived order rows for admin review.

Rows imported against a broker format that has not been approved yet are
validated, sanitised and written to ``order_staging`` as PENDING.  Once
an admin approves the format, ``approval.FormatApprovalService`` promotes
them into ``orders``.
"""

import io
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Optional

import pandas as pd

from src.journal_lib.core.errors import (
    ConflictError,
    JournalError,
    LimitExceededError,
    NotFoundError,
    ValidationError,
)
from src.journal_lib.core.logging_config import logged_operation
from src.journal_lib.core.models import (
    _encode_value,
    _query_one,
    _query_to_list,
    fmt_ts,
    get_broker_format,
    get_connection,
    now_est,
    now_str,
    update_import_batch,
)
from src.journal_lib.imports.validator import (
    normalize_field_name,
    sanitize_json_data,
    validate_csv_row,
)

logger = logging.getLogger("imports.staging")

BATCH_SIZE = 100
MAX_STAGING_RECORDS = 50000
STAGING_RETENTION_DAYS = int(os.getenv("STAGING_RETENTION_DAYS", "30"))

# Stop once at least this many rows failed and they are the majority
MIN_ERRORS_TO_ABORT = 5

PENDING = "PENDING"
MIGRATED = "MIGRATED"
REJECTED = "REJECTED"
FAILED = "FAILED"
MIGRATION_STATUSES = (PENDING, MIGRATED, REJECTED, FAILED)

_STAGING_COLUMNS = (
    "user_id",
    "import_batch_id",
    "broker_csv_format_id",
    "raw_csv_row",
    "row_index",
    "initial_mapped_data",
    "migration_status",
    "retention_date",
    "created_at",
    "updated_at",
)


@dataclass
class StagingResult:
    success: bool
    staged_count: int
    error_count: int
    import_batch_id: int
    errors: list[str] = field(default_factory=list)
    requires_approval: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


def mapping_targets(mapping: Any) -> list[str]:
    """Target field names of one column mapping (string, ``field`` or ``fields``)."""
    if isinstance(mapping, str):
        return [normalize_field_name(mapping)]
    if isinstance(mapping, dict):
        if mapping.get("field"):
            return [normalize_field_name(mapping["field"])]
        if isinstance(mapping.get("fields"), list):
            return [normalize_field_name(f) for f in mapping["fields"]]
    return []


def apply_initial_mappings(row: dict, field_mappings: dict) -> dict:
    """Preview of *row* under *field_mappings*, values copied verbatim."""
    mapped = {}
    for column, mapping in (field_mappings or {}).items():
        value = row.get(column)
        if value is None or value == "":
            continue
        for target in mapping_targets(mapping):
            mapped[target] = value
    return mapped


def parse_csv_records(text: str) -> list[dict]:
    """Parse CSV text into row dicts; every cell is a string, blanks are dropped."""
    if not text or not text.strip():
        return []
    try:
        df = pd.read_csv(
            io.StringIO(text), dtype=str, keep_default_na=False, skipinitialspace=True
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise ValidationError(f"Unreadable CSV: {exc}") from exc
    df.columns = [str(c).strip() for c in df.columns]
    return [
        {k: v.strip() for k, v in record.items() if isinstance(v, str) and v.strip()}
        for record in df.to_dict(orient="records")
    ]


class OrderStagingService:
    def __init__(self, retention_days: int = STAGING_RETENTION_DAYS):
        self.retention_days = retention_days

    # -- staging -----------------------------------------------------------

    def _check_staging_limits(self, user_id: str) -> None:
        with get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM order_staging WHERE user_id = ? AND migration_status = ?",
                (user_id, PENDING),
            ).fetchone()
        pending = int(row[0])
        if pending >= MAX_STAGING_RECORDS:
            raise LimitExceededError(
                f"Staging limit exceeded. You have {pending} pending orders. "
                f"Maximum allowed: {MAX_STAGING_RECORDS}",
                details={"pending": pending, "limit": MAX_STAGING_RECORDS},
            )

    def _insert_staging_batch(self, rows: list[dict]) -> None:
        sql = "INSERT INTO order_staging ({}) VALUES ({})".format(
            ", ".join(_STAGING_COLUMNS), ", ".join("?" for _ in _STAGING_COLUMNS)
        )
        with get_connection() as conn:
            conn.executemany(
                sql, [tuple(_encode_value(r[c]) for c in _STAGING_COLUMNS) for r in rows]
            )

    @logged_operation("format_id", "import_batch_id", "user_id")
    def stage_orders(
        self,
        records: list[dict],
        format_id: int,
        import_batch_id: int,
        user_id: str,
    ) -> StagingResult:
        """Validate and stage *records* for an unapproved broker format.

        Row-level problems are collected as ``Row N: message``.  Anything
        that aborts the whole upload marks the import batch FAILED and is
        re-raised.
        """
        errors: list[str] = []
        staged_count = 0
        error_count = 0

        try:
            self._check_staging_limits(user_id)

            fmt = get_broker_format(format_id)
            if fmt is None:
                raise NotFoundError(f"Format {format_id} not found")
            if fmt["is_approved"]:
                raise ConflictError("Cannot stage orders for approved format")

            logger.info("Staging %d orders for format %s", len(records), format_id)
            now = now_str()
            retention = fmt_ts(now_est() + timedelta(days=self.retention_days))
            pending: list[dict] = []

            for index, record in enumerate(records):
                try:
                    validate_csv_row(record)
                    row = sanitize_json_data(record)
                except ValidationError as exc:
                    error_count += 1
                    errors.append(f"Row {index + 1}: {exc.message}")
                    if error_count >= MIN_ERRORS_TO_ABORT and error_count > len(records) * 0.5:
                        raise ValidationError("Too many validation errors. Stopping processing.")
                    continue

                pending.append(
                    {
                        "user_id": user_id,
                        "import_batch_id": import_batch_id,
                        "broker_csv_format_id": format_id,
                        "raw_csv_row": row,
                        "row_index": index,
                        "initial_mapped_data": apply_initial_mappings(
                            row, fmt["field_mappings"]
                        ),
                        "migration_status": PENDING,
                        "retention_date": retention,
                        "created_at": now,
                        "updated_at": now,
                    }
                )
                if len(pending) >= BATCH_SIZE:
                    self._insert_staging_batch(pending)
                    staged_count += len(pending)
                    pending = []

            if pending:
                self._insert_staging_batch(pending)
                staged_count += len(pending)

            update_import_batch(
                import_batch_id,
                status="PENDING",
                success_count=staged_count,
                error_count=error_count,
                errors=errors or None,
                user_review_required=True,
            )
        except Exception as exc:
            message = exc.message if isinstance(exc, JournalError) else str(exc)
            logger.error("Staging failed for batch %s: %s", import_batch_id, message)
            update_import_batch(
                import_batch_id, status="FAILED", error_count=len(records), errors=[message]
            )
            raise

        logger.info("Staged %d orders, %d errors", staged_count, error_count)
        return StagingResult(
            success=staged_count > 0,
            staged_count=staged_count,
            error_count=error_count,
            import_batch_id=import_batch_id,
            errors=errors,
        )

    # -- queries -----------------------------------------------------------

    def get_staging_status(self, user_id: str) -> dict:
        with get_connection() as conn:
            row = _query_one(
                conn,
                """
                SELECT
                    SUM(CASE WHEN migration_status = ? THEN 1 ELSE 0 END) AS pending_count,
                    COUNT(*) AS total_staged,
                    COUNT(DISTINCT CASE WHEN migration_status = ?
                          THEN broker_csv_format_id END) AS formats_pending_approval
                FROM order_staging
                WHERE user_id = ?
                """,
                (PENDING, PENDING, user_id),
            ) or {}
        return {
            "pending_count": int(row.get("pending_count") or 0),
            "total_staged": int(row.get("total_staged") or 0),
            "formats_pending_approval": int(row.get("formats_pending_approval") or 0),
        }

    def get_staged_orders(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        migration_status: Optional[str] = None,
        broker_csv_format_id: Optional[int] = None,
    ) -> dict:
        where = ["s.user_id = ?"]
        params: list = [user_id]
        if migration_status:
            if migration_status not in MIGRATION_STATUSES:
                raise ValidationError(
                    f"Unknown migration status: {migration_status}", field="migration_status"
                )
            where.append("s.migration_status = ?")
            params.append(migration_status)
        if broker_csv_format_id is not None:
            where.append("s.broker_csv_format_id = ?")
            params.append(broker_csv_format_id)
        clause = " AND ".join(where)

        with get_connection() as conn:
            orders = _query_to_list(
                conn,
                f"""
                SELECT s.*, f.format_name, f.broker_name
                FROM order_staging s
                LEFT JOIN broker_csv_formats f ON f.id = s.broker_csv_format_id
                WHERE {clause}
                ORDER BY s.created_at DESC, s.id DESC
                LIMIT ? OFFSET ?
                """,
                tuple(params) + (limit, offset),
            )
            total = int(
                conn.execute(
                    f"SELECT COUNT(*) FROM order_staging s WHERE {clause}", tuple(params)
                ).fetchone()[0]
            )
        return {"orders": orders, "total": total, "has_more": offset + limit < total}

    # -- maintenance -------------------------------------------------------

    def cleanup_expired_records(self, dry_run: bool = False) -> int:
        """Delete finished rows whose retention date has passed."""
        params = (now_str(), MIGRATED, REJECTED, FAILED)
        condition = "retention_date < ? AND migration_status IN (?, ?, ?)"
        with get_connection() as conn:
            if dry_run:
                count = int(
                    conn.execute(
                        f"SELECT COUNT(*) FROM order_staging WHERE {condition}", params
                    ).fetchone()[0]
                )
            else:
                count = conn.execute(
                    f"DELETE FROM order_staging WHERE {condition}", params
                ).rowcount
        logger.info(
            "%s %d expired staging records", "Would clean up" if dry_run else "Cleaned up", count
        )
        return count

    def get_admin_staging_stats(self) -> dict:
        with get_connection() as conn:
            per_format = _query_to_list(
                conn,
                """
                SELECT broker_csv_format_id AS format_id, COUNT(*) AS pending_count
                FROM order_staging
                WHERE migration_status = ?
                GROUP BY broker_csv_format_id
                ORDER BY broker_csv_format_id
                """,
                (PENDING,),
            )
            oldest = conn.execute(
                "SELECT MIN(created_at) FROM order_staging WHERE migration_status = ?",
                (PENDING,),
            ).fetchone()[0]
        return {
            "total_pending": sum(int(r["pending_count"]) for r in per_format),
            "formats_pending_approval": len(per_format),
            "format_details": per_format,
            "oldest_pending_date": oldest,
        }
