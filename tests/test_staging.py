"""
Tests for OrderStagingService: staging uploads, listing and retention cleanup.
"""

import pytest

from conftest import csv_row
from src.journal_lib.core import models
from src.journal_lib.core.errors import (
    ConflictError,
    LimitExceededError,
    NotFoundError,
    ValidationError,
)
from src.journal_lib.imports import staging
from src.journal_lib.imports.staging import (
    OrderStagingService,
    apply_initial_mappings,
    mapping_targets,
    parse_csv_records,
)


@pytest.fixture()
def service():
    return OrderStagingService()


@pytest.fixture()
def batch_id(user_id, broker_format):
    return models.create_import_batch(user_id, broker_format, file_name="ib.csv")


def _rows(n):
    return [csv_row(symbol=f"SYM{i}") for i in range(n)]


def _staging_rows(user_id):
    with models.get_connection() as conn:
        return models._query_to_list(
            conn, "SELECT * FROM order_staging WHERE user_id = ? ORDER BY id", (user_id,)
        )


def _set_staging(row_id, **fields):
    with models.get_connection() as conn:
        models._update(conn, "order_staging", "id", row_id, fields)


# ===========================================================================
# Pure helpers
# ===========================================================================


class TestMappingHelpers:
    def test_mapping_targets(self):
        assert mapping_targets("orderExecutedTime") == ["order_executed_time"]
        assert mapping_targets({"field": "limitPrice"}) == ["limit_price"]
        assert mapping_targets({"fields": ["orderPlacedTime", "orderExecutedTime"]}) == [
            "order_placed_time",
            "order_executed_time",
        ]
        assert mapping_targets({"transform": "uppercase"}) == []
        assert mapping_targets(5) == []

    def test_initial_mappings_copy_values_verbatim(self):
        mapped = apply_initial_mappings(
            {"Symbol": "aapl", "Qty": "100", "Note": "", "Unmapped": "x"},
            {"Symbol": "symbol", "Qty": "quantity", "Note": "notes"},
        )
        assert mapped == {"symbol": "aapl", "quantity": "100"}

    def test_parse_csv_records(self):
        text = "Symbol, Side ,Qty\nAAPL, BUY,100\nMSFT,,50\n"
        assert parse_csv_records(text) == [
            {"Symbol": "AAPL", "Side": "BUY", "Qty": "100"},
            {"Symbol": "MSFT", "Qty": "50"},
        ]

    def test_parse_empty_csv(self):
        assert parse_csv_records("") == []
        assert parse_csv_records("   \n") == []

    def test_parse_broken_csv(self):
        with pytest.raises(ValidationError):
            parse_csv_records("a,b\n1,2\n1,2,3,4\n")


# ===========================================================================
# Staging
# ===========================================================================


class TestStageOrders:
    def test_stages_valid_rows(self, service, user_id, broker_format, batch_id):
        result = service.stage_orders(_rows(3), broker_format, batch_id, user_id)
        assert result.success is True
        assert result.staged_count == 3
        assert result.error_count == 0
        assert result.requires_approval is True
        assert result.to_dict()["import_batch_id"] == batch_id

        rows = _staging_rows(user_id)
        assert [r["row_index"] for r in rows] == [0, 1, 2]
        assert all(r["migration_status"] == "PENDING" for r in rows)
        assert rows[0]["raw_csv_row"]["Symbol"] == "SYM0"
        assert rows[0]["initial_mapped_data"] == {
            "symbol": "SYM0",
            "side": "BUY",
            "quantity": "100",
            "price": "150.25",
            "order_executed_time": "2025-03-03 10:15:00",
        }
        assert rows[0]["retention_date"] > rows[0]["created_at"]

        batch = models.get_import_batch(batch_id)
        assert batch["status"] == "PENDING"
        assert batch["success_count"] == 3
        assert batch["user_review_required"] == 1

    def test_rows_are_sanitised(self, service, user_id, broker_format, batch_id):
        row = dict(csv_row(), Note="${danger}", __proto__="x")
        service.stage_orders([row], broker_format, batch_id, user_id)
        raw = _staging_rows(user_id)[0]["raw_csv_row"]
        assert raw["Note"] == "danger"
        assert "__proto__" not in raw

    def test_bad_rows_collected(self, service, user_id, broker_format, batch_id):
        records = [csv_row(), {}, csv_row(symbol="MSFT")]
        result = service.stage_orders(records, broker_format, batch_id, user_id)
        assert result.staged_count == 2
        assert result.error_count == 1
        assert result.errors == ["Row 2: CSV row cannot be empty"]
        assert models.get_import_batch(batch_id)["errors"] == ["Row 2: CSV row cannot be empty"]

    def test_too_many_errors_aborts(self, service, user_id, broker_format, batch_id):
        records = [csv_row()] + [{} for _ in range(5)]
        with pytest.raises(ValidationError, match="Too many validation errors"):
            service.stage_orders(records, broker_format, batch_id, user_id)
        batch = models.get_import_batch(batch_id)
        assert batch["status"] == "FAILED"
        assert batch["error_count"] == 6

    def test_large_upload_is_batched(self, service, user_id, broker_format, batch_id, monkeypatch):
        monkeypatch.setattr(staging, "BATCH_SIZE", 2)
        result = service.stage_orders(_rows(5), broker_format, batch_id, user_id)
        assert result.staged_count == 5
        assert len(_staging_rows(user_id)) == 5

    def test_unknown_format(self, service, user_id, batch_id):
        with pytest.raises(NotFoundError):
            service.stage_orders(_rows(1), 9999, batch_id, user_id)
        assert models.get_import_batch(batch_id)["status"] == "FAILED"

    def test_approved_format_rejected(self, service, user_id, batch_id):
        approved = models.create_broker_format(
            "Schwab", "Schwab CSV", {"Symbol": "symbol"}, is_approved=True
        )
        with pytest.raises(ConflictError):
            service.stage_orders(_rows(1), approved, batch_id, user_id)

    def test_pending_limit(self, service, user_id, broker_format, batch_id, monkeypatch):
        monkeypatch.setattr(staging, "MAX_STAGING_RECORDS", 2)
        service.stage_orders(_rows(2), broker_format, batch_id, user_id)
        with pytest.raises(LimitExceededError) as exc:
            service.stage_orders(_rows(1), broker_format, batch_id, user_id)
        assert exc.value.details == {"pending": 2, "limit": 2}


# ===========================================================================
# Queries
# ===========================================================================


class TestQueries:
    def test_status(self, service, user_id, broker_format, batch_id):
        assert service.get_staging_status(user_id) == {
            "pending_count": 0,
            "total_staged": 0,
            "formats_pending_approval": 0,
        }
        service.stage_orders(_rows(3), broker_format, batch_id, user_id)
        _set_staging(_staging_rows(user_id)[0]["id"], migration_status="MIGRATED")
        assert service.get_staging_status(user_id) == {
            "pending_count": 2,
            "total_staged": 3,
            "formats_pending_approval": 1,
        }

    def test_staged_orders_paging(self, service, user_id, broker_format, batch_id):
        service.stage_orders(_rows(3), broker_format, batch_id, user_id)
        page = service.get_staged_orders(user_id, limit=2)
        assert page["total"] == 3
        assert page["has_more"] is True
        assert len(page["orders"]) == 2
        assert page["orders"][0]["row_index"] == 2
        assert page["orders"][0]["format_name"] == "IB Activity Statement"

        last = service.get_staged_orders(user_id, limit=2, offset=2)
        assert last["has_more"] is False
        assert len(last["orders"]) == 1

    def test_staged_orders_filters(self, service, user_id, broker_format, batch_id):
        service.stage_orders(_rows(2), broker_format, batch_id, user_id)
        assert service.get_staged_orders(user_id, migration_status="MIGRATED")["total"] == 0
        assert service.get_staged_orders(user_id, broker_csv_format_id=broker_format)["total"] == 2
        assert service.get_staged_orders(user_id, broker_csv_format_id=9999)["total"] == 0
        with pytest.raises(ValidationError):
            service.get_staged_orders(user_id, migration_status="LOST")

    def test_other_users_rows_hidden(self, service, user_id, broker_format, batch_id):
        service.stage_orders(_rows(2), broker_format, batch_id, user_id)
        other = models.create_user("other@example.com")
        assert service.get_staged_orders(other)["total"] == 0

    def test_admin_stats(self, service, user_id, broker_format, batch_id):
        service.stage_orders(_rows(2), broker_format, batch_id, user_id)
        stats = service.get_admin_staging_stats()
        assert stats["total_pending"] == 2
        assert stats["formats_pending_approval"] == 1
        assert stats["format_details"] == [{"format_id": broker_format, "pending_count": 2}]
        assert stats["oldest_pending_date"] is not None


class TestCleanup:
    def test_only_expired_finished_rows_removed(self, service, user_id, broker_format, batch_id):
        service.stage_orders(_rows(4), broker_format, batch_id, user_id)
        rows = _staging_rows(user_id)
        past = "2000-01-01 00:00:00"
        _set_staging(rows[0]["id"], migration_status="MIGRATED", retention_date=past)
        _set_staging(rows[1]["id"], migration_status="REJECTED", retention_date=past)
        # Pending rows are kept even when expired
        _set_staging(rows[2]["id"], retention_date=past)
        # Finished but still within retention
        _set_staging(rows[3]["id"], migration_status="FAILED")

        assert service.cleanup_expired_records(dry_run=True) == 2
        assert len(_staging_rows(user_id)) == 4

        assert service.cleanup_expired_records() == 2
        remaining = [r["id"] for r in _staging_rows(user_id)]
        assert remaining == [rows[2]["id"], rows[3]["id"]]
