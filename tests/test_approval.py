"""
Tests for broker format approval, staged order migration, rejection and
orphaned staging rows.
"""

import pytest

from conftest import csv_row
from src.journal_lib.core import models
from src.journal_lib.core.cache import get_analytics_cache
from src.journal_lib.core.errors import ConflictError, NotFoundError, ValidationError
from src.journal_lib.imports.approval import (
    FormatApprovalService,
    apply_approved_mappings,
    combine_field_values,
    get_broker_type_from_name,
    infer_side,
    transform_value,
)
from src.journal_lib.imports.staging import OrderStagingService

ADMIN = "admin-1"


@pytest.fixture()
def service():
    return FormatApprovalService()


def _stage(user_id, format_id, records):
    batch = models.create_import_batch(user_id, format_id)
    return OrderStagingService().stage_orders(records, format_id, batch, user_id)


def _staging_rows(format_id):
    with models.get_connection() as conn:
        return models._query_to_list(
            conn,
            "SELECT * FROM order_staging WHERE broker_csv_format_id = ? ORDER BY id",
            (format_id,),
        )


def _mark_approved(format_id):
    with models.get_connection() as conn:
        models._update(
            conn,
            "broker_csv_formats",
            "id",
            format_id,
            {"is_approved": True, "approved_by": ADMIN, "approved_at": models.now_str()},
        )


ROUND_TRIP = [
    csv_row(side="BUY", price="150.25", time="2025-03-03 10:15:00"),
    csv_row(side="SELL", price="151.25", time="2025-03-03 11:15:00"),
]


# ===========================================================================
# Row transformation
# ===========================================================================


class TestBrokerType:
    @pytest.mark.parametrize(
        "name,broker_type",
        [
            ("Interactive Brokers", "INTERACTIVE_BROKERS"),
            ("IBKR Flex", "INTERACTIVE_BROKERS"),
            ("Charles Schwab", "CHARLES_SCHWAB"),
            ("thinkorswim", "TD_AMERITRADE"),
            ("E*TRADE", "E_TRADE"),
            ("Fidelity", "FIDELITY"),
            ("Robinhood", "ROBINHOOD"),
            ("Some Local Broker", "GENERIC_CSV"),
            ("", "GENERIC_CSV"),
        ],
    )
    def test_broker_type(self, name, broker_type):
        assert get_broker_type_from_name(name) == broker_type


class TestTransforms:
    def test_combined_columns(self):
        row = {"Date": "03/03/2025", "Time": "10:15:00"}
        mapping = {"field": "orderExecutedTime", "combinedWith": ["Time"]}
        assert combine_field_values(row, "Date", mapping) == "03/03/2025 10:15:00"

    def test_combined_skips_blank_columns(self):
        row = {"Date": "03/03/2025", "Time": ""}
        mapping = {"field": "orderExecutedTime", "combinedWith": ["Time"]}
        assert combine_field_values(row, "Date", mapping) == "03/03/2025"

    def test_transform_value(self):
        assert transform_value("aapl", {"transform": "uppercase"}) == "AAPL"
        assert transform_value("BUY", {"transform": "lowercase"}) == "buy"
        assert transform_value("1,234.5", {"transform": "number"}) == 1234.5
        assert transform_value("n/a", {"transform": "number"}) == "n/a"
        assert transform_value("03/03/2025", {"transform": "date"}) == "2025-03-03T00:00:00"
        assert transform_value("x", "symbol") == "x"

    def test_apply_approved_mappings(self):
        mappings = {
            "Symbol": {"field": "symbol", "transform": "uppercase"},
            "Date": {"field": "orderExecutedTime", "combinedWith": ["Time"]},
            "Qty": "quantity",
            "Empty": "notes",
        }
        row = {"Symbol": "msft", "Date": "03/03/2025", "Time": "10:15:00", "Qty": "5", "Empty": ""}
        assert apply_approved_mappings(row, mappings) == {
            "symbol": "MSFT",
            "order_executed_time": "2025-03-03T10:15:00",
            "order_placed_time": "2025-03-03T10:15:00",
            "quantity": "5",
        }

    def test_multi_field_mapping(self):
        mapped = apply_approved_mappings(
            {"When": "2025-03-03 10:15:00"},
            {"When": {"fields": ["orderPlacedTime", "orderExecutedTime"]}},
        )
        assert mapped["order_placed_time"] == mapped["order_executed_time"]


class TestInferSide:
    def test_valid_side_untouched(self):
        assert infer_side({"side": "BOT"}) == {"side": "BOT"}

    def test_from_action_field(self):
        assert infer_side({"action": "Bought To Open"})["side"] == "BUY"
        assert infer_side({"transaction_type": "SELL SHORT"})["side"] == "SELL"
        assert infer_side({"type": "S"})["side"] == "SELL"

    def test_from_negative_quantity(self):
        data = infer_side({"quantity": "-50"})
        assert data["side"] == "SELL"
        assert data["quantity"] == 50.0
        assert data["order_quantity"] == 50.0

    def test_from_positive_order_quantity(self):
        assert infer_side({"order_quantity": "1,000"})["side"] == "BUY"

    def test_undecidable(self):
        assert "side" not in infer_side({"symbol": "AAPL"})


# ===========================================================================
# Approval
# ===========================================================================


class TestApproveFormat:
    def test_migrates_and_builds_trades(self, service, user_id, broker_format):
        _stage(user_id, broker_format, ROUND_TRIP)
        result = service.approve_format_and_migrate_orders(broker_format, ADMIN)

        assert result["success"] is True
        assert result["format_id"] == broker_format
        assert result["migrated_count"] == 2
        assert result["failed_count"] == 0
        assert result["errors"] == []
        assert "affected_users" not in result

        fmt = models.get_broker_format(broker_format)
        assert fmt["is_approved"] == 1
        assert fmt["approved_by"] == ADMIN

        rows = _staging_rows(broker_format)
        assert all(r["migration_status"] == "MIGRATED" for r in rows)
        assert all(r["order_id"] for r in rows)

        orders = models.get_orders(user_id)
        assert [o["side"] for o in orders] == ["BUY", "SELL"]
        assert orders[0]["broker_type"] == "INTERACTIVE_BROKERS"
        assert orders[0]["broker_id"] == "interactive-brokers"
        assert orders[0]["order_executed_time"] == "2025-03-03 10:15:00"

        trades = models.get_trades(user_id, status=models.STATUS_CLOSED)
        assert len(trades) == 1
        assert trades[0]["pnl"] == 100.0

    def test_invalid_rows_fail_individually(self, service, user_id, broker_format):
        _stage(user_id, broker_format, [csv_row(), csv_row(qty="abc", time="2025-03-03 12:00:00")])
        result = service.approve_format_and_migrate_orders(broker_format, ADMIN)
        assert result["migrated_count"] == 1
        assert result["failed_count"] == 1
        assert result["errors"][0].startswith("Row 1: Validation failed: Invalid quantity")

        failed = _staging_rows(broker_format)[1]
        assert failed["migration_status"] == "FAILED"
        assert failed["retry_count"] == 1
        assert failed["processing_errors"][0].startswith("Validation failed")

    def test_duplicates_rejected(self, service, user_id, broker_format):
        _stage(user_id, broker_format, [csv_row(), csv_row()])
        result = service.approve_format_and_migrate_orders(broker_format, ADMIN)
        assert result["migrated_count"] == 1
        assert "Duplicate order exists" in result["errors"][0]

    def test_corrected_mappings_used_and_saved(self, service, user_id):
        fmt = models.create_broker_format(
            "Fidelity", "Fidelity CSV", {"Ticker": "notes", "Side": "side", "Qty": "quantity"}
        )
        _stage(
            user_id,
            fmt,
            [{"Ticker": "AAPL", "Side": "BUY", "Qty": "10", "Price": "5", "Time": "2025-03-03"}],
        )
        corrected = {
            "Ticker": "symbol",
            "Side": "side",
            "Qty": "quantity",
            "Price": "price",
            "Time": "orderExecutedTime",
        }
        result = service.approve_format_and_migrate_orders(fmt, ADMIN, corrected_mappings=corrected)
        assert result["migrated_count"] == 1
        assert models.get_broker_format(fmt)["field_mappings"] == corrected
        assert models.get_orders(user_id)[0]["broker_type"] == "FIDELITY"

    def test_already_approved(self, service, broker_format):
        service.approve_format_and_migrate_orders(broker_format, ADMIN)
        with pytest.raises(ConflictError):
            service.approve_format_and_migrate_orders(broker_format, ADMIN)

    def test_unknown_format(self, service):
        with pytest.raises(NotFoundError):
            service.approve_format_and_migrate_orders(4242, ADMIN)

    def test_idempotent_retry_returns_first_result(self, service, user_id, broker_format):
        _stage(user_id, broker_format, ROUND_TRIP)
        first = service.approve_format_and_migrate_orders(
            broker_format, ADMIN, idempotency_key="approve-1"
        )
        again = service.approve_format_and_migrate_orders(
            broker_format, ADMIN, idempotency_key="approve-1"
        )
        assert again == first
        assert len(models.get_orders(user_id)) == 2

    def test_failed_attempt_recorded_under_key(self, service):
        with pytest.raises(NotFoundError):
            service.approve_format_and_migrate_orders(4242, ADMIN, idempotency_key="approve-2")
        recorded = service.approve_format_and_migrate_orders(
            4242, ADMIN, idempotency_key="approve-2"
        )
        assert recorded["success"] is False
        assert recorded["errors"] == ["Format 4242 not found"]

    def test_invalidates_cached_analytics(self, service, user_id, broker_format):
        cache = get_analytics_cache()
        cache.set_quick_stats(user_id, {"total_trades": 0})
        _stage(user_id, broker_format, ROUND_TRIP)
        service.approve_format_and_migrate_orders(broker_format, ADMIN)
        assert cache.get_quick_stats(user_id) is None


class TestRejectFormat:
    def test_pending_rows_rejected(self, service, user_id, broker_format):
        _stage(user_id, broker_format, ROUND_TRIP)
        assert service.reject_format(broker_format, ADMIN, "Wrong columns") == {
            "rejected_count": 2
        }
        rows = _staging_rows(broker_format)
        assert all(r["migration_status"] == "REJECTED" for r in rows)
        assert rows[0]["processing_errors"] == ["Wrong columns"]
        assert models.get_broker_format(broker_format)["is_approved"] == 0

    def test_unknown_format(self, service):
        with pytest.raises(NotFoundError):
            service.reject_format(4242, ADMIN, "nope")


# ===========================================================================
# Orphans & stats
# ===========================================================================


class TestOrphanedRecords:
    def test_dry_run_counts_only(self, service, user_id, broker_format):
        _stage(user_id, broker_format, ROUND_TRIP)
        _mark_approved(broker_format)

        result = service.process_orphaned_staging_records(ADMIN, dry_run=True)
        assert result["processed_count"] == 2
        assert result["approved_formats_checked"] == 1
        assert all(r["migration_status"] == "PENDING" for r in _staging_rows(broker_format))

    def test_migrates_orphans(self, service, user_id, broker_format):
        _stage(user_id, broker_format, ROUND_TRIP)
        _mark_approved(broker_format)

        result = service.process_orphaned_staging_records(ADMIN)
        assert result["success"] is True
        assert result["processed_count"] == 2
        assert result["error_count"] == 0
        assert all(r["migration_status"] == "MIGRATED" for r in _staging_rows(broker_format))
        assert len(models.get_trades(user_id, status=models.STATUS_CLOSED)) == 1

    def test_unapproved_formats_ignored(self, service, user_id, broker_format):
        _stage(user_id, broker_format, ROUND_TRIP)
        result = service.process_orphaned_staging_records(ADMIN)
        assert result["approved_formats_checked"] == 0
        assert result["processed_count"] == 0

    def test_pending_staging_stats(self, service, user_id, broker_format):
        assert service.get_pending_staging_stats() == {
            "pending_count": 0,
            "approved_formats_with_pending": 0,
            "oldest_pending_hours": 0.0,
        }
        _stage(user_id, broker_format, ROUND_TRIP)
        _mark_approved(broker_format)
        stats = service.get_pending_staging_stats()
        assert stats["pending_count"] == 2
        assert stats["approved_formats_with_pending"] == 1
        assert stats["oldest_pending_hours"] >= 0


class TestApprovalStats:
    def test_counts(self, service, user_id, broker_format):
        pending_fmt = models.create_broker_format("Robinhood", "RH", {"Symbol": "symbol"})
        _stage(user_id, pending_fmt, [csv_row()])
        service.reject_format(pending_fmt, ADMIN, "bad")

        _stage(user_id, broker_format, ROUND_TRIP)
        service.approve_format_and_migrate_orders(broker_format, ADMIN)

        stats = service.get_approval_stats("week")
        assert stats == {
            "approved_formats": 1,
            "pending_formats": 1,
            "rejected_orders": 1,
            "migrated_orders": 2,
            "timeframe": "week",
        }

    def test_unknown_timeframe(self, service):
        with pytest.raises(ValidationError):
            service.get_approval_stats("decade")
