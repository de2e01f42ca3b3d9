"""
Tests for structured logging: setup, context binding and the request
context middleware.
"""

import json
import logging

import pytest
import structlog
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.journal_lib.core.logging_config import (
    JOURNAL_LOGGERS,
    bind_request_context,
    clear_request_context,
    logged_operation,
    setup_logging,
)
from src.journal_lib.services.data.main import RequestContextMiddleware


@pytest.fixture(autouse=True)
def _restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    config = structlog.get_config()
    context = structlog.contextvars.get_contextvars()
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    for name in JOURNAL_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET)
    structlog.configure(**config)
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**context)


# ===========================================================================
# setup_logging
# ===========================================================================


class TestSetupLogging:
    def test_single_handler_and_levels(self):
        setup_logging(service="maintenance", level="debug")
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)
        for name in JOURNAL_LOGGERS:
            assert logging.getLogger(name).level == logging.DEBUG
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING

    def test_service_is_bound(self):
        setup_logging(service="data-service")
        assert structlog.contextvars.get_contextvars() == {"service": "data-service"}

    def test_json_line_carries_operation_context(self, capsys):
        setup_logging(service="maintenance", level="INFO", log_format="json")

        @logged_operation("format_id")
        def approve(format_id):
            logging.getLogger("imports.approval").info("Migrated %d staged orders", 3)

        approve(12)
        event = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert event["event"] == "Migrated 3 staged orders"
        assert event["format_id"] == 12
        assert event["service"] == "maintenance"
        assert event["logger"] == "imports.approval"
        assert event["level"] == "info"


# ===========================================================================
# Context binding
# ===========================================================================


class TestLoggedOperation:
    def test_binds_named_arguments_during_call(self):
        seen = {}

        @logged_operation("format_id", "admin_user_id")
        def approve(format_id, admin_user_id, corrected_mappings=None):
            seen.update(structlog.contextvars.get_contextvars())

        approve(7, admin_user_id="admin-1", corrected_mappings={"a": "b"})
        assert seen["format_id"] == 7
        assert seen["admin_user_id"] == "admin-1"
        assert "corrected_mappings" not in seen
        assert "format_id" not in structlog.contextvars.get_contextvars()

    def test_none_values_are_skipped(self):
        seen = {}

        @logged_operation("idempotency_key")
        def approve(idempotency_key=None):
            seen.update(structlog.contextvars.get_contextvars())

        approve()
        assert "idempotency_key" not in seen

    def test_outer_context_restored_after_error(self):
        structlog.contextvars.bind_contextvars(user_id="outer")

        @logged_operation("user_id")
        def stage(user_id):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            stage("inner")
        assert structlog.contextvars.get_contextvars()["user_id"] == "outer"

    def test_wraps_methods(self):
        class Service:
            @logged_operation("format_id")
            def reject(self, format_id, reason):
                return structlog.contextvars.get_contextvars().get("format_id")

        assert Service().reject(3, "bad columns") == 3
        assert Service.reject.__name__ == "reject"


class TestRequestContext:
    def test_bind_and_clear(self):
        request_id = bind_request_context(user_id="u1")
        assert len(request_id) == 16
        assert structlog.contextvars.get_contextvars()["user_id"] == "u1"
        clear_request_context()
        bound = structlog.contextvars.get_contextvars()
        assert "request_id" not in bound
        assert "user_id" not in bound

    def test_given_request_id_kept(self):
        assert bind_request_context("req-42") == "req-42"
        assert "user_id" not in structlog.contextvars.get_contextvars()


class TestRequestContextMiddleware:
    @pytest.fixture()
    def client(self):
        app = FastAPI()
        app.add_middleware(RequestContextMiddleware)
        app.state.seen = {}

        @app.get("/ctx")
        async def ctx():
            app.state.seen = structlog.contextvars.get_contextvars()
            return {}

        return TestClient(app), app

    def test_request_id_echoed_and_bound(self, client):
        test_client, app = client
        resp = test_client.get("/ctx", headers={"X-Request-Id": "req-1", "X-User-Id": "u1"})
        assert resp.headers["x-request-id"] == "req-1"
        assert app.state.seen["request_id"] == "req-1"
        assert app.state.seen["user_id"] == "u1"

    def test_request_id_generated(self, client):
        test_client, app = client
        resp = test_client.get("/ctx")
        assert len(resp.headers["x-request-id"]) == 16
        assert app.state.seen["request_id"] == resp.headers["x-request-id"]
        assert "user_id" not in app.state.seen
