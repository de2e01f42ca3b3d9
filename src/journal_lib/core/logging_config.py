"""
Logging for the trading journal services.

``setup_logging()`` runs once per process: at data-service import and in
``scripts/run_maintenance.py``.  Service modules keep plain stdlib
loggers (``logging.getLogger("imports.approval")``); their records are
rendered by structlog along with the context bound for the current
request or job::

    @logged_operation("format_id", "admin_user_id")
    def approve_format_and_migrate_orders(self, format_id, admin_user_id, ...):
        logger.info("Migrated %d staged orders", 340)

    # 2025-06-01T14:23:01Z [info] Migrated 340 staged orders
    #     format_id=12 admin_user_id=9f2c... request_id=4be1... service=data-service

``LOG_FORMAT=json`` emits one JSON object per line.
"""

from __future__ import annotations

import functools
import inspect
import logging
import os
import sys
import uuid
from typing import Any, Callable, Optional

import structlog

# Loggers created under src/journal_lib, set to the service level.
JOURNAL_LOGGERS = (
    "accounts",
    "analytics",
    "api",
    "billing",
    "cache",
    "data_service",
    "imports",
    "maintenance",
    "models",
)

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine", "redis")


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty(), pad_event_to=35)


def setup_logging(
    *,
    service: str = "journal",
    level: Optional[str] = None,
    log_format: Optional[str] = None,
) -> None:
    """Route structlog and stdlib logging through one stderr handler.

    *level* and *log_format* fall back to ``LOG_LEVEL`` (``INFO``) and
    ``LOG_FORMAT`` (``console``).  *service* is bound to every event.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_format = (log_format or os.getenv("LOG_FORMAT", "console")).lower()
    numeric_level = getattr(logging, level, logging.INFO)

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(log_format),
            ],
            foreign_pre_chain=pre_chain,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.WARNING)

    for name in JOURNAL_LOGGERS:
        logging.getLogger(name).setLevel(numeric_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service)


def get_logger(name: Optional[str] = None, **initial_binds: Any) -> structlog.stdlib.BoundLogger:
    log = structlog.get_logger(name)
    return log.bind(**initial_binds) if initial_binds else log


# ---------------------------------------------------------------------------
# Context binding
# ---------------------------------------------------------------------------


def bind_request_context(
    request_id: Optional[str] = None, user_id: Optional[str] = None
) -> str:
    """Bind the request id (generated when absent) and acting user.

    Returns the request id.  Pair with ``clear_request_context()``.
    """
    request_id = request_id or uuid.uuid4().hex[:16]
    binds = {"request_id": request_id}
    if user_id:
        binds["user_id"] = user_id
    structlog.contextvars.bind_contextvars(**binds)
    return request_id


def clear_request_context() -> None:
    structlog.contextvars.unbind_contextvars("request_id", "user_id")


def logged_operation(*arg_names: str) -> Callable:
    """Bind the named arguments of each call to the logging context.

    Values are unbound again when the call returns or raises, so a
    nested operation only adds its own keys for its own duration.
    """

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            bound = signature.bind_partial(*args, **kwargs).arguments
            binds = {name: bound[name] for name in arg_names if bound.get(name) is not None}
            with structlog.contextvars.bound_contextvars(**binds):
                return func(*args, **kwargs)

        return wrapper

    return decorator
