"""
Authentication for the journal data-service.

Two layers:

* ``require_api_key`` - shared secret between the front-end and this
  service.  Set ``API_KEY`` in the environment; when it is unset or
  empty, authentication is disabled so local development and tests work
  without ceremony.  Clients send it via the ``X-API-Key`` header (or the
  ``api_key`` query parameter as a fallback).

* ``get_current_user_id`` / ``require_admin`` - the trusted front-end
  names the acting user with the ``X-User-Id`` header.  Admin routes
  accept either ``ADMIN_API_KEY`` in ``X-Admin-Key`` or a user whose role
  is ``ADMIN``.

``/health``, ``/metrics/prometheus`` and the Stripe webhook are public;
the webhook authenticates itself with its signature.
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader, APIKeyQuery

from src.journal_lib.core.models import ROLE_ADMIN, get_user

logger = logging.getLogger("api.auth")

_API_KEY: str = os.getenv("API_KEY", "").strip()
_ADMIN_API_KEY: str = os.getenv("ADMIN_API_KEY", "").strip()

_header_scheme = APIKeyHeader(name="X-API-Key", auto_error=False)
_query_scheme = APIKeyQuery(name="api_key", auto_error=False)

# Paths that are always accessible without an API key.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/",
        "/health",
        "/metrics/prometheus",
        "/billing/webhook",
        "/docs",
        "/openapi.json",
        "/redoc",
    }
)


def _is_public(path: str) -> bool:
    return path.rstrip("/") in _PUBLIC_PATHS or path in _PUBLIC_PATHS


async def require_api_key(
    request: Request,
    header_key: Optional[str] = Security(_header_scheme),
    query_key: Optional[str] = Security(_query_scheme),
) -> Optional[str]:
    """FastAPI dependency that enforces API key authentication.

    Returns the validated key (or ``None`` when auth is disabled or the
    path is public).  Raises ``HTTPException(403)`` otherwise.
    """
    if not _API_KEY:
        return None

    if _is_public(request.url.path):
        return None

    provided = header_key or query_key

    if not provided:
        logger.warning(
            "Unauthenticated request blocked: %s %s",
            request.method,
            request.url.path,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing API key. Supply via X-API-Key header or api_key query param.",
        )

    # Constant-time comparison to prevent timing attacks
    if not secrets.compare_digest(provided, _API_KEY):
        logger.warning(
            "Invalid API key from %s for %s %s",
            request.client.host if request.client else "unknown",
            request.method,
            request.url.path,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key.",
        )

    return provided


def is_auth_enabled() -> bool:
    """Return ``True`` if API key authentication is active."""
    return bool(_API_KEY)


# ---------------------------------------------------------------------------
# Acting user
# ---------------------------------------------------------------------------


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """The user named by ``X-User-Id``; 401 when absent, 404 when unknown."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header.",
        )
    if get_user(x_user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")
    return x_user_id


def require_admin(
    x_admin_key: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
) -> str:
    """Return the acting admin's id (``"admin-key"`` for key-based access)."""
    if _ADMIN_API_KEY and x_admin_key and secrets.compare_digest(x_admin_key, _ADMIN_API_KEY):
        return x_user_id or "admin-key"

    if x_user_id:
        user = get_user(x_user_id)
        if user is not None and user["role"] == ROLE_ADMIN:
            return x_user_id

    logger.warning("Admin access denied for user %s", x_user_id or "anonymous")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required.")
