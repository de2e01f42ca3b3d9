"""
Local mirror of provider subscriptions and the user tier derived from it.
"""

import logging
import os
from typing import Optional

from src.journal_lib.core.models import (
    TIER_FREE,
    TIER_PREMIUM,
    _insert,
    _query_one,
    _update,
    get_connection,
    now_str,
    update_user,
)

logger = logging.getLogger("billing.subscriptions")

STRIPE_PREMIUM_PRICE_ID = os.getenv("STRIPE_PREMIUM_PRICE_ID", "")

SUBSCRIPTION_STATUS_MAP = {
    "active": "ACTIVE",
    "canceled": "CANCELED",
    "past_due": "PAST_DUE",
    "unpaid": "UNPAID",
    "trialing": "TRIALING",
    "incomplete": "INACTIVE",
    "incomplete_expired": "INACTIVE",
    "paused": "INACTIVE",
}

PAYMENT_STATUS_MAP = {
    "succeeded": "SUCCEEDED",
    "pending": "PENDING",
    "requires_confirmation": "PENDING",
    "requires_action": "PENDING",
    "processing": "PENDING",
    "requires_capture": "PENDING",
    "requires_payment_method": "FAILED",
    "canceled": "CANCELED",
}

# Statuses that grant the subscription's tier
ENTITLED_STATUSES = ("ACTIVE", "TRIALING")
CANCELLABLE_STATUSES = ("ACTIVE", "TRIALING", "PAST_DUE")


def map_subscription_status(status: Optional[str]) -> str:
    return SUBSCRIPTION_STATUS_MAP.get((status or "").lower(), "INACTIVE")


def map_payment_status(status: Optional[str]) -> str:
    return PAYMENT_STATUS_MAP.get((status or "").lower(), "PENDING")


def tier_for_price(price_id: Optional[str]) -> str:
    if price_id and STRIPE_PREMIUM_PRICE_ID and price_id == STRIPE_PREMIUM_PRICE_ID:
        return TIER_PREMIUM
    return TIER_FREE


def upsert_subscription(conn, user_id: str, stripe_subscription_id: str, **fields) -> None:
    """Insert or update the local row for *stripe_subscription_id*."""
    now = now_str()
    existing = _query_one(
        conn,
        "SELECT id FROM subscriptions WHERE stripe_subscription_id = ?",
        (stripe_subscription_id,),
    )
    fields["updated_at"] = now
    if existing:
        _update(conn, "subscriptions", "id", existing["id"], {"user_id": user_id, **fields})
        return
    _insert(
        conn,
        "subscriptions",
        {
            "user_id": user_id,
            "stripe_subscription_id": stripe_subscription_id,
            "created_at": now,
            **fields,
        },
    )


def _sync_user_tier(conn, user_id: str) -> tuple[str, str]:
    row = _query_one(
        conn,
        """
        SELECT tier, status FROM subscriptions
        WHERE user_id = ? AND status IN (?, ?)
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        """,
        (user_id, *ENTITLED_STATUSES),
    )
    tier, status = (row["tier"], row["status"]) if row else (TIER_FREE, "INACTIVE")
    update_user(user_id, conn=conn, subscription_tier=tier, subscription_status=status)
    return tier, status


def update_user_subscription_status(user_id: str, conn=None) -> tuple[str, str]:
    """Set the user's tier / status from their newest entitled subscription.

    Returns ``(tier, status)``; no entitled subscription means FREE / INACTIVE.
    """
    if conn is not None:
        return _sync_user_tier(conn, user_id)
    with get_connection() as own:
        return _sync_user_tier(own, user_id)


def cancel_local_subscriptions(conn, user_id: str) -> int:
    """Mark the user's live subscriptions CANCELED; returns how many changed."""
    now = now_str()
    count = conn.execute(
        """
        UPDATE subscriptions SET status = 'CANCELED', canceled_at = ?, updated_at = ?
        WHERE user_id = ? AND status IN (?, ?, ?)
        """,
        (now, now, user_id, *CANCELLABLE_STATUSES),
    ).rowcount
    if count:
        logger.info("Canceled %d local subscriptions for %s", count, user_id)
    return count
