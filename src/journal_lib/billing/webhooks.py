"""
Stripe webhook intake.

Events are verified against ``STRIPE_WEBHOOK_SECRET`` with Stripe's
signature scheme, stored in ``webhook_events`` and dispatched to a
handler per event type.  An event already marked processed is
acknowledged without running its handler again.  A handler failure is
recorded on the event row and re-raised so the provider retries.

No outbound Stripe API calls are made: handlers work from the event
payload alone.
"""

import hashlib
import hmac
import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from src.journal_lib.billing.subscriptions import (
    map_payment_status,
    map_subscription_status,
    tier_for_price,
    update_user_subscription_status,
    upsert_subscription,
)
from src.journal_lib.core.errors import (
    NotFoundError,
    SignatureVerificationError,
    ValidationError,
)
from src.journal_lib.core.models import (
    _insert,
    _query_one,
    _update,
    fmt_ts,
    get_connection,
    now_str,
    update_user,
)

logger = logging.getLogger("billing.webhooks")

STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_WEBHOOK_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))

SIGNATURE_SCHEME = "v1"


# ---------------------------------------------------------------------------
# Signature verification
# ---------------------------------------------------------------------------


def compute_signature(payload: Union[str, bytes], timestamp: int, secret: str) -> str:
    """Hex HMAC-SHA256 of ``"{timestamp}.{payload}"`` keyed by *secret*."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def _parse_signature_header(sig_header: str) -> tuple[int, list[str]]:
    timestamp = None
    signatures = []
    for item in sig_header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureVerificationError("Unable to extract timestamp from header")
        elif key == SIGNATURE_SCHEME and value:
            signatures.append(value)
    if timestamp is None:
        raise SignatureVerificationError("Unable to extract timestamp from header")
    if not signatures:
        raise SignatureVerificationError("No signatures found with expected scheme")
    return timestamp, signatures


def construct_event(
    payload: Union[str, bytes],
    sig_header: Optional[str],
    secret: str,
    tolerance: Optional[int] = STRIPE_WEBHOOK_TOLERANCE,
    now: Optional[float] = None,
) -> dict:
    """Verify *sig_header* for *payload* and return the decoded event.

    The header has the form ``t=<unix>,v1=<hex>[,v1=<hex>...]``.  Any v1
    signature matching the expected HMAC is accepted, provided the
    timestamp is within *tolerance* seconds of *now*.
    """
    if not secret:
        raise SignatureVerificationError("Webhook secret is not configured")
    if not sig_header:
        raise SignatureVerificationError("Missing signature header")

    timestamp, signatures = _parse_signature_header(sig_header)
    expected = compute_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise SignatureVerificationError("No signatures found matching the expected signature")

    current = time.time() if now is None else now
    if tolerance and timestamp < current - tolerance:
        raise SignatureVerificationError(
            "Timestamp outside the tolerance zone", details={"timestamp": timestamp}
        )

    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise ValidationError(f"Invalid webhook payload: {exc}") from exc
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise ValidationError("Webhook payload is not an event")
    return event


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def _from_unix(value: Any) -> Optional[str]:
    if not value:
        return None
    return fmt_ts(datetime.fromtimestamp(int(value), tz=timezone.utc))


def _object_id(value: Any) -> Optional[str]:
    """Id of a field that may be a bare id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _price_id(subscription: dict) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    return _object_id((items[0] or {}).get("price"))


def _subscription_fields(subscription: dict) -> dict:
    price_id = _price_id(subscription)
    return {
        "stripe_customer_id": _object_id(subscription.get("customer")),
        "stripe_price_id": price_id,
        "tier": tier_for_price(price_id),
        "status": map_subscription_status(subscription.get("status")),
        "current_period_start": _from_unix(subscription.get("current_period_start")),
        "current_period_end": _from_unix(subscription.get("current_period_end")),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        "canceled_at": _from_unix(subscription.get("canceled_at")),
        "trial_end": _from_unix(subscription.get("trial_end")),
    }


class WebhookService:
    def __init__(self, secret: Optional[str] = None, tolerance: int = STRIPE_WEBHOOK_TOLERANCE):
        self.secret = STRIPE_WEBHOOK_SECRET if secret is None else secret
        self.tolerance = tolerance
        self._handlers: dict[str, Callable[[dict], None]] = {
            "customer.subscription.created": self.handle_subscription_created,
            "customer.subscription.updated": self.handle_subscription_updated,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "checkout.session.completed": self.handle_checkout_session_completed,
            "invoice.payment_succeeded": self.handle_invoice_payment_succeeded,
            "invoice.payment_failed": self.handle_invoice_payment_failed,
            "customer.created": self.handle_customer_created,
            "customer.updated": self.handle_customer_updated,
            "payment_intent.succeeded": self.handle_payment_intent,
            "payment_intent.payment_failed": self.handle_payment_intent,
        }

    # -- intake ------------------------------------------------------------

    def process_webhook(self, payload: Union[str, bytes], signature: Optional[str]) -> dict:
        """Verify, record and dispatch one webhook delivery.

        Returns ``{"processed": True, "event_type": ..., "duplicate": bool}``.
        """
        try:
            event = construct_event(payload, signature, self.secret, self.tolerance)
        except SignatureVerificationError as exc:
            logger.warning("Rejected webhook: %s", exc.message)
            raise

        event_id = event["id"]
        event_type = event["type"]

        with get_connection() as conn:
            existing = _query_one(
                conn,
                "SELECT id, processed FROM webhook_events WHERE stripe_event_id = ?",
                (event_id,),
            )
        if existing and existing["processed"]:
            logger.info("Webhook %s already processed, skipping", event_id)
            return {"processed": True, "event_type": event_type, "duplicate": True}

        self._save_event(event, exists=existing is not None)

        try:
            self.handle_event(event)
        except Exception as exc:
            logger.error("Webhook %s (%s) failed: %s", event_id, event_type, exc)
            with get_connection() as conn:
                _update(
                    conn, "webhook_events", "stripe_event_id", event_id, {"error": str(exc)}
                )
            raise

        with get_connection() as conn:
            _update(
                conn,
                "webhook_events",
                "stripe_event_id",
                event_id,
                {"processed": True, "processed_at": now_str(), "error": None},
            )
        logger.info("Processed webhook %s (%s)", event_id, event_type)
        return {"processed": True, "event_type": event_type, "duplicate": False}

    def _save_event(self, event: dict, exists: bool) -> None:
        data = {"event_type": event["type"], "payload": event.get("data") or {}}
        with get_connection() as conn:
            if exists:
                _update(conn, "webhook_events", "stripe_event_id", event["id"], data)
            else:
                _insert(
                    conn,
                    "webhook_events",
                    {"stripe_event_id": event["id"], "created_at": now_str(), **data},
                )

    def handle_event(self, event: dict) -> None:
        handler = self._handlers.get(event["type"])
        if handler is None:
            logger.debug("No handler for webhook type %s", event["type"])
            return
        handler((event.get("data") or {}).get("object") or {})

    def get_webhook_event_status(self, event_id: str) -> dict:
        with get_connection() as conn:
            row = _query_one(
                conn, "SELECT * FROM webhook_events WHERE stripe_event_id = ?", (event_id,)
            )
        if row is None:
            raise NotFoundError("Webhook event not found", details={"event_id": event_id})
        row["processed"] = bool(row["processed"])
        return row

    # -- subscriptions -----------------------------------------------------

    def _user_for_subscription(self, conn, subscription: dict) -> Optional[dict]:
        customer_id = _object_id(subscription.get("customer"))
        user = None
        if customer_id:
            user = _query_one(
                conn, "SELECT * FROM users WHERE stripe_customer_id = ?", (customer_id,)
            )
        metadata_user = (subscription.get("metadata") or {}).get("userId")
        if user is None and metadata_user:
            user = _query_one(conn, "SELECT * FROM users WHERE id = ?", (metadata_user,))
            if user is not None and not user["stripe_customer_id"] and customer_id:
                update_user(user["id"], conn=conn, stripe_customer_id=customer_id)
        return user

    def handle_subscription_created(self, subscription: dict) -> None:
        with get_connection() as conn:
            user = self._user_for_subscription(conn, subscription)
            if user is None:
                logger.error(
                    "No user for subscription %s (customer %s)",
                    subscription.get("id"),
                    _object_id(subscription.get("customer")),
                )
                return
            upsert_subscription(
                conn, user["id"], subscription["id"], **_subscription_fields(subscription)
            )
            update_user_subscription_status(user["id"], conn=conn)
        logger.info("Subscription %s recorded for %s", subscription["id"], user["id"])

    def handle_subscription_updated(self, subscription: dict) -> None:
        with get_connection() as conn:
            local = _query_one(
                conn,
                "SELECT user_id FROM subscriptions WHERE stripe_subscription_id = ?",
                (subscription["id"],),
            )
            if local is not None:
                user_id = local["user_id"]
            else:
                user = self._user_for_subscription(conn, subscription)
                if user is None:
                    raise NotFoundError(
                        f"Subscription {subscription['id']} not found",
                        details={"stripe_subscription_id": subscription["id"]},
                    )
                user_id = user["id"]
            upsert_subscription(
                conn, user_id, subscription["id"], **_subscription_fields(subscription)
            )
            update_user_subscription_status(user_id, conn=conn)

    def handle_subscription_deleted(self, subscription: dict) -> None:
        with get_connection() as conn:
            local = _query_one(
                conn,
                "SELECT user_id FROM subscriptions WHERE stripe_subscription_id = ?",
                (subscription["id"],),
            )
            if local is None:
                raise NotFoundError(
                    f"Subscription {subscription['id']} not found",
                    details={"stripe_subscription_id": subscription["id"]},
                )
            now = now_str()
            conn.execute(
                """
                UPDATE subscriptions SET status = 'CANCELED', canceled_at = ?, updated_at = ?
                WHERE stripe_subscription_id = ?
                """,
                (now, now, subscription["id"]),
            )
            update_user_subscription_status(local["user_id"], conn=conn)
        logger.info("Subscription %s canceled", subscription["id"])

    def handle_checkout_session_completed(self, session: dict) -> None:
        if session.get("mode") != "subscription" or not session.get("subscription"):
            return
        user_id = (session.get("metadata") or {}).get("userId")
        if not user_id:
            logger.error("Checkout session %s has no userId metadata", session.get("id"))
            return

        customer_id = _object_id(session.get("customer"))
        subscription = session["subscription"]
        with get_connection() as conn:
            user = _query_one(conn, "SELECT * FROM users WHERE id = ?", (user_id,))
            if user is None:
                logger.error(
                    "User %s not found for checkout session %s", user_id, session.get("id")
                )
                return
            if not user["stripe_customer_id"] and customer_id:
                update_user(user_id, conn=conn, stripe_customer_id=customer_id)

            # A bare id means the subscription.created event carries the details
            if not isinstance(subscription, dict):
                return
            exists = _query_one(
                conn,
                "SELECT id FROM subscriptions WHERE stripe_subscription_id = ?",
                (subscription["id"],),
            )
            if exists:
                return
            fields = _subscription_fields(subscription)
            fields["stripe_customer_id"] = customer_id or fields["stripe_customer_id"]
            upsert_subscription(conn, user_id, subscription["id"], **fields)
            update_user_subscription_status(user_id, conn=conn)
        logger.info("Checkout completed for %s", user_id)

    # -- invoices & payments -----------------------------------------------

    def handle_invoice_payment_succeeded(self, invoice: dict) -> None:
        intent = invoice.get("payment_intent")
        if not invoice.get("subscription") or not intent:
            return
        if isinstance(intent, dict):
            self._save_payment(intent, invoice_id=invoice.get("id"))
            return
        self._save_payment(
            {
                "id": intent,
                "customer": invoice.get("customer"),
                "amount": invoice.get("amount_paid") or 0,
                "currency": invoice.get("currency"),
                "status": "succeeded",
                "description": invoice.get("description"),
            },
            invoice_id=invoice.get("id"),
        )

    def handle_invoice_payment_failed(self, invoice: dict) -> None:
        subscription_id = _object_id(invoice.get("subscription"))
        if not subscription_id:
            return
        with get_connection() as conn:
            local = _query_one(
                conn,
                "SELECT user_id FROM subscriptions WHERE stripe_subscription_id = ?",
                (subscription_id,),
            )
            if local is None:
                logger.warning("Invoice failure for unknown subscription %s", subscription_id)
                return
            conn.execute(
                "UPDATE subscriptions SET status = 'PAST_DUE', updated_at = ? "
                "WHERE stripe_subscription_id = ?",
                (now_str(), subscription_id),
            )
            update_user_subscription_status(local["user_id"], conn=conn)
        logger.info("Subscription %s is past due", subscription_id)

    def handle_payment_intent(self, intent: dict) -> None:
        self._save_payment(intent)

    def _save_payment(self, intent: dict, invoice_id: Optional[str] = None) -> None:
        customer_id = _object_id(intent.get("customer"))
        if not customer_id:
            logger.error("Payment intent %s has no customer", intent.get("id"))
            return
        with get_connection() as conn:
            user = _query_one(
                conn, "SELECT id FROM users WHERE stripe_customer_id = ?", (customer_id,)
            )
            if user is None:
                logger.error("No user for customer %s (payment %s)", customer_id, intent.get("id"))
                return

            now = now_str()
            data = {
                "user_id": user["id"],
                "amount": int(intent.get("amount") or 0),
                "currency": (intent.get("currency") or "usd").lower(),
                "status": map_payment_status(intent.get("status")),
                "description": intent.get("description"),
                "updated_at": now,
            }
            if invoice_id:
                data["stripe_invoice_id"] = invoice_id
            existing = _query_one(
                conn,
                "SELECT id FROM payment_history WHERE stripe_payment_intent_id = ?",
                (intent["id"],),
            )
            if existing:
                _update(conn, "payment_history", "id", existing["id"], data)
            else:
                _insert(
                    conn,
                    "payment_history",
                    {"stripe_payment_intent_id": intent["id"], "created_at": now, **data},
                )
        logger.info("Payment %s recorded as %s", intent["id"], data["status"])

    # -- customers ---------------------------------------------------------

    def handle_customer_created(self, customer: dict) -> None:
        user_id = (customer.get("metadata") or {}).get("userId")
        if not user_id:
            logger.warning("Customer %s created without userId metadata", customer.get("id"))
            return
        with get_connection() as conn:
            user = _query_one(conn, "SELECT * FROM users WHERE id = ?", (user_id,))
            if user is None:
                logger.error("User %s not found for customer %s", user_id, customer["id"])
                return
            if user["stripe_customer_id"] and user["stripe_customer_id"] != customer["id"]:
                logger.warning(
                    "User %s already has customer %s, ignoring %s",
                    user_id,
                    user["stripe_customer_id"],
                    customer["id"],
                )
                return
            update_user(user_id, conn=conn, stripe_customer_id=customer["id"])

    def handle_customer_updated(self, customer: dict) -> None:
        with get_connection() as conn:
            user = _query_one(
                conn, "SELECT * FROM users WHERE stripe_customer_id = ?", (customer["id"],)
            )
            if user is None:
                logger.warning("No user for customer update %s", customer["id"])
                return
            email = customer.get("email")
            if not email or email == user["email"]:
                return
            owner = _query_one(conn, "SELECT id FROM users WHERE email = ?", (email,))
            if owner is not None and owner["id"] != user["id"]:
                logger.warning(
                    "Customer %s tried to take over email %s, ignoring", customer["id"], email
                )
                return
            update_user(
                user["id"], conn=conn, email=email, name=customer.get("name") or user["name"]
            )
