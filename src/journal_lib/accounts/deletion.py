"""
AccountDeletionService - the account deletion state machine.

    REQUESTED    +30 days  SOFT_DELETED
    SOFT_DELETED +30 days  ANONYMIZED
    REQUESTED    +90 days  HARD_DELETED (final_deletion_at)

Every transition is written to ``account_deletion_logs``.  The scheduled
job (``process_scheduled_deletions``) moves accounts along; a login
during the grace period reactivates the account.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from src.journal_lib.billing.subscriptions import (
    cancel_local_subscriptions,
    update_user_subscription_status,
)
from src.journal_lib.core.cache import get_analytics_cache
from src.journal_lib.core.errors import ConflictError, NotFoundError
from src.journal_lib.core.models import (
    _insert,
    _query_one,
    _query_to_list,
    fmt_ts,
    get_connection,
    now_est,
    now_str,
    parse_ts,
    update_user,
)

logger = logging.getLogger("accounts.deletion")

GRACE_PERIOD_DAYS = 30
ANONYMIZE_AFTER_DAYS = 30
FINAL_DELETION_DAYS = 90

REQUESTED = "REQUESTED"
SOFT_DELETED = "SOFT_DELETED"
ANONYMIZED = "ANONYMIZED"
HARD_DELETED = "HARD_DELETED"
REACTIVATED = "REACTIVATED"

SYSTEM = "system"


def _log(
    conn,
    user_id: str,
    action: str,
    reason: Optional[str] = None,
    performed_by: str = SYSTEM,
    details: Optional[dict] = None,
    scheduled_for: Optional[datetime] = None,
    completed: bool = False,
) -> None:
    now = now_str()
    _insert(
        conn,
        "account_deletion_logs",
        {
            "user_id": user_id,
            "action": action,
            "reason": reason,
            "performed_by": performed_by,
            "details": {"timestamp": now, **(details or {})},
            "scheduled_for": fmt_ts(scheduled_for),
            "completed_at": now if completed else None,
            "created_at": now,
        },
    )


def _load_user(conn, user_id: str) -> dict:
    user = _query_one(conn, "SELECT * FROM users WHERE id = ?", (user_id,))
    if user is None:
        raise NotFoundError("User not found", details={"user_id": user_id})
    return user


class AccountDeletionService:
    def __init__(self, now_func=now_est):
        self._now = now_func

    # -- request -----------------------------------------------------------

    def request_deletion(
        self,
        user_id: str,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> dict:
        now = self._now()
        grace_end = now + timedelta(days=GRACE_PERIOD_DAYS)
        final = now + timedelta(days=FINAL_DELETION_DAYS)

        with get_connection() as conn:
            user = _load_user(conn, user_id)
            if user["deleted_at"]:
                raise ConflictError(
                    "Account already deleted",
                    details={
                        "deleted_at": user["deleted_at"],
                        "can_reactivate": bool(user["can_reactivate"]),
                    },
                )
            if user["deletion_requested_at"]:
                raise ConflictError(
                    "Account deletion already requested",
                    details={"requested_at": user["deletion_requested_at"]},
                )
            update_user(
                user_id,
                conn=conn,
                deletion_requested_at=fmt_ts(now),
                final_deletion_at=fmt_ts(final),
                deletion_reason=reason,
                can_reactivate=True,
            )
            _log(
                conn,
                user_id,
                REQUESTED,
                reason=reason,
                performed_by=performed_by or user_id,
                details=details,
                scheduled_for=grace_end,
            )
            canceled = cancel_local_subscriptions(conn, user_id)
            if canceled:
                update_user_subscription_status(user_id, conn=conn)

        logger.info("User %s requested account deletion", user_id)
        return {
            "requested_at": fmt_ts(now),
            "grace_period_end": fmt_ts(grace_end),
            "final_deletion_at": fmt_ts(final),
            "can_reactivate": True,
            "subscriptions_canceled": canceled,
        }

    # -- transitions -------------------------------------------------------

    def soft_delete(
        self, user_id: str, reason: Optional[str] = None, now: Optional[datetime] = None
    ) -> None:
        """Block access while keeping data."""
        with get_connection() as conn:
            user = _load_user(conn, user_id)
            if user["deleted_at"]:
                raise ConflictError("Account already soft deleted")
            update_user(
                user_id, conn=conn, deleted_at=fmt_ts(now or self._now()), deletion_reason=reason
            )
            _log(
                conn,
                user_id,
                SOFT_DELETED,
                reason=reason,
                details={"action": "soft_delete_executed"},
            )
        logger.info("Soft deleted user %s", user_id)

    def anonymize_user_data(self, user_id: str, now: Optional[datetime] = None) -> None:
        with get_connection() as conn:
            user = _load_user(conn, user_id)
            if user["anonymized_at"]:
                return
            if not user["deleted_at"]:
                raise ConflictError("Cannot anonymize user that has not been soft deleted")

            token = uuid.uuid4().hex[:12]
            anonymous_id = f"anon_{token}"
            update_user(
                user_id,
                conn=conn,
                email=f"deleted_{token}@anonymized.local",
                name=f"Deleted User {token}",
                external_id=anonymous_id,
                anonymized_at=fmt_ts(now or self._now()),
            )
            conn.execute("DELETE FROM order_staging WHERE user_id = ?", (user_id,))
            conn.execute("DELETE FROM import_batches WHERE user_id = ?", (user_id,))
            _log(
                conn,
                user_id,
                ANONYMIZED,
                details={
                    "original_email": user["email"],
                    "anonymized_id": anonymous_id,
                    "action": "data_anonymized",
                },
            )
        logger.info("Anonymized user %s", user_id)

    def hard_delete(self, user_id: str, now: Optional[datetime] = None) -> None:
        """Permanently remove the user and everything they own."""
        with get_connection() as conn:
            user = _load_user(conn, user_id)
            final = parse_ts(user["final_deletion_at"])
            if final is None or (now or self._now()) < final:
                raise ConflictError("Cannot perform hard delete - final deletion date not reached")

            for table in (
                "payment_history",
                "subscriptions",
                "order_staging",
                "import_batches",
                "orders",
                "trades",
            ):
                conn.execute(f"DELETE FROM {table} WHERE user_id = ?", (user_id,))
            _log(
                conn,
                user_id,
                HARD_DELETED,
                details={"original_email": user["email"], "final_deletion": True},
                completed=True,
            )
            conn.execute(
                "DELETE FROM account_deletion_logs WHERE user_id = ? AND action <> ?",
                (user_id, HARD_DELETED),
            )
            conn.execute("DELETE FROM users WHERE id = ?", (user_id,))

        get_analytics_cache().invalidate_user_analytics(user_id)
        logger.info("Hard deleted user %s", user_id)

    def reactivate_on_login(self, user_id: str) -> bool:
        """Undo a pending deletion; False when the account can no longer return."""
        with get_connection() as conn:
            user = _load_user(conn, user_id)
            if not user["deletion_requested_at"] and not user["deleted_at"]:
                return True
            if user["anonymized_at"]:
                return False
            final = parse_ts(user["final_deletion_at"])
            if final is not None and self._now() > final:
                return False
            if not user["can_reactivate"]:
                return False

            update_user(
                user_id,
                conn=conn,
                deletion_requested_at=None,
                deleted_at=None,
                deletion_reason=None,
                final_deletion_at=None,
                can_reactivate=True,
            )
            _log(
                conn,
                user_id,
                REACTIVATED,
                reason="Reactivated via login",
                performed_by=user_id,
                details={"method": "login_reactivation"},
            )
        logger.info("Reactivated user %s", user_id)
        return True

    # -- queries -----------------------------------------------------------

    def is_within_grace_period(self, user_id: str) -> bool:
        with get_connection() as conn:
            user = _query_one(conn, "SELECT * FROM users WHERE id = ?", (user_id,))
        if not user or not user["deletion_requested_at"]:
            return False
        final = parse_ts(user["final_deletion_at"])
        if final is not None and self._now() > final:
            return False
        return bool(user["can_reactivate"])

    def get_deletion_status(self, user_id: str) -> dict:
        with get_connection() as conn:
            user = _load_user(conn, user_id)
            logs = _query_to_list(
                conn,
                "SELECT action, reason, performed_by, scheduled_for, created_at "
                "FROM account_deletion_logs WHERE user_id = ? ORDER BY id",
                (user_id,),
            )
        if user["anonymized_at"]:
            state = ANONYMIZED
        elif user["deleted_at"]:
            state = SOFT_DELETED
        elif user["deletion_requested_at"]:
            state = REQUESTED
        else:
            state = "ACTIVE"
        return {
            "state": state,
            "deletion_requested_at": user["deletion_requested_at"],
            "deleted_at": user["deleted_at"],
            "anonymized_at": user["anonymized_at"],
            "final_deletion_at": user["final_deletion_at"],
            "can_reactivate": bool(user["can_reactivate"]),
            "within_grace_period": self.is_within_grace_period(user_id),
            "history": logs,
        }

    # -- scheduled job -----------------------------------------------------

    def _user_ids(self, sql: str, params: tuple) -> list[str]:
        with get_connection() as conn:
            return [r["id"] for r in _query_to_list(conn, sql, params)]

    def process_scheduled_deletions(
        self, now: Optional[datetime] = None, dry_run: bool = False
    ) -> dict:
        """Advance every account whose next deletion step is due.

        A failure for one user is logged and counted; the job continues.
        """
        now = now or self._now()
        soft_cutoff = fmt_ts(now - timedelta(days=GRACE_PERIOD_DAYS))
        anonymize_cutoff = fmt_ts(now - timedelta(days=ANONYMIZE_AFTER_DAYS))

        due = {
            "soft_deleted": self._user_ids(
                "SELECT id FROM users WHERE deletion_requested_at IS NOT NULL "
                "AND deletion_requested_at <= ? AND deleted_at IS NULL",
                (soft_cutoff,),
            ),
            "anonymized": self._user_ids(
                "SELECT id FROM users WHERE deleted_at IS NOT NULL "
                "AND deleted_at <= ? AND anonymized_at IS NULL",
                (anonymize_cutoff,),
            ),
            "hard_deleted": self._user_ids(
                "SELECT id FROM users WHERE final_deletion_at IS NOT NULL "
                "AND final_deletion_at <= ?",
                (fmt_ts(now),),
            ),
        }
        actions = {
            "soft_deleted": lambda uid: self.soft_delete(
                uid, "Automatic soft delete after grace period", now
            ),
            "anonymized": lambda uid: self.anonymize_user_data(uid, now),
            "hard_deleted": lambda uid: self.hard_delete(uid, now),
        }

        counts = {step: 0 for step in due}
        counts["errors"] = 0
        for step, user_ids in due.items():
            for user_id in user_ids:
                if dry_run:
                    counts[step] += 1
                    continue
                try:
                    actions[step](user_id)
                    counts[step] += 1
                except Exception as exc:
                    counts["errors"] += 1
                    logger.error("Scheduled %s failed for user %s: %s", step, user_id, exc)

        logger.info("Scheduled deletions processed: %s", counts)
        return counts
