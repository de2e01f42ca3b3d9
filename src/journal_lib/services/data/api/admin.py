"""
Admin API router - broker format approval and staging maintenance.

    GET  /admin/formats                       - broker CSV formats
    POST /admin/formats/{id}/approve          - approve and migrate staged rows
    POST /admin/formats/{id}/reject           - reject the format's staged rows
    POST /admin/formats/process-orphaned      - migrate rows left on approved formats
    GET  /admin/formats/stats                 - approval counts for a timeframe
    GET  /admin/formats/staging-stats         - pending staging overview
    POST /admin/formats/cleanup               - delete expired staging rows
"""

import logging
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, Field

from src.journal_lib.core.errors import JournalError
from src.journal_lib.core.models import list_broker_formats
from src.journal_lib.imports.approval import FormatApprovalService
from src.journal_lib.imports.staging import OrderStagingService
from src.journal_lib.services.data.api.auth import require_admin
from src.journal_lib.services.data.api.metrics import record_format_approval
from src.journal_lib.services.data.api.rate_limit import HEAVY_LIMIT, get_limiter

logger = logging.getLogger("api.admin")

router = APIRouter(tags=["admin"])
limiter = get_limiter()


class ApproveRequest(BaseModel):
    corrected_mappings: Optional[dict[str, Any]] = Field(
        None, description="Replacement field mappings; the stored ones when omitted"
    )
    idempotency_key: Optional[str] = Field(
        None, description="Replaying a key returns the first result"
    )


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Stored on every rejected row")


@router.get("")
def list_formats(
    approved: Optional[bool] = Query(None, description="Only approved / unapproved"),
    admin_id: str = Depends(require_admin),
):
    return {"formats": list_broker_formats(approved)}


@router.post("/process-orphaned")
@limiter.limit(HEAVY_LIMIT)
def process_orphaned(
    request: Request,
    dry_run: bool = Query(False),
    admin_id: str = Depends(require_admin),
):
    return FormatApprovalService().process_orphaned_staging_records(admin_id, dry_run=dry_run)


@router.get("/stats")
def approval_stats(
    timeframe: Literal["day", "week", "month"] = Query("week"),
    admin_id: str = Depends(require_admin),
):
    return FormatApprovalService().get_approval_stats(timeframe)


@router.get("/staging-stats")
def staging_stats(admin_id: str = Depends(require_admin)):
    return {
        **OrderStagingService().get_admin_staging_stats(),
        "orphaned": FormatApprovalService().get_pending_staging_stats(),
    }


@router.post("/cleanup")
@limiter.limit(HEAVY_LIMIT)
def cleanup(
    request: Request,
    dry_run: bool = Query(False),
    admin_id: str = Depends(require_admin),
):
    count = OrderStagingService().cleanup_expired_records(dry_run=dry_run)
    return {"dry_run": dry_run, "deleted_count": count}


@router.post("/{format_id}/approve")
@limiter.limit(HEAVY_LIMIT)
def approve_format(
    request: Request,
    format_id: int,
    body: Optional[ApproveRequest] = None,
    idempotency_key: Optional[str] = Header(None),
    admin_id: str = Depends(require_admin),
):
    """Approve a format and migrate its staged rows in one transaction.

    The idempotency key may come in the body or the ``Idempotency-Key``
    header.
    """
    body = body or ApproveRequest()
    try:
        result = FormatApprovalService().approve_format_and_migrate_orders(
            format_id,
            admin_id,
            corrected_mappings=body.corrected_mappings,
            idempotency_key=body.idempotency_key or idempotency_key,
        )
    except JournalError:
        record_format_approval(False)
        raise
    record_format_approval(result["success"], result.get("migrated_count", 0))
    return result


@router.post("/{format_id}/reject")
@limiter.limit(HEAVY_LIMIT)
def reject_format(
    request: Request,
    format_id: int,
    body: RejectRequest,
    admin_id: str = Depends(require_admin),
):
    return FormatApprovalService().reject_format(format_id, admin_id, body.reason)
