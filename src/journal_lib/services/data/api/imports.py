"""
CSV import API router - staging rows for unapproved broker formats.

    POST /imports/stage           - stage parsed records or raw CSV text
    GET  /imports/status          - the caller's staging counts
    GET  /imports/staged          - paginated staged rows
    GET  /imports/batches/{id}    - one import batch
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from src.journal_lib.core.errors import ValidationError
from src.journal_lib.core.models import create_import_batch, get_import_batch
from src.journal_lib.imports.staging import (
    MIGRATION_STATUSES,
    OrderStagingService,
    parse_csv_records,
)
from src.journal_lib.services.data.api.auth import get_current_user_id
from src.journal_lib.services.data.api.metrics import record_staging
from src.journal_lib.services.data.api.rate_limit import MUTATIONS_LIMIT, get_limiter

logger = logging.getLogger("api.imports")

router = APIRouter(tags=["imports"])
limiter = get_limiter()


class StageRequest(BaseModel):
    """Either ``records`` (already parsed rows) or ``csv_text``."""

    format_id: int = Field(..., description="Broker CSV format the rows were exported with")
    records: Optional[list[dict[str, Any]]] = Field(None, description="Parsed CSV rows")
    csv_text: Optional[str] = Field(None, description="Raw CSV file contents")
    file_name: Optional[str] = Field(None, description="Original upload name")


@router.post("/stage")
@limiter.limit(MUTATIONS_LIMIT)
def stage_orders(
    request: Request, body: StageRequest, user_id: str = Depends(get_current_user_id)
):
    """Validate and stage rows until an admin approves the format.

    Row-level problems come back in ``errors``; a failure of the whole
    upload marks the import batch FAILED and returns the error status.
    """
    if (body.records is None) == (body.csv_text is None):
        raise ValidationError("Provide exactly one of records or csv_text", field="records")
    records = body.records if body.records is not None else parse_csv_records(body.csv_text)
    if not records:
        raise ValidationError("No rows to import", field="records")

    batch_id = create_import_batch(
        user_id,
        broker_csv_format_id=body.format_id,
        file_name=body.file_name,
        total_records=len(records),
    )
    result = OrderStagingService().stage_orders(records, body.format_id, batch_id, user_id)
    record_staging(result.staged_count, result.error_count)
    return result.to_dict()


@router.get("/status")
def staging_status(user_id: str = Depends(get_current_user_id)):
    try:
        return OrderStagingService().get_staging_status(user_id)
    except Exception as exc:
        raise HTTPException(status_code=500, detail=f"Failed to load staging status: {exc}")


@router.get("/staged")
def staged_orders(
    user_id: str = Depends(get_current_user_id),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    migration_status: Optional[str] = Query(
        None, description=f"One of {', '.join(MIGRATION_STATUSES)}"
    ),
    format_id: Optional[int] = Query(None, description="Only rows of this broker format"),
):
    return OrderStagingService().get_staged_orders(
        user_id,
        limit=limit,
        offset=offset,
        migration_status=migration_status,
        broker_csv_format_id=format_id,
    )


@router.get("/batches/{batch_id}")
def import_batch(batch_id: int, user_id: str = Depends(get_current_user_id)):
    batch = get_import_batch(batch_id)
    if batch is None or batch["user_id"] != user_id:
        raise HTTPException(status_code=404, detail=f"Import batch {batch_id} not found")
    batch["user_review_required"] = bool(batch["user_review_required"])
    return batch
