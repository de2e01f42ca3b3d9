"""
Account API router - self-service account deletion.

    POST /account/delete            - request deletion (30-day grace period)
    GET  /account/deletion-status   - current state and history
    POST /account/reactivate        - cancel a pending deletion
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from src.journal_lib.accounts.deletion import AccountDeletionService
from src.journal_lib.services.data.api.auth import get_current_user_id
from src.journal_lib.services.data.api.metrics import record_deletion_step
from src.journal_lib.services.data.api.rate_limit import MUTATIONS_LIMIT, get_limiter

logger = logging.getLogger("api.account")

router = APIRouter(tags=["account"])
limiter = get_limiter()


class DeletionRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
    feedback: Optional[str] = Field(None, max_length=2000)


@router.post("/delete")
@limiter.limit(MUTATIONS_LIMIT)
def request_deletion(
    request: Request,
    body: Optional[DeletionRequest] = None,
    user_id: str = Depends(get_current_user_id),
):
    body = body or DeletionRequest()
    details = {"feedback": body.feedback} if body.feedback else None
    result = AccountDeletionService().request_deletion(
        user_id, reason=body.reason, performed_by=user_id, details=details
    )
    record_deletion_step("requested")
    return result


@router.get("/deletion-status")
def deletion_status(user_id: str = Depends(get_current_user_id)):
    return AccountDeletionService().get_deletion_status(user_id)


@router.post("/reactivate")
@limiter.limit(MUTATIONS_LIMIT)
def reactivate(request: Request, user_id: str = Depends(get_current_user_id)):
    if not AccountDeletionService().reactivate_on_login(user_id):
        raise HTTPException(status_code=409, detail="Account can no longer be reactivated")
    record_deletion_step("reactivated")
    return {"status": "active", "user_id": user_id}
