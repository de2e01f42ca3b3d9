"""
Billing API router.

    POST /billing/webhook            - Stripe webhook intake (public, signed)
    GET  /billing/events/{event_id}  - processing status of one event (admin)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from src.journal_lib.billing.webhooks import WebhookService
from src.journal_lib.core.errors import JournalError, SignatureVerificationError
from src.journal_lib.services.data.api.auth import require_admin
from src.journal_lib.services.data.api.metrics import record_webhook
from src.journal_lib.services.data.api.rate_limit import PUBLIC_LIMIT, get_limiter

logger = logging.getLogger("api.billing")

router = APIRouter(tags=["billing"])
limiter = get_limiter()


@router.post("/webhook")
@limiter.limit(PUBLIC_LIMIT)
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None)):
    """Verify and process one delivery.

    Signature failures return 400; handler failures return 500 so the
    provider retries the delivery.
    """
    payload = await request.body()
    try:
        result = WebhookService().process_webhook(payload, stripe_signature)
    except SignatureVerificationError:
        record_webhook("unknown", "rejected")
        raise
    except JournalError:
        record_webhook("unknown", "failed")
        raise
    except Exception as exc:
        record_webhook("unknown", "failed")
        raise HTTPException(status_code=500, detail=f"Failed to process webhook: {exc}")

    record_webhook(result["event_type"], "duplicate" if result["duplicate"] else "processed")
    return {"received": True, **result}


@router.get("/events/{event_id}")
def webhook_event_status(event_id: str, admin_id: str = Depends(require_admin)):
    return WebhookService().get_webhook_event_status(event_id)
