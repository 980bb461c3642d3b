"""
Billing provider webhook handlers.

SECURITY: When BILLING_WEBHOOK_TOKEN is configured, every delivery MUST carry
the same value in the access token header (asaas-access-token by default).
The token is checked before the body is parsed or the database touched.

Response policy:
- 200 {"received": true, ...} once authenticated and parsed, whether or not
  a subscriber changed (the provider must not retry ignored events)
- 401 bad token, 400 unparsable body
- 500 internal fault; the transaction is rolled back and the provider retries
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from gatekeeper.config.settings import get_settings
from gatekeeper.database.session import get_db_session
from gatekeeper.entitlements.errors import (
    AuthenticationError,
    NotFoundError,
    PayloadValidationError,
)
from gatekeeper.services.billing_webhook_handler import BillingWebhookHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks/billing", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    processed: bool = False
    message: str = "Webhook processed"


class ReplayRequest(BaseModel):
    """Body of the development replay endpoint."""
    subscriptionId: Optional[str] = None
    event: str = "PAYMENT_CONFIRMED"


@router.post("", response_model=WebhookResponse)
async def receive_billing_event(
    request: Request,
    db: Session = Depends(get_db_session),
):
    """
    Handle one lifecycle event from the billing provider.

    Payment events correlate on payment.subscription (falling back to
    payment.externalReference); subscription events on subscription.id
    (falling back to subscription.externalReference).
    """
    settings = get_settings()
    handler = BillingWebhookHandler(db, settings=settings)
    supplied_token = request.headers.get(settings.webhook_token_header)

    try:
        handler.authenticate(supplied_token)
    except AuthenticationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.message)

    body = await request.body()
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Invalid JSON in billing webhook body")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")

    try:
        result = await run_in_threadpool(handler.handle_event, payload, supplied_token)
    except AuthenticationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.message)
    except PayloadValidationError as e:
        logger.warning("Invalid billing webhook payload", extra={"error": e.message})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except Exception as e:
        logger.error(
            "Billing webhook processing failed",
            extra={"error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process webhook",
        )

    return WebhookResponse(**result.to_response())


@router.post("/test")
async def replay_billing_event(
    request: Request,
    payload: Optional[ReplayRequest] = None,
    db: Session = Depends(get_db_session),
):
    """
    Development aid: apply a synthetic event to a billing subscription.

    Served only when ENV is explicitly development or test. When a shared
    secret is configured the caller must present it, as for real deliveries.
    Bypasses the processed-event ledger.
    """
    settings = get_settings()
    if not settings.replay_enabled:
        logger.warning(
            "Billing replay refused outside development",
            extra={"environment": settings.environment},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only available in development",
        )

    handler = BillingWebhookHandler(db, settings=settings)
    try:
        handler.authenticate(request.headers.get(settings.webhook_token_header))
    except AuthenticationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.message)

    payload = payload or ReplayRequest()
    if not payload.subscriptionId:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="subscriptionId is required",
        )

    try:
        result = await run_in_threadpool(
            handler.replay_for_subscription, payload.subscriptionId, payload.event
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)

    return {
        "success": True,
        "processed": result.processed,
        "message": result.message,
        "subscriber": {
            "id": result.subscriber_id,
            "status": result.new_status,
        },
    }
