"""
Entitlement API - the decision the client entitlement cache memoizes.

GET /api/entitlement
- 200 {"entitled", "reason", "subscriber_status", "details"} for the session account
- 401 without a verified session
- 503 when identity or the subscriber store cannot be evaluated
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from gatekeeper.config.settings import get_settings
from gatekeeper.database.session import get_db_session
from gatekeeper.entitlements.errors import InfrastructureError
from gatekeeper.entitlements.service import EntitlementService
from gatekeeper.platform.identity import resolve_account_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/entitlement", tags=["entitlement"])


@router.get("")
async def get_entitlement(
    request: Request,
    db: Session = Depends(get_db_session),
):
    """Evaluate the entitlement predicate for the signed-in account."""
    try:
        account_id = resolve_account_id(request, get_settings())
    except InfrastructureError as e:
        logger.error("Session verification unavailable", extra={"error": e.message})
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)

    if account_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid session",
        )

    try:
        decision = await run_in_threadpool(EntitlementService(db).check, account_id)
    except InfrastructureError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)

    return decision.to_dict()
