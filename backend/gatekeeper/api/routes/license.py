"""
License verification API for client integrations.

POST /api/license/verify {email, domain, api_key?}
- 200 {"status": "active", "data": {email, domain, expires_at, verified_at}}
- 403 {"status": "invalid", "message": ..., "subscriber_status"?: ...}
- 400 missing email/domain or unparsable body
- 503 {"status": "error"} subscriber store unavailable
- 500 unexpected fault
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from gatekeeper.database.session import get_db_session
from gatekeeper.entitlements.errors import InfrastructureError, ValidationError
from gatekeeper.platform.identity import caller_ip, caller_user_agent
from gatekeeper.services.license_verifier import LicenseVerifier, VerificationResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/license", tags=["license"])


class LicenseVerifyRequest(BaseModel):
    """Verification request body."""
    email: Optional[str] = None
    domain: Optional[str] = None
    api_key: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


def _bad_request(message: str, field: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ValidationError(message, field=field).to_dict(),
    )


@router.post("/verify")
async def verify_license(
    request: Request,
    db: Session = Depends(get_db_session),
):
    """Verify that an integration's license is entitled right now."""
    try:
        body = json.loads(await request.body() or b"{}")
        verify_request = LicenseVerifyRequest.model_validate(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _bad_request("Invalid JSON body")
    except PydanticValidationError:
        return _bad_request("Request body must be an object with string fields")

    verifier = LicenseVerifier(db)
    try:
        result: VerificationResult = await run_in_threadpool(
            verifier.verify,
            verify_request.email,
            verify_request.domain,
            verify_request.api_key,
            caller_ip(request),
            caller_user_agent(request),
        )
    except ValidationError as e:
        return JSONResponse(status_code=e.http_status, content=e.to_dict())
    except InfrastructureError as e:
        logger.error("License verification unavailable", extra={"error": e.message})
        unavailable = VerificationResult.unavailable()
        return JSONResponse(status_code=unavailable.http_status, content=unavailable.to_response())
    except Exception as e:
        logger.error(
            "License verification failed",
            extra={"error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "error", "message": "Internal error"},
        )

    return JSONResponse(status_code=result.http_status, content=result.to_response())
