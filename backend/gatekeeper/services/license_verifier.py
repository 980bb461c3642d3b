"""
License verification for client integrations.

Integrations poll with (email, domain[, api_key]) and receive one of:
- active:  entitled now; verification metadata refreshed
- invalid: unknown, not entitled, or expired (expired records are demoted
           here, the only place expiry is enforced on the stored status)
- error:   the subscriber store is unavailable (InfrastructureError)

The entitlement decision itself comes from gatekeeper.entitlements.policy.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from fastapi import status
from sqlalchemy.orm import Session

from gatekeeper.config.settings import GateSettings, get_settings
from gatekeeper.entitlements import policy
from gatekeeper.entitlements.errors import ValidationError
from gatekeeper.models.base import as_utc, utc_now
from gatekeeper.repositories.subscriber_repository import SubscriberRepository

logger = logging.getLogger(__name__)

UNKNOWN_CALLER = "unknown"


class VerificationStatus(str, Enum):
    ACTIVE = "active"
    INVALID = "invalid"
    ERROR = "error"


_HTTP_STATUS = {
    VerificationStatus.ACTIVE: status.HTTP_200_OK,
    VerificationStatus.INVALID: status.HTTP_403_FORBIDDEN,
    VerificationStatus.ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@dataclass
class VerificationResult:
    """Outcome of one verification call."""
    status: VerificationStatus
    message: str
    subscriber_status: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.status]

    @classmethod
    def unavailable(cls) -> "VerificationResult":
        return cls(
            status=VerificationStatus.ERROR,
            message="License service temporarily unavailable",
        )

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": self.status.value, "message": self.message}
        if self.subscriber_status is not None:
            body["subscriber_status"] = self.subscriber_status
        if self.data:
            body["data"] = self.data
        return body


def normalize(value: Optional[str]) -> str:
    """Trim and lowercase an identifying field."""
    return (value or "").strip().lower()


class LicenseVerifier:
    """
    Verifies that an (email, domain[, api_key]) triple is entitled right now.

    Side effects are limited to:
    - conditional demotion of an expired active/trial record
    - informational metadata (last/next check, caller ip and user agent)
    """

    def __init__(
        self,
        db_session: Session,
        settings: Optional[GateSettings] = None,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.db = db_session
        self.repo = SubscriberRepository(db_session)
        self.settings = settings or get_settings()
        self._now = now_fn

    def verify(
        self,
        email: Optional[str],
        domain: Optional[str],
        api_key: Optional[str] = None,
        caller_ip: Optional[str] = None,
        caller_user_agent: Optional[str] = None,
    ) -> VerificationResult:
        """
        Verify a license.

        Raises:
            ValidationError: email or domain missing/blank (no mutation)
            InfrastructureError: Subscriber store unavailable
        """
        email = normalize(email)
        domain = normalize(domain)
        if not email:
            raise ValidationError("email is required", field="email")
        if not domain:
            raise ValidationError("domain is required", field="domain")

        api_key = (api_key or "").strip() or None
        now = self._now()

        try:
            result = self._verify(email, domain, api_key, caller_ip, caller_user_agent, now)
            self.db.commit()
            return result
        except Exception:
            self.db.rollback()
            raise

    def _verify(
        self,
        email: str,
        domain: str,
        api_key: Optional[str],
        caller_ip: Optional[str],
        caller_user_agent: Optional[str],
        now: datetime,
    ) -> VerificationResult:
        record = self.repo.find_for_license(email, domain, api_key)
        decision = policy.evaluate(record, now)

        if record is None:
            logger.info("License not found", extra={"email": email, "domain": domain})
            return VerificationResult(
                status=VerificationStatus.INVALID,
                message="License not found",
            )

        if decision.reason == "status_not_entitled":
            logger.info(
                "License inactive",
                extra={"subscriber_id": record.id, "subscriber_status": record.status},
            )
            return VerificationResult(
                status=VerificationStatus.INVALID,
                message="License inactive",
                subscriber_status=record.status,
            )

        if decision.reason == "expired":
            demoted = self.repo.narrow_status(record.id, now)
            logger.info(
                "License expired",
                extra={
                    "subscriber_id": record.id,
                    "expires_at": as_utc(record.expires_at).isoformat(),
                    "demoted": demoted,
                },
            )
            return VerificationResult(
                status=VerificationStatus.INVALID,
                message="License expired",
                subscriber_status="expired",
            )

        self.repo.touch_verification(
            record.id,
            checked_at=now,
            next_check_due_at=now + timedelta(hours=self.settings.verification_interval_hours),
            caller_ip=caller_ip or UNKNOWN_CALLER,
            caller_user_agent=caller_user_agent or UNKNOWN_CALLER,
        )

        expires_at = as_utc(record.expires_at)
        logger.info("License verified", extra={"subscriber_id": record.id})
        return VerificationResult(
            status=VerificationStatus.ACTIVE,
            message="License active",
            data={
                "email": record.email,
                "domain": record.domain,
                "expires_at": expires_at.isoformat() if expires_at else None,
                "verified_at": now.isoformat(),
            },
        )
