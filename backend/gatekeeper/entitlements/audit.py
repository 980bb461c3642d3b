"""
Entitlement Audit Logger - log every access denial.

Provides:
- AccessDenialEvent: structured event for one denial
- log_access_denial: write a denial to the ``entitlements.audit`` logger

Required fields for each denial:
- reason
- endpoint
- account_id (if identity was resolved)

CRITICAL: Every redirect issued by the access gate MUST be logged here.
"""

import json
import logging
import uuid
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Dedicated audit logger for structured logging
audit_logger = logging.getLogger("entitlements.audit")


class DenialReason:
    """Machine-readable denial reasons."""
    UNAUTHENTICATED = "unauthenticated"
    NOT_ENTITLED = "not_entitled"
    EVALUATION_FAILED = "evaluation_failed"


@dataclass
class AccessDenialEvent:
    """
    Structured event for an access denial.
    """

    reason: str
    endpoint: str
    redirect_to: str
    method: Optional[str] = None
    account_id: Optional[str] = None
    subscriber_status: Optional[str] = None
    detail: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict())


def log_access_denial(event: AccessDenialEvent) -> None:
    """
    Log an access denial event.

    Unauthenticated redirects are routine and logged at INFO; entitlement
    denials at WARNING; evaluation failures at ERROR.
    """
    if event.reason == DenialReason.EVALUATION_FAILED:
        level = logging.ERROR
    elif event.reason == DenialReason.NOT_ENTITLED:
        level = logging.WARNING
    else:
        level = logging.INFO

    audit_logger.log(
        level,
        "access_denied",
        extra={
            "event_type": "access_denied",
            "audit_data": event.to_dict(),
        },
    )
