"""
Entitlement predicate - the ONE definition of "may this account use the service now".

    entitled <=> status in {active, trial}
                 AND (expires_at is null OR expires_at >= now)

The access gate, the entitlement endpoint (and so the client cache) and
collaborators all decide through ``is_entitled``. Do NOT re-derive the
rule elsewhere.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from gatekeeper.models.base import as_utc, utc_now
from gatekeeper.models.subscriber import Subscriber


@dataclass(frozen=True)
class EntitlementDecision:
    """Outcome of evaluating the predicate for one account."""

    entitled: bool
    reason: str
    subscriber_status: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entitled": self.entitled,
            "reason": self.reason,
            "subscriber_status": self.subscriber_status,
            "details": dict(self.details),
        }


def is_entitled(record: Optional[Subscriber], now: Optional[datetime] = None) -> bool:
    """True iff ``record`` exists and grants access at ``now``."""
    if record is None:
        return False
    return record.is_entitled(now or utc_now())


def evaluate(record: Optional[Subscriber], now: Optional[datetime] = None) -> EntitlementDecision:
    """Evaluate the predicate and explain the result."""
    now = now or utc_now()

    if record is None:
        return EntitlementDecision(entitled=False, reason="no_subscriber")

    if not record.has_entitled_status:
        return EntitlementDecision(
            entitled=False,
            reason="status_not_entitled",
            subscriber_status=record.status,
        )

    if record.is_expired(now):
        return EntitlementDecision(
            entitled=False,
            reason="expired",
            subscriber_status=record.status,
        )

    expires_at = as_utc(record.expires_at)
    return EntitlementDecision(
        entitled=True,
        reason="entitled",
        subscriber_status=record.status,
        details={
            "subscriber_id": record.id,
            "status": record.status,
            "plan_name": record.plan_name,
            "expires_at": expires_at.isoformat() if expires_at else None,
        },
    )
