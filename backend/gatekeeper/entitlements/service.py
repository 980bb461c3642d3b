"""
Entitlement Service - the capability collaborators consume.

Provides:
- check(account_id)        -> EntitlementDecision
- is_entitled(account_id)  -> bool

Architecture:
- Fresh read on every call (no server-side cache; the gate must see the
  current store state)
- Decision delegated to gatekeeper.entitlements.policy
- Store failures surface as InfrastructureError; callers fail closed

Collaborators (workflow engine, CRUD modules) ask only "is this account
entitled right now?" and never read subscriber rows themselves.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from gatekeeper.entitlements import policy
from gatekeeper.entitlements.policy import EntitlementDecision
from gatekeeper.models.base import utc_now
from gatekeeper.repositories.subscriber_repository import SubscriberRepository

logger = logging.getLogger(__name__)


class EntitlementService:
    """
    Central entitlement service.

    One instance per request / job.
    """

    def __init__(
        self,
        db_session: Session,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.db = db_session
        self.repo = SubscriberRepository(db_session)
        self._now = now_fn

    def check(self, account_id: str) -> EntitlementDecision:
        """
        Evaluate the entitlement predicate for an account.

        Raises:
            InfrastructureError: Subscriber store unavailable
        """
        if not account_id:
            return EntitlementDecision(entitled=False, reason="no_identity")

        record = self.repo.get_for_account(account_id)
        decision = policy.evaluate(record, self._now())

        logger.debug(
            "Entitlement evaluated",
            extra={
                "account_id": account_id,
                "entitled": decision.entitled,
                "reason": decision.reason,
            },
        )
        return decision

    def is_entitled(self, account_id: str) -> bool:
        """True iff the account may use the service right now."""
        return self.check(account_id).entitled
