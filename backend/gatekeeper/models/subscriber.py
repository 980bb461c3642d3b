"""
Subscriber model - the persisted entitlement unit for one account.

CRITICAL: Records are never hard-deleted. Cancellation is a status.
Status is driven by billing provider events and by lazy expiry demotion
during license verification.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Column, String, Integer, DateTime, Text, Index, text
)
from sqlalchemy import Enum as SAEnum

from gatekeeper.db_base import Base
from gatekeeper.models.base import TimestampMixin, generate_uuid, as_utc, utc_now


class SubscriberStatus(str, Enum):
    """Subscriber status values."""
    ACTIVE = "active"            # Paid and current
    TRIAL = "trial"              # Trial access, treated exactly like active
    SUSPENDED = "suspended"      # Payment overdue or subscription expired
    CANCELED = "canceled"        # Payment refunded/deleted or subscription canceled


# Statuses that grant access (subject to expiry)
ENTITLED_STATUSES = frozenset({SubscriberStatus.ACTIVE.value, SubscriberStatus.TRIAL.value})


class Subscriber(Base, TimestampMixin):
    """
    Entitlement record for one account.

    DESIGN:
    - status/expires_at/activated_at are authorization fields, written only
      through compare-and-swap on ``version``
    - last_checked_at, next_check_due_at and caller fields are informational
      and may be written without touching ``version``
    - At most one active/trial record per billing subscription id
    """

    __tablename__ = "subscribers"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    # Identity
    account_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Owning account (session token subject)"
    )
    email = Column(
        String(320),
        nullable=False,
        index=True,
        comment="Normalized (trimmed, lowercase) email"
    )
    domain = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Normalized domain, addressable key for license verification"
    )
    api_key = Column(
        String(255),
        nullable=True,
        comment="Optional key checked by license verification when supplied"
    )
    plan_name = Column(
        String(255),
        nullable=True,
        comment="Display name of the subscribed plan"
    )

    # Lifecycle
    status = Column(
        SAEnum(
            "active", "trial", "suspended", "canceled",
            name="subscriber_status"
        ),
        default=SubscriberStatus.SUSPENDED.value,
        nullable=False,
        index=True,
        comment="Current entitlement status"
    )
    expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Entitlement expiry; null means no expiry"
    )
    activated_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the subscription was last activated"
    )

    # Billing correlation
    billing_subscription_id = Column(
        String(100),
        nullable=True,
        index=True,
        comment="Billing provider subscription id"
    )
    external_reference = Column(
        String(255),
        nullable=True,
        index=True,
        comment="External reference echoed back by the billing provider"
    )

    # Verification metadata (informational only)
    last_checked_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last verification or lifecycle event"
    )
    next_check_due_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the integration is expected to verify again"
    )
    last_caller_ip = Column(
        String(64),
        nullable=True,
        comment="IP of the last verification caller"
    )
    last_caller_user_agent = Column(
        Text,
        nullable=True,
        comment="User agent of the last verification caller"
    )

    # Optimistic concurrency
    version = Column(
        Integer,
        nullable=False,
        default=1,
        comment="Bumped by every authorization write (compare-and-swap)"
    )

    __table_args__ = (
        Index("ix_subscribers_email_domain", "email", "domain"),
        Index("ix_subscribers_account_status", "account_id", "status"),
        Index(
            "uq_subscribers_entitled_billing_subscription",
            "billing_subscription_id",
            unique=True,
            postgresql_where=text("status IN ('active', 'trial')"),
            sqlite_where=text("status IN ('active', 'trial')"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Subscriber(id={self.id}, account_id={self.account_id}, status={self.status})>"

    @property
    def has_entitled_status(self) -> bool:
        """Check if status grants access, ignoring expiry."""
        return self.status in ENTITLED_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if expiry is set and in the past."""
        expires_at = as_utc(self.expires_at)
        if expires_at is None:
            return False
        return expires_at < (now or utc_now())

    def is_entitled(self, now: Optional[datetime] = None) -> bool:
        """
        Entitled iff status is active/trial and expiry is unset or not passed.
        """
        return self.has_entitled_status and not self.is_expired(now)
