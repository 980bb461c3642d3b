"""
Database models for subscriber entitlements and billing event idempotency.
"""

from gatekeeper.models.base import TimestampMixin, generate_uuid, utc_now, as_utc
from gatekeeper.models.subscriber import Subscriber, SubscriberStatus, ENTITLED_STATUSES
from gatekeeper.models.webhook_event import BillingWebhookEvent

__all__ = [
    "TimestampMixin",
    "generate_uuid",
    "utc_now",
    "as_utc",
    "Subscriber",
    "SubscriberStatus",
    "ENTITLED_STATUSES",
    "BillingWebhookEvent",
]
