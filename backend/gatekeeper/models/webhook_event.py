"""
BillingWebhookEvent model for tracking processed billing provider events.

Used for idempotency - ensures events are applied at most once within the
retention window.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, Index, func

from gatekeeper.db_base import Base


class BillingWebhookEvent(Base):
    """
    Tracks processed billing provider events for deduplication.

    The provider may deliver events multiple times. This table ensures
    each unique event is applied once; entries older than the retention
    window are purged by the retention job.
    """

    __tablename__ = "billing_webhook_events"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )

    provider_event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Provider event id, or sha256 of the canonical payload"
    )

    event_type = Column(
        String(100),
        nullable=False,
        index=True,
        comment="Event type (e.g., PAYMENT_CONFIRMED)"
    )

    correlation_key = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Billing subscription id or external reference used for lookup"
    )

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of payload for debugging"
    )

    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        comment="When the event was processed"
    )

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="When the record was created"
    )

    __table_args__ = (
        Index(
            "idx_billing_webhook_events_processed",
            "processed_at",
            postgresql_ops={"processed_at": "DESC"}
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<BillingWebhookEvent(id={self.id}, event_id={self.provider_event_id}, "
            f"type={self.event_type})>"
        )
