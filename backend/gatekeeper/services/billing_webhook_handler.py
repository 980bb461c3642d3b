"""
Billing webhook handler with idempotency support.

Processes billing provider lifecycle events with:
- Shared-secret authentication (constant-time compare) before any read
- Event deduplication through the processed-event ledger
- Per-subscriber serialization (in-process lock + version compare-and-swap)
- A fixed transition table; unknown events are logged and ignored
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gatekeeper.config.settings import GateSettings, get_settings
from gatekeeper.entitlements.errors import (
    AuthenticationError,
    ConcurrentUpdateError,
    NotFoundError,
    PayloadValidationError,
)
from gatekeeper.models.base import as_utc, utc_now
from gatekeeper.models.subscriber import SubscriberStatus
from gatekeeper.platform.keyed_lock import KeyedLock
from gatekeeper.repositories.subscriber_repository import SubscriberRepository

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 3

# Shared across handler instances: one handler is built per request
_event_locks = KeyedLock()


@dataclass(frozen=True)
class Transition:
    """Target state for one event type."""
    status: str
    activate: bool = False
    extend_expiry: bool = False


PAYMENT_TRANSITIONS: Dict[str, Transition] = {
    "PAYMENT_CONFIRMED": Transition(SubscriberStatus.ACTIVE.value, activate=True, extend_expiry=True),
    "PAYMENT_RECEIVED": Transition(SubscriberStatus.ACTIVE.value, activate=True, extend_expiry=True),
    "PAYMENT_OVERDUE": Transition(SubscriberStatus.SUSPENDED.value),
    "PAYMENT_DELETED": Transition(SubscriberStatus.CANCELED.value),
    "PAYMENT_REFUNDED": Transition(SubscriberStatus.CANCELED.value),
}

SUBSCRIPTION_TRANSITIONS: Dict[str, Transition] = {
    "SUBSCRIPTION_ACTIVATED": Transition(SubscriberStatus.ACTIVE.value, activate=True),
    "SUBSCRIPTION_CANCELED": Transition(SubscriberStatus.CANCELED.value),
    "SUBSCRIPTION_EXPIRED": Transition(SubscriberStatus.SUSPENDED.value),
}


@dataclass
class EventProcessingResult:
    """Result of event processing."""
    processed: bool
    message: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    subscriber_id: Optional[str] = None
    new_status: Optional[str] = None
    skipped_reason: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        """Body acknowledged to the provider."""
        return {
            "received": True,
            "processed": self.processed,
            "message": self.message,
        }


@dataclass
class _CorrelationStep:
    """One sub-object of the payload and the transition it drives."""
    source: str
    transition: Transition
    billing_subscription_id: Optional[str]
    external_reference: Optional[str]

    @property
    def correlation_key(self) -> Optional[str]:
        return self.billing_subscription_id or self.external_reference


@dataclass
class BillingEvent:
    """Parsed, validated provider event."""
    event_id: str
    event_type: str
    payload_hash: str
    steps: List[_CorrelationStep]

    @property
    def correlation_key(self) -> Optional[str]:
        for step in self.steps:
            if step.correlation_key:
                return step.correlation_key
        return None


class _StaleVersion(Exception):
    def __init__(self, subscriber_id: str):
        self.subscriber_id = subscriber_id
        super().__init__(subscriber_id)


class _DuplicateRace(Exception):
    """Another delivery of the same event won the ledger insert."""


def _canonical_hash(payload: Dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _optional_str(obj: Dict[str, Any], key: str) -> Optional[str]:
    value = obj.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _sub_object(payload: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise PayloadValidationError(f"'{key}' must be an object", field=key)
    return value


def parse_event(payload: Any) -> BillingEvent:
    """
    Validate a raw provider payload.

    Raises:
        PayloadValidationError: Not an object, or no usable 'event' field
    """
    if not isinstance(payload, dict):
        raise PayloadValidationError("Payload must be a JSON object")

    event_type = payload.get("event")
    if not isinstance(event_type, str) or not event_type.strip():
        raise PayloadValidationError("Missing 'event' field", field="event")
    event_type = event_type.strip()

    payment = _sub_object(payload, "payment")
    subscription = _sub_object(payload, "subscription")

    payload_hash = _canonical_hash(payload)
    provider_id = _optional_str(payload, "id")
    event_id = provider_id or f"sha256:{payload_hash}"

    steps: List[_CorrelationStep] = []
    if payment is not None and event_type in PAYMENT_TRANSITIONS:
        steps.append(_CorrelationStep(
            source="payment",
            transition=PAYMENT_TRANSITIONS[event_type],
            billing_subscription_id=_optional_str(payment, "subscription"),
            external_reference=_optional_str(payment, "externalReference"),
        ))
    if subscription is not None and event_type in SUBSCRIPTION_TRANSITIONS:
        steps.append(_CorrelationStep(
            source="subscription",
            transition=SUBSCRIPTION_TRANSITIONS[event_type],
            billing_subscription_id=_optional_str(subscription, "id"),
            external_reference=_optional_str(subscription, "externalReference"),
        ))

    return BillingEvent(
        event_id=event_id,
        event_type=event_type,
        payload_hash=payload_hash,
        steps=steps,
    )


class BillingWebhookHandler:
    """
    Handler for billing provider webhooks with idempotency.

    Ensures each event is applied at most once within the ledger retention
    window, and that concurrent events for one subscriber never lose an
    update.
    """

    def __init__(
        self,
        db_session: Session,
        settings: Optional[GateSettings] = None,
        locks: Optional[KeyedLock] = None,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize webhook handler.

        Args:
            db_session: Database session
            settings: Gate settings (defaults to the loaded config)
            locks: Per-key lock registry (defaults to the process-wide one)
            now_fn: Clock returning aware UTC datetimes
        """
        self.db = db_session
        self.repo = SubscriberRepository(db_session)
        self.settings = settings or get_settings()
        self._locks = locks if locks is not None else _event_locks
        self._now = now_fn

    def authenticate(self, supplied_token: Optional[str]) -> None:
        """
        Check the caller-supplied shared secret.

        No-op when no secret is configured.

        Raises:
            AuthenticationError: Token missing or mismatched
        """
        expected = self.settings.webhook_token
        if not expected:
            return

        if not supplied_token or not hmac.compare_digest(
            supplied_token.encode(), expected.encode()
        ):
            logger.warning("Billing webhook rejected: invalid access token")
            raise AuthenticationError("Invalid webhook access token")

    def handle_event(
        self,
        payload: Any,
        supplied_token: Optional[str] = None,
    ) -> EventProcessingResult:
        """
        Authenticate, parse and apply one provider event.

        Raises:
            AuthenticationError: Bad shared secret (nothing read or written)
            PayloadValidationError: Unparsable payload (nothing written)
            ConcurrentUpdateError: Compare-and-swap retries exhausted
        """
        self.authenticate(supplied_token)
        event = parse_event(payload)

        logger.info(
            "Billing event received",
            extra={
                "event_id": event.event_id,
                "event_type": event.event_type,
                "correlation_key": event.correlation_key,
            },
        )

        return self._process(event, record_in_ledger=True)

    def replay_for_subscription(
        self,
        billing_subscription_id: str,
        event_type: str = "PAYMENT_CONFIRMED",
    ) -> EventProcessingResult:
        """
        Run a synthetic event for a billing subscription id.

        Development aid: bypasses the ledger. The caller (the replay route)
        authenticates the shared secret first.

        Raises:
            NotFoundError: No subscriber carries this billing subscription id
        """
        if self.repo.find_by_billing_reference(billing_subscription_id) is None:
            self.db.rollback()
            raise NotFoundError(f"No subscriber for billing subscription {billing_subscription_id}")

        key = "subscription" if event_type in SUBSCRIPTION_TRANSITIONS else "payment"
        reference_field = "id" if key == "subscription" else "subscription"
        payload = {
            "event": event_type,
            key: {reference_field: billing_subscription_id},
            "replayed_at": self._now().isoformat(),
        }

        logger.info(
            "Replaying billing event",
            extra={"event_type": event_type, "billing_subscription_id": billing_subscription_id},
        )
        return self._process(parse_event(payload), record_in_ledger=False)

    def _process(self, event: BillingEvent, record_in_ledger: bool) -> EventProcessingResult:
        lock_key = event.correlation_key or event.event_id
        last_conflict: Optional[str] = None

        with self._locks.hold(lock_key):
            for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
                try:
                    result = self._apply_once(event, record_in_ledger)
                    self.db.commit()
                    return result
                except _StaleVersion as conflict:
                    self.db.rollback()
                    last_conflict = conflict.subscriber_id
                    logger.info(
                        "Subscriber changed concurrently, retrying",
                        extra={
                            "event_id": event.event_id,
                            "subscriber_id": conflict.subscriber_id,
                            "attempt": attempt,
                        },
                    )
                except _DuplicateRace:
                    self.db.rollback()
                    logger.info(
                        "Concurrent delivery already recorded, skipping",
                        extra={"event_id": event.event_id},
                    )
                    return EventProcessingResult(
                        processed=False,
                        message="Event already processed",
                        event_id=event.event_id,
                        event_type=event.event_type,
                        skipped_reason="duplicate",
                    )
                except Exception:
                    self.db.rollback()
                    logger.error(
                        "Billing event processing failed",
                        extra={"event_id": event.event_id, "event_type": event.event_type},
                        exc_info=True,
                    )
                    raise

        logger.error(
            "Billing event gave up after repeated version conflicts",
            extra={"event_id": event.event_id, "subscriber_id": last_conflict},
        )
        raise ConcurrentUpdateError(last_conflict or "unknown", MAX_CAS_ATTEMPTS)

    def _apply_once(self, event: BillingEvent, record_in_ledger: bool) -> EventProcessingResult:
        now = self._now()
        existing_entry = None

        if record_in_ledger:
            existing_entry = self.repo.get_event(event.event_id)
            if existing_entry is not None and not self._is_stale(existing_entry.processed_at, now):
                logger.info(
                    "Duplicate billing event, skipping",
                    extra={"event_id": event.event_id, "event_type": event.event_type},
                )
                return EventProcessingResult(
                    processed=False,
                    message="Event already processed",
                    event_id=event.event_id,
                    event_type=event.event_type,
                    skipped_reason="duplicate",
                )

        result = self._apply_transitions(event, now)

        if record_in_ledger:
            try:
                self.repo.record_event(
                    provider_event_id=event.event_id,
                    event_type=event.event_type,
                    correlation_key=event.correlation_key,
                    payload_hash=event.payload_hash,
                    processed_at=now,
                    existing=existing_entry,
                )
            except IntegrityError as e:
                raise _DuplicateRace() from e

        return result

    def _apply_transitions(self, event: BillingEvent, now: datetime) -> EventProcessingResult:
        if not event.steps:
            logger.info(
                "Unhandled billing event type, ignoring",
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )
            return EventProcessingResult(
                processed=False,
                message=f"Event {event.event_type} not handled",
                event_id=event.event_id,
                event_type=event.event_type,
                skipped_reason="unhandled_event",
            )

        applied: Optional[Tuple[str, str]] = None
        for step in event.steps:
            subscriber = self.repo.find_by_billing_reference(
                step.billing_subscription_id,
                step.external_reference,
            )
            if subscriber is None:
                logger.warning(
                    "No subscriber correlates with billing event",
                    extra={
                        "event_id": event.event_id,
                        "event_type": event.event_type,
                        "source": step.source,
                        "billing_subscription_id": step.billing_subscription_id,
                        "external_reference": step.external_reference,
                    },
                )
                continue

            values = self._transition_values(step.transition, now)
            if not self.repo.compare_and_set(subscriber.id, subscriber.version, values):
                raise _StaleVersion(subscriber.id)

            logger.info(
                "Subscriber status updated from billing event",
                extra={
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "subscriber_id": subscriber.id,
                    "old_status": subscriber.status,
                    "new_status": values["status"],
                },
            )
            applied = (subscriber.id, values["status"])

        if applied is None:
            return EventProcessingResult(
                processed=False,
                message="No matching subscriber",
                event_id=event.event_id,
                event_type=event.event_type,
                skipped_reason="not_found",
            )

        return EventProcessingResult(
            processed=True,
            message=f"Subscriber set to {applied[1]}",
            event_id=event.event_id,
            event_type=event.event_type,
            subscriber_id=applied[0],
            new_status=applied[1],
        )

    def _transition_values(self, transition: Transition, now: datetime) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            "status": transition.status,
            "last_checked_at": now,
        }
        if transition.activate:
            values["activated_at"] = now
        if transition.extend_expiry:
            values["expires_at"] = now + relativedelta(months=self.settings.billing_interval_months)
        return values

    def _is_stale(self, processed_at: Optional[datetime], now: datetime) -> bool:
        processed_at = as_utc(processed_at)
        if processed_at is None:
            return True
        window = timedelta(days=self.settings.webhook_event_retention_days)
        return processed_at < now - window

