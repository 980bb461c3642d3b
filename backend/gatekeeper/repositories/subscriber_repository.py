"""
Subscriber repository for data access operations.

Encapsulates all database operations for subscribers and the processed
billing event ledger with:
- Deterministic candidate selection (entitled first, then most recent)
- Compare-and-swap writes for authorization fields
- Version-free writes for informational verification metadata
- SQLAlchemy failures surfaced as InfrastructureError

IntegrityError is re-raised untouched: callers decide what a constraint
violation means (a concurrent duplicate event, for instance).
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from gatekeeper.entitlements.errors import InfrastructureError
from gatekeeper.models.base import as_utc
from gatekeeper.models.subscriber import Subscriber, SubscriberStatus, ENTITLED_STATUSES
from gatekeeper.models.webhook_event import BillingWebhookEvent

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _pick_preferred(candidates: List[Subscriber]) -> Optional[Subscriber]:
    """Entitled status first, then most recently updated."""
    if not candidates:
        return None
    return sorted(
        candidates,
        key=lambda s: (
            s.status in ENTITLED_STATUSES,
            as_utc(s.updated_at or s.created_at) or _EPOCH,
            s.version or 0,
        ),
        reverse=True,
    )[0]


class SubscriberRepository:
    """
    Repository for subscriber data access.

    The repository never commits; transaction boundaries belong to the
    calling service.
    """

    def __init__(self, db_session: Session):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.error(
                "Subscriber store operation failed",
                extra={"operation": operation, "error": str(e)},
            )
            raise InfrastructureError(f"Subscriber store unavailable during {operation}", cause=e)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_id(self, subscriber_id: str, refresh: bool = False) -> Optional[Subscriber]:
        """
        Get subscriber by primary key.

        Args:
            subscriber_id: Subscriber ID
            refresh: Reload from the database even if already in the session
        """
        with self._translate_errors("get_by_id"):
            return self.db.get(Subscriber, subscriber_id, populate_existing=refresh)

    def find_by_billing_reference(
        self,
        billing_subscription_id: Optional[str],
        external_reference: Optional[str] = None,
    ) -> Optional[Subscriber]:
        """
        Resolve the subscriber a billing event refers to.

        Matches on billing subscription id first; only when nothing matches
        is the external reference consulted.
        """
        with self._translate_errors("find_by_billing_reference"):
            if billing_subscription_id:
                candidates = self.db.query(Subscriber).populate_existing().filter(
                    Subscriber.billing_subscription_id == billing_subscription_id
                ).all()
                if candidates:
                    return _pick_preferred(candidates)

            if external_reference:
                candidates = self.db.query(Subscriber).populate_existing().filter(
                    Subscriber.external_reference == external_reference
                ).all()
                return _pick_preferred(candidates)

        return None

    def find_for_license(
        self,
        email: str,
        domain: str,
        api_key: Optional[str] = None,
    ) -> Optional[Subscriber]:
        """
        Find the subscriber matching normalized email and domain.

        ``api_key`` narrows the match only when supplied.
        """
        with self._translate_errors("find_for_license"):
            query = self.db.query(Subscriber).populate_existing().filter(
                Subscriber.email == email,
                Subscriber.domain == domain,
            )
            if api_key is not None:
                query = query.filter(Subscriber.api_key == api_key)
            return _pick_preferred(query.all())

    def get_for_account(self, account_id: str) -> Optional[Subscriber]:
        """Get the subscriber owned by an account, preferring an entitled one."""
        with self._translate_errors("get_for_account"):
            candidates = self.db.query(Subscriber).filter(
                Subscriber.account_id == account_id
            ).all()
            return _pick_preferred(candidates)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def compare_and_set(
        self,
        subscriber_id: str,
        expected_version: int,
        values: Dict[str, Any],
    ) -> bool:
        """
        Apply ``values`` only if the row still carries ``expected_version``.

        Bumps version on success. Returns False when another writer got
        there first.
        """
        with self._translate_errors("compare_and_set"):
            result = self.db.execute(
                update(Subscriber)
                .where(
                    Subscriber.id == subscriber_id,
                    Subscriber.version == expected_version,
                )
                .values(version=Subscriber.version + 1, **values)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def narrow_status(
        self,
        subscriber_id: str,
        now: datetime,
        to_status: str = SubscriberStatus.SUSPENDED.value,
    ) -> bool:
        """
        Demote an entitled subscriber whose expiry has passed.

        Conditional on the row still being active/trial AND still expired at
        ``now``, so a concurrent renewal is never overwritten by a stale
        expiry decision.
        Returns True if the row was demoted.
        """
        with self._translate_errors("narrow_status"):
            result = self.db.execute(
                update(Subscriber)
                .where(
                    Subscriber.id == subscriber_id,
                    Subscriber.status.in_(sorted(ENTITLED_STATUSES)),
                    Subscriber.expires_at.isnot(None),
                    Subscriber.expires_at < now,
                )
                .values(status=to_status, version=Subscriber.version + 1)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def touch_verification(
        self,
        subscriber_id: str,
        checked_at: datetime,
        next_check_due_at: datetime,
        caller_ip: Optional[str],
        caller_user_agent: Optional[str],
    ) -> None:
        """Record verification metadata. Does not touch version."""
        with self._translate_errors("touch_verification"):
            self.db.execute(
                update(Subscriber)
                .where(Subscriber.id == subscriber_id)
                .values(
                    last_checked_at=checked_at,
                    next_check_due_at=next_check_due_at,
                    last_caller_ip=caller_ip,
                    last_caller_user_agent=caller_user_agent,
                )
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # Processed event ledger
    # ------------------------------------------------------------------

    def get_event(self, provider_event_id: str) -> Optional[BillingWebhookEvent]:
        with self._translate_errors("get_event"):
            return self.db.query(BillingWebhookEvent).filter(
                BillingWebhookEvent.provider_event_id == provider_event_id
            ).first()

    def record_event(
        self,
        provider_event_id: str,
        event_type: str,
        correlation_key: Optional[str],
        payload_hash: Optional[str],
        processed_at: datetime,
        existing: Optional[BillingWebhookEvent] = None,
    ) -> BillingWebhookEvent:
        """
        Write the ledger entry for a processed event and flush it.

        ``existing`` is a stale entry (outside the retention window) for the
        same id; it is refreshed in place rather than duplicated.

        Raises:
            IntegrityError: A concurrent writer recorded the same event
        """
        with self._translate_errors("record_event"):
            if existing is not None:
                existing.event_type = event_type
                existing.correlation_key = correlation_key
                existing.payload_hash = payload_hash
                existing.processed_at = processed_at
                entry = existing
            else:
                entry = BillingWebhookEvent(
                    provider_event_id=provider_event_id,
                    event_type=event_type,
                    correlation_key=correlation_key,
                    payload_hash=payload_hash,
                    processed_at=processed_at,
                )
                self.db.add(entry)
            self.db.flush()
        return entry

    def purge_events_before(self, cutoff: datetime, batch_size: int = 1000) -> int:
        """
        Delete one batch of ledger entries processed before ``cutoff``.

        Returns the number of rows deleted; callers loop until it drops
        below ``batch_size``.
        """
        with self._translate_errors("purge_events_before"):
            batch = self.db.query(BillingWebhookEvent.id).filter(
                BillingWebhookEvent.processed_at < cutoff
            ).limit(batch_size).subquery()

            result = self.db.execute(
                delete(BillingWebhookEvent)
                .where(BillingWebhookEvent.id.in_(batch.select()))
                .execution_options(synchronize_session=False)
            )
        return result.rowcount
