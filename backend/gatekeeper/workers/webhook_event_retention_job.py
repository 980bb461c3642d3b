"""
Billing Webhook Event Retention Job.

Purges processed-event ledger entries older than the retention window
(default 30 days). Entries past the window no longer count as duplicates,
so deleting them only bounds table growth.

Run as a daily cron job:
    python -m gatekeeper.workers.webhook_event_retention_job

Configuration:
- billing.webhook_event_retention_days in config/access_gate.yml
- WEBHOOK_EVENT_CLEANUP_BATCH_SIZE: rows deleted per batch (default: 1000)
"""

import logging
import os
import sys
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from gatekeeper.config.settings import get_settings
from gatekeeper.database.session import open_session
from gatekeeper.models.base import utc_now
from gatekeeper.repositories.subscriber_repository import SubscriberRepository

logger = logging.getLogger(__name__)

WEBHOOK_EVENT_CLEANUP_BATCH_SIZE = int(os.getenv("WEBHOOK_EVENT_CLEANUP_BATCH_SIZE", "1000"))


class WebhookEventRetentionJob:
    """
    Deletes stale ledger entries in batches to avoid long-running transactions.
    """

    def __init__(
        self,
        db_session: Session,
        retention_days: Optional[int] = None,
        batch_size: int = WEBHOOK_EVENT_CLEANUP_BATCH_SIZE,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize retention job.

        Args:
            db_session: Database session
            retention_days: Days to keep entries (defaults to config)
            batch_size: Rows deleted per transaction
            now_fn: Clock returning aware UTC datetimes
        """
        self.db = db_session
        self.repo = SubscriberRepository(db_session)
        self.retention_days = (
            retention_days if retention_days is not None
            else get_settings().webhook_event_retention_days
        )
        self.batch_size = batch_size
        self.cutoff_date = now_fn() - timedelta(days=self.retention_days)
        self.stats: Dict[str, int] = {"events_deleted": 0, "batches": 0}

    def run(self) -> Dict[str, int]:
        """
        Delete every entry processed before the cutoff.

        Returns:
            Stats dict with events_deleted and batches
        """
        logger.info(
            "Cleaning up billing_webhook_events",
            extra={
                "cutoff_date": self.cutoff_date.isoformat(),
                "retention_days": self.retention_days,
            },
        )

        while True:
            try:
                deleted = self.repo.purge_events_before(self.cutoff_date, self.batch_size)
                self.db.commit()
            except Exception:
                self.db.rollback()
                logger.error(
                    "Error cleaning up billing_webhook_events",
                    extra={"deleted_so_far": self.stats["events_deleted"]},
                    exc_info=True,
                )
                raise

            self.stats["events_deleted"] += deleted
            self.stats["batches"] += 1

            logger.info(
                f"Deleted {deleted} billing_webhook_events records (batch)",
                extra={
                    "table": "billing_webhook_events",
                    "batch_size": deleted,
                    "total_deleted": self.stats["events_deleted"],
                },
            )

            # If we deleted less than batch size, we're done
            if deleted < self.batch_size:
                break

        logger.info("Billing webhook event retention complete", extra=self.stats)
        return self.stats


def main() -> int:
    """CLI entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    session = open_session()
    try:
        WebhookEventRetentionJob(session).run()
    except Exception as e:
        logger.error("Retention job failed", extra={"error": str(e)})
        return 1
    finally:
        session.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
