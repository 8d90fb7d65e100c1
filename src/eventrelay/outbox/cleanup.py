"""
Outbox Cleanup

Retention-windowed deletion of terminal outbox messages, in batches so a
large backlog never turns into one long-running DELETE.

- processed messages: kept ``processed_retention_days`` (default 7)
- dead-lettered messages: kept ``failed_retention_days`` (default 30)

A message exactly at the cutoff is kept; only strictly older ones go.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional

from ..observability import record_counter, traced
from .cancellation import check_cancelled, sleep_or_cancel
from .models import OutboxMessage
from .store.base import OutboxStore

logger = logging.getLogger(__name__)

DEFAULT_PROCESSED_RETENTION_DAYS = 7
DEFAULT_FAILED_RETENTION_DAYS = 30
DEFAULT_BATCH_SIZE = 1000
DEFAULT_BATCH_DELAY_SECONDS = 0.1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CleanupResult:
    processed_deleted: int = 0
    failed_deleted: int = 0

    @property
    def total(self) -> int:
        return self.processed_deleted + self.failed_deleted


class OutboxCleanupService:
    """Deletes processed and dead-lettered messages past their retention."""

    def __init__(
        self,
        store: OutboxStore,
        batch_delay: float = DEFAULT_BATCH_DELAY_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.batch_delay = batch_delay
        self._clock = clock

    @traced("outbox.cleanup.processed")
    async def cleanup_processed_messages(
        self,
        retention_days: int = DEFAULT_PROCESSED_RETENTION_DAYS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> int:
        """Delete processed messages older than ``retention_days``. Returns the count."""
        logger.info(
            f"Starting outbox cleanup - retention: {retention_days} days, batch size: {batch_size}"
        )
        cutoff = self._clock() - timedelta(days=retention_days)
        total = await self._delete_in_batches(
            lambda: self.store.get_processed_messages_older_than(cutoff, batch_size),
            batch_size,
            cancel_event,
            kind="processed",
        )
        logger.info(f"Outbox cleanup completed - cleaned up {total} processed messages")
        return total

    @traced("outbox.cleanup.failed")
    async def cleanup_failed_messages(
        self,
        retention_days: int = DEFAULT_FAILED_RETENTION_DAYS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> int:
        """Delete dead-lettered messages older than ``retention_days``. Returns the count."""
        logger.info(
            f"Starting failed outbox messages cleanup - retention: {retention_days} days, "
            f"batch size: {batch_size}"
        )
        cutoff = self._clock() - timedelta(days=retention_days)
        total = await self._delete_in_batches(
            lambda: self.store.get_failed_messages_older_than(cutoff, batch_size),
            batch_size,
            cancel_event,
            kind="failed",
        )
        logger.info(f"Failed outbox messages cleanup completed - cleaned up {total} failed messages")
        return total

    async def perform_full_cleanup(
        self,
        processed_retention_days: int = DEFAULT_PROCESSED_RETENTION_DAYS,
        failed_retention_days: int = DEFAULT_FAILED_RETENTION_DAYS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> int:
        """Run both cleanups and return the combined count."""
        logger.info("Starting full outbox cleanup")
        result = CleanupResult()
        result.processed_deleted = await self.cleanup_processed_messages(
            processed_retention_days, batch_size, cancel_event
        )
        result.failed_deleted = await self.cleanup_failed_messages(
            failed_retention_days, batch_size, cancel_event
        )
        logger.info(
            f"Full outbox cleanup completed - total messages cleaned: {result.total} "
            f"(processed: {result.processed_deleted}, failed: {result.failed_deleted})"
        )
        return result.total

    async def _delete_in_batches(
        self,
        fetch: Callable[[], Awaitable[List[OutboxMessage]]],
        batch_size: int,
        cancel_event: Optional[asyncio.Event],
        kind: str,
    ) -> int:
        total = 0
        while True:
            check_cancelled(cancel_event)
            batch = await fetch()
            if not batch:
                break

            check_cancelled(cancel_event)
            deleted = await self.store.delete_messages([m.id for m in batch])
            total += deleted
            record_counter("outbox_cleaned_total", deleted, {"kind": kind})
            logger.debug(f"Cleaned up {deleted} {kind} messages (total: {total})")

            # A short batch means nothing older is left
            if len(batch) < batch_size:
                break

            if await sleep_or_cancel(self.batch_delay, cancel_event):
                check_cancelled(cancel_event)
        return total
