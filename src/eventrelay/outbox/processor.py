"""
Outbox Processor

Claims pending outbox messages, deserializes them through the type
registry and publishes them to the event bus. Failures are classified:
transient ones are retried with backoff, poison ones go straight to the
dead letter queue.

Two ways to drive it:
- ``process_batch()``: one claim-and-dispatch pass, for a scheduler job
- ``run_continuously()`` / ``start()``: a loop with adaptive delay
"""

import asyncio
import logging
import os
import socket
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from ..events.bus import EventBus
from ..events.errors import ErrorClassification, OperationCancelled, classify_error
from ..events.registry import EventTypeRegistry
from ..inbox.ledger import IdempotencyLedger
from ..observability import create_span, record_counter, record_histogram
from .cancellation import check_cancelled, sleep_or_cancel
from .models import OutboxMessage
from .store.base import OutboxStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_LEASE_SECONDS = 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class DispatchOutcome(str, Enum):
    PROCESSED = "processed"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    POISONED = "poisoned"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class BatchResult:
    """Counts for one dispatch pass."""

    claimed: int = 0
    processed: int = 0
    retry_scheduled: int = 0
    dead_lettered: int = 0
    poisoned: int = 0
    skipped: int = 0
    errors: int = 0
    duration_seconds: float = 0.0

    def record(self, outcome: DispatchOutcome) -> None:
        attr = {
            DispatchOutcome.PROCESSED: "processed",
            DispatchOutcome.RETRY_SCHEDULED: "retry_scheduled",
            DispatchOutcome.DEAD_LETTERED: "dead_lettered",
            DispatchOutcome.POISONED: "poisoned",
            DispatchOutcome.SKIPPED: "skipped",
            DispatchOutcome.ERROR: "errors",
        }[outcome]
        setattr(self, attr, getattr(self, attr) + 1)

    @property
    def failed(self) -> int:
        return self.retry_scheduled + self.dead_lettered + self.poisoned + self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "claimed": self.claimed,
            "processed": self.processed,
            "retry_scheduled": self.retry_scheduled,
            "dead_lettered": self.dead_lettered,
            "poisoned": self.poisoned,
            "skipped": self.skipped,
            "errors": self.errors,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class AdaptiveBackoff:
    """
    Delay between continuous-mode passes.

    Successful passes wait ``base_delay``. Each consecutive failing pass
    doubles it up to ``max_delay``; when ``max_consecutive_errors`` is
    reached the loop takes one ``max_delay`` cooldown and starts counting
    again.
    """

    base_delay: float = 5.0
    max_delay: float = 60.0
    max_consecutive_errors: int = 5
    consecutive_errors: int = 0

    def on_success(self) -> float:
        self.consecutive_errors = 0
        return self.base_delay

    def on_error(self) -> float:
        self.consecutive_errors += 1
        if self.consecutive_errors >= self.max_consecutive_errors:
            self.consecutive_errors = 0
            return self.max_delay
        return min(self.base_delay * (2 ** self.consecutive_errors), self.max_delay)


class OutboxProcessor:
    """
    Dispatches outbox messages to the event bus.

    Features:
    - Leases each batch so concurrent dispatchers never share a message
    - Sequential delivery within a batch; one bad message never blocks the rest
    - Explicit transient/poison classification of handler failures
    - Best-effort idempotency ledger write after successful delivery
    """

    def __init__(
        self,
        store: OutboxStore,
        bus: EventBus,
        registry: EventTypeRegistry,
        ledger: Optional[IdempotencyLedger] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        backoff: Optional[AdaptiveBackoff] = None,
        owner_id: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.bus = bus
        self.registry = registry
        self.ledger = ledger
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds
        self.backoff = backoff or AdaptiveBackoff()
        self.owner_id = owner_id or default_owner_id()
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # Lifecycle

    async def start(self):
        """Start the continuous loop as a background task."""
        if self.is_running:
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run_continuously(self._stop_event))
        logger.info(f"OutboxProcessor started (owner={self.owner_id}, batch_size={self.batch_size})")

    async def stop(self, timeout: float = 30.0):
        """Signal the loop to stop and wait for the current message to finish."""
        self._stop_event.set()
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("OutboxProcessor did not stop in time, cancelling")
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
            self._task = None
        logger.info("OutboxProcessor stopped")

    async def run_continuously(self, stop_event: Optional[asyncio.Event] = None):
        """Dispatch batches until ``stop_event`` is set."""
        stop_event = stop_event or self._stop_event
        logger.info("Outbox continuous dispatch loop starting")

        while not stop_event.is_set():
            try:
                result = await self.process_batch(stop_event)
                delay = self.backoff.on_success()
                if result.claimed:
                    logger.info(f"Outbox batch dispatched: {result.to_dict()}")
            except OperationCancelled:
                break
            except Exception as e:
                delay = self.backoff.on_error()
                logger.error(
                    f"Outbox dispatch pass failed ({self.backoff.consecutive_errors} consecutive), "
                    f"next attempt in {delay:.0f}s: {e}",
                    exc_info=True,
                )

            if await sleep_or_cancel(delay, stop_event):
                break

        logger.info("Outbox continuous dispatch loop stopped")

    # Dispatch

    async def process_batch(self, cancel_event: Optional[asyncio.Event] = None) -> BatchResult:
        """
        Claim and dispatch one batch.

        Store failures while claiming propagate so the caller (scheduler or
        continuous loop) can back off. Per-message failures never do.
        """
        result = BatchResult()
        started = time.monotonic()

        check_cancelled(cancel_event)
        messages = await self.store.claim_unprocessed_messages(
            self.batch_size, self.owner_id, self.lease_seconds, now=self._clock()
        )
        result.claimed = len(messages)

        if not messages:
            logger.debug("No outbox messages to dispatch")
            return result

        with create_span("outbox.process_batch", {"outbox.batch_size": len(messages)}):
            for message in messages:
                check_cancelled(cancel_event)
                outcome = await self._dispatch_safely(message)
                result.record(outcome)

        result.duration_seconds = time.monotonic() - started
        record_histogram("outbox_batch_duration_seconds", result.duration_seconds)
        return result

    async def process_message(self, message_id: UUID) -> DispatchOutcome:
        """Dispatch a single message by id, outside the batch loop."""
        message = await self.store.get_by_id(message_id)
        if message is None:
            logger.warning(f"Outbox message {message_id} not found")
            return DispatchOutcome.SKIPPED
        if message.is_processed or message.is_in_dlq:
            logger.info(f"Outbox message {message_id} is already terminal, skipping")
            return DispatchOutcome.SKIPPED
        return await self._dispatch_safely(message)

    async def _dispatch_safely(self, message: OutboxMessage) -> DispatchOutcome:
        try:
            return await self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Store write failed mid-dispatch; the lease expires and the
            # message is picked up again.
            logger.error(
                f"Unexpected error dispatching outbox message {message.id}: {e}",
                exc_info=True,
                extra={"message_id": str(message.id), "event_type": message.type_name},
            )
            record_counter("outbox_failed_total", 1, {"event_type": message.type_name, "reason": "error"})
            return DispatchOutcome.ERROR

    async def _dispatch(self, message: OutboxMessage) -> DispatchOutcome:
        started = time.monotonic()
        log_extra = {
            "message_id": str(message.id),
            "event_type": message.type_name,
            "correlation_id": message.correlation_id,
        }

        if message.is_poisoned:
            logger.warning(f"Skipping poisoned outbox message {message.id}", extra=log_extra)
            return DispatchOutcome.SKIPPED

        # No ledger pre-check: the lease guarantees a single dispatcher per
        # message, and the ledger is written only after a successful publish.
        if message.idempotency_key:
            logger.debug(
                f"Dispatching {message.id} with idempotency key {message.idempotency_key}",
                extra=log_extra,
            )

        event_cls = self.registry.resolve(message.full_type_name, message.module_name)
        if event_cls is None:
            return await self._fail(
                message, f"Unknown event type: {message.full_type_name}", poison=True
            )

        if not message.content or not message.content.strip():
            return await self._fail(message, "Empty outbox content", poison=True)

        try:
            event = self.registry.deserialize(event_cls, message.content)
        except Exception as e:
            return await self._fail(message, f"Failed to deserialize event: {e}", poison=True)
        if event is None:
            return await self._fail(message, "Failed to deserialize event: null payload", poison=True)

        try:
            with create_span("outbox.publish", {
                "outbox.message_id": str(message.id),
                "outbox.event_type": message.type_name,
                "outbox.retry_count": message.retry_count,
                "outbox.correlation_id": message.correlation_id,
            }):
                await self.bus.publish(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            classification = classify_error(e)
            return await self._fail(
                message,
                str(e) or type(e).__name__,
                poison=classification == ErrorClassification.POISON,
            )

        message.mark_processed(self._clock())
        await self.store.update(message)

        elapsed = time.monotonic() - started
        record_counter("outbox_processed_total", 1, {"event_type": message.type_name})
        record_histogram("outbox_processing_duration_seconds", elapsed, {"event_type": message.type_name})
        logger.debug(f"Delivered outbox message {message.id} in {elapsed * 1000:.1f}ms", extra=log_extra)

        if message.idempotency_key and self.ledger is not None:
            try:
                await self.ledger.mark_event_processed(message.idempotency_key, message.aggregate_id)
            except Exception as e:
                logger.warning(
                    f"Failed to record idempotency key {message.idempotency_key}: {e}",
                    extra=log_extra,
                )

        return DispatchOutcome.PROCESSED

    async def _fail(self, message: OutboxMessage, error: str, poison: bool) -> DispatchOutcome:
        message.mark_failed(error, is_poison=poison, now=self._clock())
        await self.store.update(message)

        log_extra = {
            "message_id": str(message.id),
            "event_type": message.type_name,
            "retry_count": message.retry_count,
        }
        reason = "poison" if poison else "transient"
        record_counter("outbox_failed_total", 1, {"event_type": message.type_name, "reason": reason})

        if poison:
            record_counter("dlq_entries_total", 1, {"event_type": message.type_name, "reason": "poison"})
            logger.error(f"Outbox message {message.id} poisoned: {error}", extra=log_extra)
            return DispatchOutcome.POISONED

        if message.is_in_dlq:
            record_counter("dlq_entries_total", 1, {"event_type": message.type_name, "reason": "max_retries"})
            logger.error(
                f"Outbox message {message.id} moved to DLQ after {message.retry_count} attempts: {error}",
                extra=log_extra,
            )
            return DispatchOutcome.DEAD_LETTERED

        logger.warning(
            f"Outbox message {message.id} failed (attempt {message.retry_count}), "
            f"retry at {message.next_retry_at.isoformat()}: {error}",
            extra=log_extra,
        )
        return DispatchOutcome.RETRY_SCHEDULED


# Global processor instance
_processor: Optional[OutboxProcessor] = None


async def start_outbox_processor(processor: OutboxProcessor) -> OutboxProcessor:
    """Start ``processor`` as the global background dispatcher."""
    global _processor

    if _processor is not None and _processor is not processor:
        await _processor.stop()
    _processor = processor

    await _processor.start()
    return _processor


async def stop_outbox_processor():
    """Stop the global outbox processor."""
    global _processor
    if _processor:
        await _processor.stop()
        _processor = None


def get_outbox_processor() -> Optional[OutboxProcessor]:
    """Get the global outbox processor instance."""
    return _processor
