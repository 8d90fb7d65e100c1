"""
Outbox Models

The outbox message record and its lifecycle:

    PENDING --publish ok--> PROCESSED
    PENDING --transient failure--> AWAITING_RETRY --due--> PENDING
    PENDING --retries exhausted--> DEAD_LETTERED
    PENDING --poison--> POISONED
    any --reset_for_retry--> PENDING
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from ..events.errors import InvalidStateError

if TYPE_CHECKING:
    from ..events.registry import EventTypeRegistry

MAX_RETRIES_EXCEEDED = "Max retries exceeded"
MAX_BACKOFF = timedelta(minutes=60)
MAX_ERROR_LENGTH = 2000


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def retry_delay(retry_count: int) -> timedelta:
    """Backoff after the Nth failure: 2^N minutes, capped at 60 minutes."""
    if retry_count >= 6:
        return MAX_BACKOFF
    return min(timedelta(minutes=2 ** retry_count), MAX_BACKOFF)


class OutboxStatus(str, Enum):
    """Derived state of an outbox message."""
    PENDING = "pending"
    AWAITING_RETRY = "awaiting_retry"
    PROCESSED = "processed"
    DEAD_LETTERED = "dead_lettered"
    POISONED = "poisoned"


class OutboxMessage(BaseModel):
    """A serialized integration event waiting for (or done with) delivery."""

    id: UUID = Field(default_factory=uuid4)
    type_name: str
    full_type_name: str
    module_name: str
    content: str
    occurred_on: datetime = Field(default_factory=_utcnow)
    processed_on: Optional[datetime] = None

    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: Optional[datetime] = None

    idempotency_key: Optional[str] = None
    aggregate_id: Optional[UUID] = None
    correlation_id: Optional[str] = None
    schema_version: int = 1

    failure_reason: Optional[str] = None
    error: Optional[str] = None

    is_poison_message: bool = False
    poisoned_at: Optional[datetime] = None
    moved_to_dlq_at: Optional[datetime] = None
    dlq_reason: Optional[str] = None

    lease_owner: Optional[str] = None
    leased_until: Optional[datetime] = None

    @field_validator(
        "occurred_on", "processed_on", "next_retry_at", "poisoned_at",
        "moved_to_dlq_at", "leased_until",
    )
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @classmethod
    def create(
        cls,
        event: BaseModel,
        registry: "EventTypeRegistry",
        aggregate_id: Optional[UUID] = None,
        correlation_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        max_retries: int = 3,
        occurred_on: Optional[datetime] = None,
    ) -> "OutboxMessage":
        """Build a pending message for an event using its registered descriptor."""
        descriptor = registry.descriptor_for(event)
        return cls(
            type_name=descriptor.type_name,
            full_type_name=descriptor.full_type_name,
            module_name=descriptor.module_name,
            content=registry.serialize(event),
            occurred_on=occurred_on or _utcnow(),
            aggregate_id=aggregate_id,
            correlation_id=correlation_id,
            idempotency_key=idempotency_key,
            max_retries=max_retries,
            schema_version=1,
        )

    # Predicates

    @property
    def is_processed(self) -> bool:
        return self.processed_on is not None

    @property
    def is_poisoned(self) -> bool:
        return self.is_poison_message

    @property
    def is_in_dlq(self) -> bool:
        return self.moved_to_dlq_at is not None

    @property
    def is_failed(self) -> bool:
        """Not processed and has failed at least once."""
        return self.processed_on is None and self.retry_count > 0

    def is_leased(self, now: Optional[datetime] = None) -> bool:
        now = now or _utcnow()
        return self.leased_until is not None and self.leased_until > now

    def should_retry(self, now: Optional[datetime] = None) -> bool:
        """Eligible for dispatch right now."""
        if self.is_processed or self.is_poison_message or self.is_in_dlq:
            return False
        if self.retry_count >= self.max_retries:
            return False
        now = now or _utcnow()
        return self.next_retry_at is None or self.next_retry_at <= now

    def status(self, now: Optional[datetime] = None) -> OutboxStatus:
        if self.is_processed:
            return OutboxStatus.PROCESSED
        if self.is_poison_message:
            return OutboxStatus.POISONED
        if self.is_in_dlq:
            return OutboxStatus.DEAD_LETTERED
        now = now or _utcnow()
        if self.next_retry_at is not None and self.next_retry_at > now:
            return OutboxStatus.AWAITING_RETRY
        return OutboxStatus.PENDING

    # Transitions

    def mark_processed(self, now: Optional[datetime] = None) -> None:
        """Mark delivered. A second call keeps the original timestamp."""
        if self.processed_on is None:
            self.processed_on = now or _utcnow()
        self.next_retry_at = None
        self.release_lease()

    def mark_failed(self, error: str, is_poison: bool = False, now: Optional[datetime] = None) -> None:
        """
        Record a failed delivery attempt.

        Poison messages go to the DLQ immediately. Otherwise the retry count
        grows and the message either waits out its backoff or, once
        ``max_retries`` is reached, is dead-lettered.
        """
        if self.is_processed:
            raise InvalidStateError(f"Outbox message {self.id} is already processed")
        if self.is_in_dlq:
            raise InvalidStateError(f"Outbox message {self.id} is already in the DLQ")

        now = now or _utcnow()
        error = (error or "Unknown error")[:MAX_ERROR_LENGTH]

        self.retry_count += 1
        self.error = error
        self.failure_reason = error
        self.release_lease()

        if is_poison:
            self.is_poison_message = True
            self.poisoned_at = now
            self.moved_to_dlq_at = now
            self.dlq_reason = error
            self.next_retry_at = None
        elif self.retry_count >= self.max_retries:
            self.moved_to_dlq_at = now
            self.dlq_reason = MAX_RETRIES_EXCEEDED
            self.next_retry_at = None
        else:
            self.next_retry_at = now + retry_delay(self.retry_count)

    def move_to_dlq(self, reason: str, now: Optional[datetime] = None) -> None:
        """Dead-letter without counting an attempt. Keeps an earlier DLQ timestamp."""
        if self.moved_to_dlq_at is None:
            self.moved_to_dlq_at = now or _utcnow()
        self.dlq_reason = (reason or MAX_RETRIES_EXCEEDED)[:MAX_ERROR_LENGTH]
        self.next_retry_at = None
        self.release_lease()

    def reset_for_retry(self) -> None:
        """Return the message to PENDING, clearing failure, DLQ and processed state."""
        self.retry_count = 0
        self.error = None
        self.failure_reason = None
        self.next_retry_at = None
        self.processed_on = None
        self.is_poison_message = False
        self.poisoned_at = None
        self.moved_to_dlq_at = None
        self.dlq_reason = None
        self.release_lease()

    def release_lease(self) -> None:
        self.lease_owner = None
        self.leased_until = None

    def __repr__(self) -> str:
        return (
            f"OutboxMessage(id={self.id}, type={self.type_name}, "
            f"retry_count={self.retry_count}, status={self.status().value})"
        )
