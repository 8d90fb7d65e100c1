"""
In-memory outbox store.

Single-process stand-in for the database store, used by tests and by
embedded deployments that do not need durability. A lock serialises
claims so concurrent dispatchers in one event loop never share a message.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from ..models import OutboxMessage
from .base import OutboxStatistics, OutboxStore, StoreBackend


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_dispatchable(message: OutboxMessage, now: datetime) -> bool:
    return message.should_retry(now) and not message.is_leased(now)


class InMemoryOutboxStore(OutboxStore):
    """Dict-backed outbox store."""

    backend = StoreBackend.MEMORY

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._messages: Dict[UUID, OutboxMessage] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _copies(self, messages: Iterable[OutboxMessage]) -> List[OutboxMessage]:
        return [m.model_copy(deep=True) for m in messages]

    # Writes

    async def add(self, message: OutboxMessage) -> None:
        async with self._lock:
            if message.id in self._messages:
                raise ValueError(f"Outbox message {message.id} already exists")
            self._messages[message.id] = message.model_copy(deep=True)

    async def add_range(self, messages: Sequence[OutboxMessage]) -> None:
        async with self._lock:
            duplicates = [m.id for m in messages if m.id in self._messages]
            if duplicates:
                raise ValueError(f"Outbox messages already exist: {duplicates}")
            for message in messages:
                self._messages[message.id] = message.model_copy(deep=True)

    async def update(self, message: OutboxMessage) -> None:
        async with self._lock:
            if message.id not in self._messages:
                raise KeyError(f"Outbox message {message.id} not found")
            self._messages[message.id] = message.model_copy(deep=True)

    async def update_if_idle(self, message: OutboxMessage, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        async with self._lock:
            current = self._messages.get(message.id)
            if current is None or current.is_processed or current.is_leased(now):
                return False
            self._messages[message.id] = message.model_copy(deep=True)
            return True

    async def delete_messages(self, ids: Sequence[UUID]) -> int:
        async with self._lock:
            deleted = 0
            for message_id in ids:
                if self._messages.pop(message_id, None) is not None:
                    deleted += 1
            return deleted

    # Dispatch

    async def get_unprocessed_messages(
        self, limit: int = 100, now: Optional[datetime] = None
    ) -> List[OutboxMessage]:
        now = now or self._clock()
        eligible = sorted(
            (m for m in self._messages.values() if _is_dispatchable(m, now)),
            key=lambda m: m.occurred_on,
        )
        return self._copies(eligible[:limit])

    async def claim_unprocessed_messages(
        self,
        limit: int,
        owner: str,
        lease_seconds: int,
        now: Optional[datetime] = None,
    ) -> List[OutboxMessage]:
        now = now or self._clock()
        async with self._lock:
            eligible = sorted(
                (m for m in self._messages.values() if _is_dispatchable(m, now)),
                key=lambda m: m.occurred_on,
            )[:limit]
            for message in eligible:
                message.lease_owner = owner
                message.leased_until = now + timedelta(seconds=lease_seconds)
            return self._copies(eligible)

    async def get_by_id(self, message_id: UUID) -> Optional[OutboxMessage]:
        message = self._messages.get(message_id)
        return message.model_copy(deep=True) if message else None

    # Type-filtered partitions

    async def get_unprocessed_messages_by_type(self, type_name: str) -> List[OutboxMessage]:
        return self._copies(
            m for m in self._ordered()
            if m.type_name == type_name and not m.is_processed
            and not m.is_in_dlq and not m.is_poison_message
        )

    async def get_failed_messages_by_type(self, type_name: str) -> List[OutboxMessage]:
        return self._copies(
            m for m in self._ordered()
            if m.type_name == type_name and not m.is_processed
            and not m.is_in_dlq and m.retry_count > 0
        )

    async def get_dlq_messages_by_type(self, type_name: str) -> List[OutboxMessage]:
        return self._copies(
            m for m in self._dlq_ordered() if m.type_name == type_name
        )

    # DLQ

    async def get_dlq_messages(
        self, limit: Optional[int] = None, offset: int = 0
    ) -> List[OutboxMessage]:
        messages = self._dlq_ordered()[offset:]
        if limit is not None:
            messages = messages[:limit]
        return self._copies(messages)

    async def count_dlq_messages(self) -> int:
        return sum(1 for m in self._messages.values() if m.is_in_dlq)

    async def get_dlq_messages_older_than(self, cutoff: datetime) -> List[OutboxMessage]:
        return self._copies(m for m in self._dlq_ordered() if m.moved_to_dlq_at < cutoff)

    # Retention

    async def get_processed_messages_older_than(
        self, cutoff: datetime, limit: int
    ) -> List[OutboxMessage]:
        processed = sorted(
            (m for m in self._messages.values()
             if m.processed_on is not None and m.processed_on < cutoff),
            key=lambda m: m.processed_on,
        )
        return self._copies(processed[:limit])

    async def get_failed_messages_older_than(
        self, cutoff: datetime, limit: int
    ) -> List[OutboxMessage]:
        failed = [m for m in self._dlq_ordered() if m.moved_to_dlq_at < cutoff]
        return self._copies(failed[:limit])

    # Lookups

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[OutboxMessage]:
        for message in self._ordered():
            if message.idempotency_key == idempotency_key:
                return message.model_copy(deep=True)
        return None

    async def get_by_correlation_id(self, correlation_id: str) -> List[OutboxMessage]:
        return self._copies(m for m in self._ordered() if m.correlation_id == correlation_id)

    async def get_by_aggregate_id(self, aggregate_id: UUID) -> List[OutboxMessage]:
        return self._copies(m for m in self._ordered() if m.aggregate_id == aggregate_id)

    async def get_statistics(self, now: Optional[datetime] = None) -> OutboxStatistics:
        now = now or self._clock()
        messages = list(self._messages.values())
        pending = [
            m for m in messages
            if not m.is_processed and not m.is_in_dlq and not m.is_poison_message
        ]
        return OutboxStatistics(
            total=len(messages),
            pending=len(pending),
            processed=sum(1 for m in messages if m.is_processed),
            failed=sum(1 for m in pending if m.retry_count > 0),
            dead_lettered=sum(1 for m in messages if m.is_in_dlq),
            poisoned=sum(1 for m in messages if m.is_poison_message),
            leased=sum(1 for m in messages if m.is_leased(now)),
            oldest_pending_occurred_on=min((m.occurred_on for m in pending), default=None),
            by_type=dict(Counter(m.type_name for m in messages)),
        )

    def _ordered(self) -> List[OutboxMessage]:
        return sorted(self._messages.values(), key=lambda m: m.occurred_on)

    def _dlq_ordered(self) -> List[OutboxMessage]:
        return sorted(
            (m for m in self._messages.values() if m.is_in_dlq),
            key=lambda m: m.moved_to_dlq_at,
        )

    def __len__(self) -> int:
        return len(self._messages)
