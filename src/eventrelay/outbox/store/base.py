"""
OutboxStore Abstract Base Class

Defines the persistence port used by the publisher, dispatcher, DLQ
manager, cleanup service and reconciliation sweeps.

Query partitions (disjoint by construction):
- unprocessed: not processed, not dead-lettered, not poisoned
- failed:      not processed, not dead-lettered, retry_count > 0
- dlq:         moved_to_dlq_at set (poisoned or retry-exhausted)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from ..models import OutboxMessage


class StoreBackend(str, Enum):
    """Supported outbox store backends."""

    MEMORY = "memory"
    DATABASE = "database"


@dataclass
class OutboxStatistics:
    """Point-in-time counts across the outbox table."""

    total: int = 0
    pending: int = 0
    processed: int = 0
    failed: int = 0
    dead_lettered: int = 0
    poisoned: int = 0
    leased: int = 0
    oldest_pending_occurred_on: Optional[datetime] = None
    by_type: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "processed": self.processed,
            "failed": self.failed,
            "dead_lettered": self.dead_lettered,
            "poisoned": self.poisoned,
            "leased": self.leased,
            "oldest_pending_occurred_on": (
                self.oldest_pending_occurred_on.isoformat()
                if self.oldest_pending_occurred_on else None
            ),
            "by_type": dict(self.by_type),
        }


class OutboxStore(ABC):
    """
    Abstract base class for outbox stores.

    Messages returned by a store are detached copies: mutate them and call
    ``update`` to persist. ``update`` writes every column, including the
    cleared lease.
    """

    backend: StoreBackend

    def bind(self, uow: Any) -> "OutboxStore":
        """Return a store whose writes join the given unit of work."""
        return self

    # Writes

    @abstractmethod
    async def add(self, message: OutboxMessage) -> None:
        ...

    @abstractmethod
    async def add_range(self, messages: Sequence[OutboxMessage]) -> None:
        ...

    @abstractmethod
    async def update(self, message: OutboxMessage) -> None:
        ...

    @abstractmethod
    async def update_if_idle(self, message: OutboxMessage, now: Optional[datetime] = None) -> bool:
        """
        Write ``message`` only while the stored row is undelivered and not
        under a live lease.

        Returns False, writing nothing, when the row was delivered, is
        leased by a dispatcher or no longer exists.
        """

    @abstractmethod
    async def delete_messages(self, ids: Sequence[UUID]) -> int:
        """Delete by id. Returns the number of rows removed."""

    # Dispatch

    @abstractmethod
    async def get_unprocessed_messages(
        self, limit: int = 100, now: Optional[datetime] = None
    ) -> List[OutboxMessage]:
        """Messages eligible for dispatch now, oldest first."""

    @abstractmethod
    async def claim_unprocessed_messages(
        self,
        limit: int,
        owner: str,
        lease_seconds: int,
        now: Optional[datetime] = None,
    ) -> List[OutboxMessage]:
        """
        Atomically lease up to ``limit`` eligible messages to ``owner``.

        Messages under a live lease held by another owner are never returned.
        """

    @abstractmethod
    async def get_by_id(self, message_id: UUID) -> Optional[OutboxMessage]:
        ...

    # Type-filtered partitions

    @abstractmethod
    async def get_unprocessed_messages_by_type(self, type_name: str) -> List[OutboxMessage]:
        ...

    @abstractmethod
    async def get_failed_messages_by_type(self, type_name: str) -> List[OutboxMessage]:
        ...

    @abstractmethod
    async def get_dlq_messages_by_type(self, type_name: str) -> List[OutboxMessage]:
        ...

    # DLQ

    @abstractmethod
    async def get_dlq_messages(
        self, limit: Optional[int] = None, offset: int = 0
    ) -> List[OutboxMessage]:
        """Dead-lettered messages, oldest DLQ entry first."""

    @abstractmethod
    async def count_dlq_messages(self) -> int:
        ...

    @abstractmethod
    async def get_dlq_messages_older_than(self, cutoff: datetime) -> List[OutboxMessage]:
        """DLQ messages with moved_to_dlq_at strictly before ``cutoff``."""

    # Retention

    @abstractmethod
    async def get_processed_messages_older_than(
        self, cutoff: datetime, limit: int
    ) -> List[OutboxMessage]:
        """Processed messages with processed_on strictly before ``cutoff``."""

    @abstractmethod
    async def get_failed_messages_older_than(
        self, cutoff: datetime, limit: int
    ) -> List[OutboxMessage]:
        """Dead-lettered messages with moved_to_dlq_at strictly before ``cutoff``."""

    # Lookups

    @abstractmethod
    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[OutboxMessage]:
        ...

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> List[OutboxMessage]:
        ...

    @abstractmethod
    async def get_by_aggregate_id(self, aggregate_id: UUID) -> List[OutboxMessage]:
        ...

    @abstractmethod
    async def get_statistics(self, now: Optional[datetime] = None) -> OutboxStatistics:
        ...
