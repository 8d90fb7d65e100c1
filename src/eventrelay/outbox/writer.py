"""
Outbox Publisher

Writes integration events to the outbox in the same transaction as the
business change that produced them. Nothing is delivered here; the
dispatcher picks the rows up after commit.
"""

import logging
from contextlib import asynccontextmanager
from typing import Callable, List, Optional, Sequence
from datetime import datetime, timezone
from uuid import UUID

from pydantic import BaseModel

from ..config import outbox_max_retries
from ..events.registry import EventTypeRegistry
from ..observability import record_counter
from .models import OutboxMessage
from .store.base import OutboxStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutboxPublisher:
    """
    Writes events to the outbox for reliable delivery.

    Usage:
        async with db.transaction() as uow:
            await uow.execute("INSERT INTO users ...", ...)
            publisher = OutboxPublisher(store.bind(uow), registry)
            await publisher.publish(UserCreatedEvent(...), aggregate_id=user_id)
        # Transaction commits, outbox row is persisted with the user

    ``max_retries`` defaults to OUTBOX_MAX_RETRIES.
    """

    def __init__(
        self,
        store: OutboxStore,
        registry: EventTypeRegistry,
        max_retries: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._registry = registry
        self._max_retries = outbox_max_retries() if max_retries is None else max_retries
        self._clock = clock

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def _build(
        self,
        event: BaseModel,
        aggregate_id: Optional[UUID],
        correlation_id: Optional[str],
        idempotency_key: Optional[str],
    ) -> OutboxMessage:
        return OutboxMessage.create(
            event,
            self._registry,
            aggregate_id=aggregate_id,
            correlation_id=correlation_id or getattr(event, "correlation_id", None),
            idempotency_key=idempotency_key or getattr(event, "idempotency_key", None),
            max_retries=self._max_retries,
            occurred_on=self._clock(),
        )

    async def publish(
        self,
        event: BaseModel,
        aggregate_id: Optional[UUID] = None,
        correlation_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> OutboxMessage:
        """
        Write one event to the outbox.

        Args:
            event: Registered integration event
            aggregate_id: Id of the aggregate that raised the event
            correlation_id: Defaults to the event's own correlation_id
            idempotency_key: Defaults to the event's own idempotency_key

        Returns:
            The pending OutboxMessage
        """
        message = self._build(event, aggregate_id, correlation_id, idempotency_key)

        await self._store.add(message)
        record_counter("outbox_published_total", 1, {"event_type": message.type_name})

        logger.debug(
            "Wrote event to outbox: id=%s type=%s correlation=%s",
            message.id, message.type_name, message.correlation_id
        )
        return message

    async def publish_batch(
        self,
        events: Sequence[BaseModel],
        aggregate_id: Optional[UUID] = None,
        correlation_id: Optional[str] = None,
    ) -> List[OutboxMessage]:
        """Write several events in one store call (and one transaction)."""
        messages = [self._build(e, aggregate_id, correlation_id, None) for e in events]
        if not messages:
            return []

        await self._store.add_range(messages)
        for message in messages:
            record_counter("outbox_published_total", 1, {"event_type": message.type_name})

        logger.debug(f"Wrote {len(messages)} events to outbox")
        return messages


@asynccontextmanager
async def get_outbox_publisher(registry: EventTypeRegistry, max_retries: Optional[int] = None):
    """
    Outbox publisher on the default store (autocommit writes).

    Usage:
        async with get_outbox_publisher(registry) as publisher:
            await publisher.publish(event)
    """
    from .store.factory import get_outbox_store

    store = await get_outbox_store()
    yield OutboxPublisher(store, registry, max_retries=max_retries)
