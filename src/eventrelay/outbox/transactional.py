"""
Transactional Event Publisher

Combines business operations with outbox writes in a single database
transaction: either both commit or both roll back.
"""

from contextlib import AsyncExitStack, asynccontextmanager
from typing import List, Optional, Sequence
from uuid import UUID

from pydantic import BaseModel

from ..database.adapter import DatabaseAdapter, UnitOfWork
from ..events.registry import EventTypeRegistry
from .models import OutboxMessage
from .store.base import OutboxStore
from .writer import OutboxPublisher


class TransactionalPublisher:
    """
    Publishes events transactionally with business operations.

    Usage:
        async with TransactionalPublisher(db, store, registry) as txn:
            await txn.uow.execute("INSERT INTO members ...", ...)
            await txn.emit(MemberCreatedEvent(...), aggregate_id=member_id)
        # Both commit together or both roll back
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        store: OutboxStore,
        registry: EventTypeRegistry,
        max_retries: Optional[int] = None,
    ):
        self.db = db
        self.uow: Optional[UnitOfWork] = None
        self.publisher: Optional[OutboxPublisher] = None
        self._store = store
        self._registry = registry
        self._max_retries = max_retries
        self._events: List[OutboxMessage] = []
        self._stack: Optional[AsyncExitStack] = None

    async def __aenter__(self):
        self._stack = AsyncExitStack()
        self.uow = await self._stack.enter_async_context(self.db.transaction())
        self.publisher = OutboxPublisher(
            self._store.bind(self.uow), self._registry, max_retries=self._max_retries
        )
        self._events = []
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            # Rolled back with the transaction
            self._events = []
        try:
            return await self._stack.__aexit__(exc_type, exc_val, exc_tb)
        finally:
            self.uow = None
            self._stack = None

    async def emit(
        self,
        event: BaseModel,
        aggregate_id: Optional[UUID] = None,
        correlation_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> OutboxMessage:
        """Write an event to the outbox inside the current transaction."""
        message = await self.publisher.publish(
            event,
            aggregate_id=aggregate_id,
            correlation_id=correlation_id,
            idempotency_key=idempotency_key,
        )
        self._events.append(message)
        return message

    async def emit_batch(
        self,
        events: Sequence[BaseModel],
        aggregate_id: Optional[UUID] = None,
        correlation_id: Optional[str] = None,
    ) -> List[OutboxMessage]:
        """Write several events inside the current transaction."""
        messages = await self.publisher.publish_batch(
            events, aggregate_id=aggregate_id, correlation_id=correlation_id
        )
        self._events.extend(messages)
        return messages

    @property
    def emitted_events(self) -> List[OutboxMessage]:
        """Messages written in this transaction (empty after a rollback)."""
        return self._events.copy()


@asynccontextmanager
async def transactional_publish(
    db: DatabaseAdapter,
    store: OutboxStore,
    registry: EventTypeRegistry,
    max_retries: Optional[int] = None,
):
    """
    Context manager for transactional event publishing.

    Usage:
        async with transactional_publish(db, store, registry) as txn:
            await txn.uow.execute("INSERT INTO users ...")
            await txn.emit(UserCreatedEvent(...), aggregate_id=user_id)
    """
    publisher = TransactionalPublisher(db, store, registry, max_retries=max_retries)
    async with publisher:
        yield publisher
