"""
Outbox Pattern Implementation

Provides transactional event publishing with guaranteed delivery.

Usage:
    from eventrelay.outbox import transactional_publish

    async with transactional_publish(db, store, registry) as tx:
        # This is atomic with your business transaction
        await tx.uow.execute("UPDATE users SET ... WHERE id = $1", user_id)
        await tx.emit(UserCreatedEvent(...), aggregate_id=user_id)
"""

from .writer import OutboxPublisher, get_outbox_publisher
from .processor import (
    AdaptiveBackoff,
    BatchResult,
    DispatchOutcome,
    OutboxProcessor,
    get_outbox_processor,
    start_outbox_processor,
    stop_outbox_processor,
)
from .models import OutboxMessage, OutboxStatus, retry_delay
from .transactional import TransactionalPublisher, transactional_publish
from .dlq import (
    DLQAction,
    DLQEntry,
    DlqManagementService,
    DlqMessageAction,
    DlqProcessingResult,
    DlqStatistics,
    get_dlq_manager,
)
from .cleanup import OutboxCleanupService

__all__ = [
    "OutboxPublisher",
    "get_outbox_publisher",
    "AdaptiveBackoff",
    "BatchResult",
    "DispatchOutcome",
    "OutboxProcessor",
    "get_outbox_processor",
    "start_outbox_processor",
    "stop_outbox_processor",
    "OutboxMessage",
    "OutboxStatus",
    "retry_delay",
    "TransactionalPublisher",
    "transactional_publish",
    "DLQAction",
    "DLQEntry",
    "DlqManagementService",
    "DlqMessageAction",
    "DlqProcessingResult",
    "DlqStatistics",
    "get_dlq_manager",
    "OutboxCleanupService",
]
