"""
Dead Letter Queue (DLQ) Management

Operator and scheduled actions on outbox messages that ended up in the
DLQ, either poisoned or out of retries.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from ..observability import record_counter, traced
from .models import MAX_RETRIES_EXCEEDED, OutboxMessage
from .store.base import OutboxStore

logger = logging.getLogger(__name__)

POISON_MESSAGE_REASON = "Poison message"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DLQAction(str, Enum):
    """Actions that can be taken on DLQ entries."""
    RETRY = "RETRY"
    PERMANENTLY_FAILED = "PERMANENTLY_FAILED"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"


@dataclass
class DLQEntry:
    """Operator view of a dead-lettered message."""
    id: UUID
    type_name: str
    correlation_id: Optional[str]
    aggregate_id: Optional[UUID]
    retry_count: int
    max_retries: int
    is_poison_message: bool
    dlq_reason: Optional[str]
    last_error: Optional[str]
    occurred_on: datetime
    moved_to_dlq_at: Optional[datetime]

    @classmethod
    def from_message(cls, message: OutboxMessage) -> "DLQEntry":
        return cls(
            id=message.id,
            type_name=message.type_name,
            correlation_id=message.correlation_id,
            aggregate_id=message.aggregate_id,
            retry_count=message.retry_count,
            max_retries=message.max_retries,
            is_poison_message=message.is_poison_message,
            dlq_reason=message.dlq_reason,
            last_error=message.error,
            occurred_on=message.occurred_on,
            moved_to_dlq_at=message.moved_to_dlq_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "type_name": self.type_name,
            "correlation_id": self.correlation_id,
            "aggregate_id": str(self.aggregate_id) if self.aggregate_id else None,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "is_poison_message": self.is_poison_message,
            "dlq_reason": self.dlq_reason,
            "last_error": self.last_error,
            "occurred_on": self.occurred_on.isoformat() if self.occurred_on else None,
            "moved_to_dlq_at": self.moved_to_dlq_at.isoformat() if self.moved_to_dlq_at else None,
        }


@dataclass
class DlqMessageAction:
    """Audit record for one message handled by process_dlq_messages()."""
    message_id: UUID
    message_type: str
    reason: str
    action_type: DLQAction = DLQAction.SKIPPED
    success: bool = False
    error_message: Optional[str] = None
    processed_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": str(self.message_id),
            "message_type": self.message_type,
            "reason": self.reason,
            "action_type": self.action_type.value,
            "success": self.success,
            "error_message": self.error_message,
            "processed_at": self.processed_at.isoformat(),
        }


@dataclass
class DlqProcessingResult:
    total_messages: int = 0
    retried_messages: int = 0
    permanently_failed_messages: int = 0
    skipped_messages: int = 0
    actions: List[DlqMessageAction] = field(default_factory=list)
    processed_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_messages": self.total_messages,
            "retried_messages": self.retried_messages,
            "permanently_failed_messages": self.permanently_failed_messages,
            "skipped_messages": self.skipped_messages,
            "actions": [a.to_dict() for a in self.actions],
            "processed_at": self.processed_at.isoformat(),
        }


@dataclass
class DlqStatistics:
    """
    DLQ health snapshot used for alerting.

    ``poison_messages`` and ``max_retries_exceeded_messages`` do not overlap:
    a poisoned message counts as poison whatever its retry count.
    """
    total_dlq_messages: int = 0
    poison_messages: int = 0
    max_retries_exceeded_messages: int = 0
    oldest_message_age_hours: int = 0
    messages_by_type: Dict[str, int] = field(default_factory=dict)
    messages_by_reason: Dict[str, int] = field(default_factory=dict)
    generated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_dlq_messages": self.total_dlq_messages,
            "poison_messages": self.poison_messages,
            "max_retries_exceeded_messages": self.max_retries_exceeded_messages,
            "oldest_message_age_hours": self.oldest_message_age_hours,
            "messages_by_type": dict(self.messages_by_type),
            "messages_by_reason": dict(self.messages_by_reason),
            "generated_at": self.generated_at.isoformat(),
        }


class DlqManagementService:
    """
    Manages the Dead Letter Queue.

    Responsibilities:
    - Triage DLQ messages (retry or mark permanently failed)
    - Retry or fail individual entries on operator request
    - Report statistics
    - Purge entries past retention
    """

    def __init__(self, store: OutboxStore, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self._clock = clock

    @traced("outbox.dlq.process")
    async def process_dlq_messages(self) -> DlqProcessingResult:
        """
        Decide an action for every DLQ message.

        - poisoned: left as permanently failed
        - retry_count < max_retries: reset for retry
        - otherwise: marked permanently failed ("Max retries exceeded")

        A failure on one message is recorded as an ERROR action; a failure
        to read the DLQ itself propagates.
        """
        logger.info("Starting DLQ message processing")
        result = DlqProcessingResult(processed_at=self._clock())

        messages = await self.store.get_dlq_messages()
        result.total_messages = len(messages)

        for message in messages:
            action = DlqMessageAction(
                message_id=message.id,
                message_type=message.type_name,
                reason=message.dlq_reason or "Unknown",
                processed_at=self._clock(),
            )
            try:
                if message.is_poisoned:
                    action.action_type = DLQAction.PERMANENTLY_FAILED
                    action.success = True
                    result.permanently_failed_messages += 1
                elif message.retry_count < message.max_retries:
                    action.action_type = DLQAction.RETRY
                    action.success = await self.retry_dlq_message(message.id)
                    if action.success:
                        result.retried_messages += 1
                    else:
                        result.skipped_messages += 1
                else:
                    action.action_type = DLQAction.PERMANENTLY_FAILED
                    action.success = await self.mark_dlq_message_as_permanently_failed(
                        message.id, MAX_RETRIES_EXCEEDED
                    )
                    if action.success:
                        result.permanently_failed_messages += 1
                    else:
                        result.skipped_messages += 1
            except Exception as e:
                logger.error(f"Error processing DLQ message {message.id}: {e}", exc_info=True)
                action.action_type = DLQAction.ERROR
                action.success = False
                action.error_message = str(e)
                result.skipped_messages += 1

            record_counter("dlq_actions_total", 1, {"action": action.action_type.value})
            result.actions.append(action)

        logger.info(
            f"DLQ processing completed: {result.total_messages} total, "
            f"{result.retried_messages} retried, "
            f"{result.permanently_failed_messages} permanently failed, "
            f"{result.skipped_messages} skipped"
        )
        return result

    async def retry_dlq_message(self, message_id: UUID) -> bool:
        """
        Reset a DLQ message so the dispatcher picks it up again.

        Returns False when the message does not exist, is not in the DLQ, or
        was picked up by a dispatcher after it was read.
        """
        message = await self.store.get_by_id(message_id)
        if message is None:
            logger.warning(f"DLQ message {message_id} not found")
            return False
        if not message.is_in_dlq:
            logger.warning(f"Message {message_id} is not in DLQ")
            return False

        message.reset_for_retry()
        if not await self.store.update_if_idle(message, self._clock()):
            logger.warning(f"Message {message_id} changed while being reset, skipping")
            return False

        logger.info(f"DLQ message {message_id} reset for retry")
        return True

    async def mark_dlq_message_as_permanently_failed(self, message_id: UUID, reason: str) -> bool:
        """
        Flag a message as permanently failed (poisoned).

        Already-poisoned messages are left untouched. Returns False when the
        message does not exist or was delivered.
        """
        message = await self.store.get_by_id(message_id)
        if message is None:
            logger.warning(f"DLQ message {message_id} not found")
            return False
        if message.is_processed:
            logger.warning(f"Message {message_id} was delivered, not marking as failed")
            return False
        if message.is_poisoned:
            return True

        now = self._clock()
        message.is_poison_message = True
        message.poisoned_at = now
        message.failure_reason = reason
        message.move_to_dlq(message.dlq_reason or reason, now)
        if not await self.store.update_if_idle(message, now):
            logger.warning(f"Message {message_id} changed while being marked as failed, skipping")
            return False

        logger.info(f"DLQ message {message_id} marked as permanently failed: {reason}")
        return True

    async def get_dlq_statistics(self) -> DlqStatistics:
        messages = await self.store.get_dlq_messages()
        now = self._clock()

        statistics = DlqStatistics(
            total_dlq_messages=len(messages),
            poison_messages=sum(1 for m in messages if m.is_poisoned),
            max_retries_exceeded_messages=sum(
                1 for m in messages if not m.is_poisoned and m.retry_count >= m.max_retries
            ),
            messages_by_type=dict(Counter(m.type_name for m in messages)),
            messages_by_reason=dict(Counter(m.dlq_reason or "Unknown" for m in messages)),
            generated_at=now,
        )

        if messages:
            oldest = min(m.occurred_on for m in messages)
            statistics.oldest_message_age_hours = int((now - oldest).total_seconds() // 3600)

        return statistics

    @traced("outbox.dlq.cleanup")
    async def cleanup_old_dlq_messages(self, retention_days: int = 30) -> int:
        """Delete DLQ messages that entered the DLQ before the retention cutoff."""
        cutoff = self._clock() - timedelta(days=retention_days)
        messages = await self.store.get_dlq_messages_older_than(cutoff)
        if not messages:
            return 0

        deleted = await self.store.delete_messages([m.id for m in messages])
        record_counter("outbox_cleaned_total", deleted, {"kind": "dlq"})
        logger.info(f"Cleaned up {deleted} old DLQ messages older than {cutoff.isoformat()}")
        return deleted

    # Operator helpers

    async def get_entries(self, limit: int = 100, offset: int = 0) -> List[DLQEntry]:
        messages = await self.store.get_dlq_messages(limit=limit, offset=offset)
        return [DLQEntry.from_message(m) for m in messages]

    async def get_count(self) -> int:
        return await self.store.count_dlq_messages()

    async def retry_all(self, include_poisoned: bool = False) -> int:
        """Reset every DLQ message (poisoned ones only when asked)."""
        messages = await self.store.get_dlq_messages()
        count = 0
        for message in messages:
            if message.is_poisoned and not include_poisoned:
                continue
            if await self.retry_dlq_message(message.id):
                count += 1

        logger.info(f"DLQ retry all: reset {count} of {len(messages)} entries")
        return count


# Convenience function
async def get_dlq_manager(store: Optional[OutboxStore] = None) -> DlqManagementService:
    """Get a DLQ manager on ``store`` (or the default outbox store)."""
    if store is None:
        from .store.factory import get_outbox_store
        store = await get_outbox_store()
    return DlqManagementService(store)
