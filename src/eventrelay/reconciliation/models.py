"""
Reconciliation result records.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationActionType(str, Enum):
    REPUBLISH_EVENT = "RepublishEvent"
    LINK_ENTITIES = "LinkEntities"
    MARK_AS_POISON = "MarkAsPoison"
    SKIP_PROCESSING = "SkipProcessing"


@dataclass
class ReconciliationAction:
    """What a sweep did with one outbox message."""
    message_id: UUID
    entity_id: Optional[UUID]
    entity_type: str
    description: str
    action_type: ReconciliationActionType = ReconciliationActionType.SKIP_PROCESSING
    success: bool = False
    error_message: Optional[str] = None
    performed_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": str(self.message_id),
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "entity_type": self.entity_type,
            "description": self.description,
            "action_type": self.action_type.value,
            "success": self.success,
            "error_message": self.error_message,
            "performed_at": self.performed_at.isoformat(),
        }


@dataclass
class ReconciliationResult:
    processed_count: int = 0
    fixed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    actions: List[ReconciliationAction] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    duration: timedelta = field(default_factory=timedelta)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed_count": self.processed_count,
            "fixed_count": self.fixed_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "actions": [a.to_dict() for a in self.actions],
            "errors": list(self.errors),
            "duration_seconds": self.duration.total_seconds(),
        }


@dataclass
class ComprehensiveReconciliationResult:
    orphaned_users: ReconciliationResult = field(default_factory=ReconciliationResult)
    orphaned_members: ReconciliationResult = field(default_factory=ReconciliationResult)
    broken_links: ReconciliationResult = field(default_factory=ReconciliationResult)
    dlq_messages: ReconciliationResult = field(default_factory=ReconciliationResult)
    total_duration: timedelta = field(default_factory=timedelta)

    @property
    def sweeps(self) -> List[ReconciliationResult]:
        return [self.orphaned_users, self.orphaned_members, self.broken_links, self.dlq_messages]

    @property
    def total_processed(self) -> int:
        return sum(r.processed_count for r in self.sweeps)

    @property
    def total_fixed(self) -> int:
        return sum(r.fixed_count for r in self.sweeps)

    @property
    def total_failed(self) -> int:
        return sum(r.failed_count for r in self.sweeps)

    @property
    def total_skipped(self) -> int:
        return sum(r.skipped_count for r in self.sweeps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orphaned_users": self.orphaned_users.to_dict(),
            "orphaned_members": self.orphaned_members.to_dict(),
            "broken_links": self.broken_links.to_dict(),
            "dlq_messages": self.dlq_messages.to_dict(),
            "total_processed": self.total_processed,
            "total_fixed": self.total_fixed,
            "total_failed": self.total_failed,
            "total_skipped": self.total_skipped,
            "total_duration_seconds": self.total_duration.total_seconds(),
        }
