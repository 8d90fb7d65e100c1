"""Cross-aggregate reconciliation sweeps over the outbox."""

from .models import (
    ComprehensiveReconciliationResult,
    ReconciliationAction,
    ReconciliationActionType,
    ReconciliationResult,
)
from .service import UserMemberReconciliationService

__all__ = [
    "ComprehensiveReconciliationResult",
    "ReconciliationAction",
    "ReconciliationActionType",
    "ReconciliationResult",
    "UserMemberReconciliationService",
]
