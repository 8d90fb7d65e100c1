"""
Idempotency Ledger

Consumer-side de-duplication for at-least-once outbox delivery.

Usage:
    from eventrelay.inbox import IdempotencyGuard

    async with IdempotencyGuard(ledger, event.idempotency_key) as guard:
        if guard.should_process:
            await do_something(event)
"""

from .guard import IdempotencyGuard
from .ledger import (
    DatabaseIdempotencyLedger,
    IdempotencyLedger,
    IdempotencyRecord,
    InMemoryIdempotencyLedger,
)

__all__ = [
    "IdempotencyGuard",
    "IdempotencyLedger",
    "IdempotencyRecord",
    "InMemoryIdempotencyLedger",
    "DatabaseIdempotencyLedger",
]
