"""
Idempotency Guard

Consumer-side de-duplication. Outbox delivery is at-least-once, so handlers
that must not run twice wrap their work in a guard keyed by the event's
idempotency key.
"""

import logging
from typing import Optional, Union
from uuid import UUID

from .ledger import IdempotencyLedger

logger = logging.getLogger(__name__)


class IdempotencyGuard:
    """
    Guards against duplicate event processing.

    The key is claimed on entry; if the body raises, the claim is removed
    so a redelivery can try again.

    Usage:
        async with IdempotencyGuard(ledger, event.idempotency_key, event.user_id) as guard:
            if guard.should_process:
                await create_member(event)
            else:
                logger.info("Event already processed, skipping")
    """

    def __init__(
        self,
        ledger: IdempotencyLedger,
        idempotency_key: Optional[str],
        aggregate_id: Union[UUID, str, None] = None,
    ):
        self.ledger = ledger
        self.idempotency_key = idempotency_key
        self.aggregate_id = aggregate_id
        self.should_process = False
        self._claimed = False

    async def __aenter__(self):
        if not self.idempotency_key:
            # Nothing to de-duplicate on
            self.should_process = True
            return self

        self._claimed = await self.ledger.try_mark_event_processed(
            self.idempotency_key, self.aggregate_id
        )
        self.should_process = self._claimed
        if self._claimed:
            logger.debug(f"IdempotencyGuard: key {self.idempotency_key} claimed for processing")
        else:
            logger.debug(f"IdempotencyGuard: key {self.idempotency_key} already processed")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None and self._claimed:
            try:
                await self.ledger.remove(self.idempotency_key)
                logger.warning(
                    f"IdempotencyGuard: released key {self.idempotency_key} after failed processing"
                )
            except Exception as remove_error:
                logger.error(
                    f"IdempotencyGuard: failed to release key {self.idempotency_key}: {remove_error}"
                )
        return False
