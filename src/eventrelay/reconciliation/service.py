"""
User/Member Reconciliation

Users (identity context) and members (membership context) are kept in
sync only through integration events. If one of those events stalls, the
two sides drift. These sweeps find the stalled outbox messages and push
them back through the normal dispatch path with ``reset_for_retry``,
written only if no dispatcher leased or delivered the message meanwhile.

Sweeps and the message partitions they touch:
- orphaned users:   pending UserCreatedEvent
- orphaned members: pending MemberCreatedEvent
- broken links:     failed (retried, not dead-lettered) UserMemberLinkedEvent
- DLQ:              dead-lettered messages of all three types

No message belongs to two partitions, so the sweeps run concurrently.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, List

from ..events.models import MemberCreatedEvent, UserCreatedEvent, UserMemberLinkedEvent
from ..observability import create_span, record_counter
from ..outbox.models import OutboxMessage
from ..outbox.store.base import OutboxStore
from .models import (
    ComprehensiveReconciliationResult,
    ReconciliationAction,
    ReconciliationActionType,
    ReconciliationResult,
)

logger = logging.getLogger(__name__)

DEFAULT_ORPHAN_AGE = timedelta(minutes=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserMemberReconciliationService:
    """
    Re-drives stalled user/member outbox messages.

    Per-message failures are recorded on the action and the sweep moves on;
    a failure to query the store aborts the sweep and propagates.
    """

    def __init__(
        self,
        store: OutboxStore,
        orphan_age: timedelta = DEFAULT_ORPHAN_AGE,
        user_event_type: str = UserCreatedEvent.__name__,
        member_event_type: str = MemberCreatedEvent.__name__,
        link_event_type: str = UserMemberLinkedEvent.__name__,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.orphan_age = orphan_age
        self.user_event_type = user_event_type
        self.member_event_type = member_event_type
        self.link_event_type = link_event_type
        self._clock = clock

    async def reconcile_orphaned_users(self) -> ReconciliationResult:
        messages = await self.store.get_unprocessed_messages_by_type(self.user_event_type)
        return await self._sweep(
            "orphaned users",
            entity_type="User",
            candidates=self._older_than_orphan_age(messages),
            fixed_action=ReconciliationActionType.REPUBLISH_EVENT,
        )

    async def reconcile_orphaned_members(self) -> ReconciliationResult:
        messages = await self.store.get_unprocessed_messages_by_type(self.member_event_type)
        return await self._sweep(
            "orphaned members",
            entity_type="Member",
            candidates=self._older_than_orphan_age(messages),
            fixed_action=ReconciliationActionType.REPUBLISH_EVENT,
        )

    async def repair_broken_links(self) -> ReconciliationResult:
        messages = await self.store.get_failed_messages_by_type(self.link_event_type)
        return await self._sweep(
            "broken user-member links",
            entity_type="UserMemberLink",
            candidates=messages,
            fixed_action=ReconciliationActionType.LINK_ENTITIES,
        )

    async def process_dlq_messages(self) -> ReconciliationResult:
        messages: List[OutboxMessage] = []
        for type_name in (self.user_event_type, self.member_event_type, self.link_event_type):
            messages.extend(await self.store.get_dlq_messages_by_type(type_name))
        return await self._sweep(
            "user-member DLQ messages",
            entity_type="OutboxMessage",
            candidates=messages,
            fixed_action=ReconciliationActionType.REPUBLISH_EVENT,
        )

    async def perform_comprehensive_reconciliation(self) -> ComprehensiveReconciliationResult:
        """Run all four sweeps concurrently and aggregate their results."""
        logger.info("Starting comprehensive user-member reconciliation")
        started = time.monotonic()

        with create_span("reconciliation.comprehensive"):
            users, members, links, dlq = await asyncio.gather(
                self.reconcile_orphaned_users(),
                self.reconcile_orphaned_members(),
                self.repair_broken_links(),
                self.process_dlq_messages(),
            )

        result = ComprehensiveReconciliationResult(
            orphaned_users=users,
            orphaned_members=members,
            broken_links=links,
            dlq_messages=dlq,
            total_duration=timedelta(seconds=time.monotonic() - started),
        )
        logger.info(
            f"Comprehensive reconciliation completed in {result.total_duration.total_seconds():.2f}s: "
            f"{result.total_processed} processed, {result.total_fixed} fixed, "
            f"{result.total_failed} failed, {result.total_skipped} skipped"
        )
        return result

    def _older_than_orphan_age(self, messages: List[OutboxMessage]) -> List[OutboxMessage]:
        threshold = self._clock() - self.orphan_age
        return [m for m in messages if m.occurred_on <= threshold]

    async def _sweep(
        self,
        name: str,
        entity_type: str,
        candidates: List[OutboxMessage],
        fixed_action: ReconciliationActionType,
    ) -> ReconciliationResult:
        logger.info(f"Starting reconciliation of {name}")
        started = time.monotonic()
        result = ReconciliationResult(processed_count=len(candidates))
        now = self._clock()

        for message in candidates:
            action = ReconciliationAction(
                message_id=message.id,
                entity_id=message.aggregate_id,
                entity_type=entity_type,
                description=f"Processing {name}: {message.type_name}",
                performed_at=now,
            )
            try:
                if message.is_poisoned:
                    action.action_type = ReconciliationActionType.MARK_AS_POISON
                    action.success = True
                    result.skipped_count += 1
                elif message.is_leased(now):
                    action.action_type = ReconciliationActionType.SKIP_PROCESSING
                    action.success = True
                    action.description = f"Message {message.id} is being dispatched by {message.lease_owner}"
                    result.skipped_count += 1
                elif await self._requeue(message, now):
                    action.action_type = fixed_action
                    action.success = True
                    result.fixed_count += 1
                else:
                    action.action_type = ReconciliationActionType.SKIP_PROCESSING
                    action.success = True
                    action.description = f"Message {message.id} changed during the sweep"
                    result.skipped_count += 1
            except Exception as e:
                logger.error(f"Error reconciling {entity_type} message {message.id}: {e}", exc_info=True)
                action.action_type = ReconciliationActionType.SKIP_PROCESSING
                action.success = False
                action.error_message = str(e)
                result.failed_count += 1
                result.errors.append(f"Error processing message {message.id}: {e}")

            record_counter(
                "reconciliation_actions_total", 1,
                {"entity_type": entity_type, "action": action.action_type.value},
            )
            result.actions.append(action)

        result.duration = timedelta(seconds=time.monotonic() - started)
        logger.info(
            f"Reconciliation of {name} completed: {result.processed_count} processed, "
            f"{result.fixed_count} fixed, {result.failed_count} failed, {result.skipped_count} skipped"
        )
        return result

    async def _requeue(self, message: OutboxMessage, now: datetime) -> bool:
        # The candidate list is a snapshot; a dispatcher may have claimed or
        # delivered the message since, in which case nothing is written.
        message.reset_for_retry()
        return await self.store.update_if_idle(message, now)
