"""
Tests for Dead Letter Queue management.
"""

import pytest
from datetime import timedelta
from uuid import uuid4

from eventrelay.events import MemberCreatedEvent, UserCreatedEvent
from eventrelay.outbox.dlq import DLQAction, DlqManagementService
from eventrelay.outbox.models import MAX_RETRIES_EXCEEDED, OutboxMessage


@pytest.fixture
def dlq(store, clock):
    return DlqManagementService(store, clock=clock)


def user_message(registry, clock, **kwargs) -> OutboxMessage:
    return OutboxMessage.create(UserCreatedEvent(user_id=uuid4()), registry, occurred_on=clock.now, **kwargs)


def poisoned(registry, clock, reason="Failed to deserialize event: bad json") -> OutboxMessage:
    message = user_message(registry, clock)
    message.mark_failed(reason, is_poison=True, now=clock.now)
    return message


def exhausted(registry, clock) -> OutboxMessage:
    message = user_message(registry, clock, max_retries=1)
    message.mark_failed("timeout", now=clock.now)
    return message


class TestDlqStatistics:
    """Health snapshot."""

    @pytest.mark.asyncio
    async def test_counts_poisoned_and_exhausted(self, dlq, store, registry, clock):
        """2 poisoned + 3 retry-exhausted + 1 pending -> 5 in the DLQ."""
        messages = [poisoned(registry, clock) for _ in range(2)]
        messages += [exhausted(registry, clock) for _ in range(3)]
        messages.append(user_message(registry, clock))
        await store.add_range(messages)

        statistics = await dlq.get_dlq_statistics()

        assert statistics.total_dlq_messages == 5
        assert statistics.poison_messages == 2
        assert statistics.max_retries_exceeded_messages == 3
        assert statistics.messages_by_type == {"UserCreatedEvent": 5}
        assert statistics.messages_by_reason[MAX_RETRIES_EXCEEDED] == 3

    @pytest.mark.asyncio
    async def test_oldest_message_age(self, dlq, store, registry, clock):
        old = poisoned(registry, clock)
        old.occurred_on = clock.now - timedelta(hours=5, minutes=30)
        await store.add(old)

        statistics = await dlq.get_dlq_statistics()
        assert statistics.oldest_message_age_hours == 5

    @pytest.mark.asyncio
    async def test_empty_dlq(self, dlq):
        statistics = await dlq.get_dlq_statistics()

        assert statistics.total_dlq_messages == 0
        assert statistics.oldest_message_age_hours == 0
        assert statistics.to_dict()["messages_by_type"] == {}


class TestRetryDlqMessage:
    """Operator retry."""

    @pytest.mark.asyncio
    async def test_resets_dlq_message(self, dlq, store, registry, clock):
        message = poisoned(registry, clock)
        await store.add(message)

        assert await dlq.retry_dlq_message(message.id) is True

        stored = await store.get_by_id(message.id)
        assert stored.moved_to_dlq_at is None
        assert stored.is_poison_message is False
        assert stored.retry_count == 0
        assert stored.should_retry(clock.now)

    @pytest.mark.asyncio
    async def test_rejects_missing_and_non_dlq(self, dlq, store, registry, clock):
        pending = user_message(registry, clock)
        await store.add(pending)

        assert await dlq.retry_dlq_message(uuid4()) is False
        assert await dlq.retry_dlq_message(pending.id) is False

    @pytest.mark.asyncio
    async def test_delivery_after_read_is_not_undone(self, dlq, store, registry, clock):
        """Another operator retried it and a dispatcher delivered it in between."""
        message = poisoned(registry, clock)
        await store.add(message)

        original_get = store.get_by_id

        async def get_then_deliver(message_id):
            snapshot = await original_get(message_id)
            delivered = snapshot.model_copy(deep=True)
            delivered.reset_for_retry()
            delivered.mark_processed(clock.now)
            await store.update(delivered)
            return snapshot

        store.get_by_id = get_then_deliver

        assert await dlq.retry_dlq_message(message.id) is False
        stored = await original_get(message.id)
        assert stored.processed_on == clock.now
        assert stored.is_in_dlq is False

    @pytest.mark.asyncio
    async def test_leased_message_not_reset(self, dlq, store, registry, clock):
        message = poisoned(registry, clock)
        await store.add(message)

        original_get = store.get_by_id

        async def get_then_claim(message_id):
            snapshot = await original_get(message_id)
            live = snapshot.model_copy(deep=True)
            live.reset_for_retry()
            await store.update(live)
            await store.claim_unprocessed_messages(10, "dispatcher-1", 60)
            return snapshot

        store.get_by_id = get_then_claim

        assert await dlq.retry_dlq_message(message.id) is False
        assert (await original_get(message.id)).lease_owner == "dispatcher-1"


class TestMarkPermanentlyFailed:
    """Operator give-up."""

    @pytest.mark.asyncio
    async def test_poisons_exhausted_message(self, dlq, store, registry, clock):
        message = exhausted(registry, clock)
        await store.add(message)

        assert await dlq.mark_dlq_message_as_permanently_failed(message.id, "customer deleted") is True

        stored = await store.get_by_id(message.id)
        assert stored.is_poison_message is True
        assert stored.poisoned_at == clock.now
        assert stored.failure_reason == "customer deleted"
        assert stored.moved_to_dlq_at is not None

    @pytest.mark.asyncio
    async def test_already_poisoned_is_noop(self, dlq, store, registry, clock):
        message = poisoned(registry, clock, reason="original")
        await store.add(message)
        clock.advance(hours=1)

        assert await dlq.mark_dlq_message_as_permanently_failed(message.id, "again") is True

        stored = await store.get_by_id(message.id)
        assert stored.failure_reason == "original"
        assert stored.poisoned_at == clock.now - timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_processed_or_missing_rejected(self, dlq, store, registry, clock):
        done = user_message(registry, clock)
        done.mark_processed(clock.now)
        await store.add(done)

        assert await dlq.mark_dlq_message_as_permanently_failed(done.id, "x") is False
        assert await dlq.mark_dlq_message_as_permanently_failed(uuid4(), "x") is False


class TestProcessDlqMessages:
    """Scheduled triage."""

    @pytest.mark.asyncio
    async def test_triage(self, dlq, store, registry, clock):
        poison = poisoned(registry, clock)
        out_of_retries = exhausted(registry, clock)
        # Operator-moved message with retries left
        parked = user_message(registry, clock)
        parked.move_to_dlq("manual hold", clock.now)
        await store.add_range([poison, out_of_retries, parked])

        result = await dlq.process_dlq_messages()

        actions = {a.message_id: a for a in result.actions}
        assert result.total_messages == 3
        assert result.retried_messages == 1
        assert result.permanently_failed_messages == 2
        assert result.skipped_messages == 0
        assert actions[parked.id].action_type == DLQAction.RETRY
        assert actions[poison.id].action_type == DLQAction.PERMANENTLY_FAILED
        assert actions[out_of_retries.id].action_type == DLQAction.PERMANENTLY_FAILED

        assert (await store.get_by_id(parked.id)).is_in_dlq is False
        assert (await store.get_by_id(out_of_retries.id)).is_poison_message is True

    @pytest.mark.asyncio
    async def test_per_message_error_recorded(self, dlq, store, registry, clock):
        parked = user_message(registry, clock)
        parked.move_to_dlq("manual hold", clock.now)
        await store.add(parked)

        async def broken_update(message, now=None):
            raise ConnectionError("db unavailable")

        store.update_if_idle = broken_update
        result = await dlq.process_dlq_messages()

        assert result.skipped_messages == 1
        assert result.actions[0].action_type == DLQAction.ERROR
        assert "db unavailable" in result.actions[0].error_message

    @pytest.mark.asyncio
    async def test_store_read_failure_propagates(self, dlq, store):
        async def broken_read(*args, **kwargs):
            raise ConnectionError("db unavailable")

        store.get_dlq_messages = broken_read
        with pytest.raises(ConnectionError):
            await dlq.process_dlq_messages()


class TestDlqRetention:
    """Purging old DLQ entries."""

    @pytest.mark.asyncio
    async def test_cleanup_old_dlq_messages(self, dlq, store, registry, clock):
        old = poisoned(registry, clock)
        old.moved_to_dlq_at = clock.now - timedelta(days=31)
        recent = poisoned(registry, clock)
        recent.moved_to_dlq_at = clock.now - timedelta(days=29)
        await store.add_range([old, recent])

        assert await dlq.cleanup_old_dlq_messages(retention_days=30) == 1
        assert await store.get_by_id(old.id) is None
        assert await store.get_by_id(recent.id) is not None

    @pytest.mark.asyncio
    async def test_nothing_to_clean(self, dlq):
        assert await dlq.cleanup_old_dlq_messages() == 0


class TestOperatorHelpers:
    """Listing and bulk retry."""

    @pytest.mark.asyncio
    async def test_entries_and_retry_all(self, dlq, store, registry, clock):
        poison = poisoned(registry, clock)
        tired = exhausted(registry, clock)
        await store.add_range([poison, tired, OutboxMessage.create(MemberCreatedEvent(member_id=uuid4()), registry)])

        entries = await dlq.get_entries()
        assert {e.id for e in entries} == {poison.id, tired.id}
        assert await dlq.get_count() == 2

        assert await dlq.retry_all() == 1
        assert await dlq.get_count() == 1
        assert await dlq.retry_all(include_poisoned=True) == 1
        assert await dlq.get_count() == 0
