"""
SQLite Integration Tests

Runs the SQL store, transactional publisher, idempotency ledger and
dispatcher against a real database file.
"""

import pytest
from datetime import timedelta
from uuid import uuid4

from eventrelay.config import RelaySettings
from eventrelay.events import MemberCreatedEvent, UserCreatedEvent
from eventrelay.inbox import DatabaseIdempotencyLedger
from eventrelay.outbox import OutboxProcessor, OutboxPublisher, transactional_publish
from eventrelay.outbox.cleanup import OutboxCleanupService
from eventrelay.outbox.lifecycle import build_outbox_services
from eventrelay.outbox.models import OutboxMessage

pytestmark = pytest.mark.integration


def user_message(registry, **kwargs) -> OutboxMessage:
    return OutboxMessage.create(UserCreatedEvent(user_id=uuid4()), registry, **kwargs)


class TestDatabaseOutboxStore:
    """Store semantics on SQLite."""

    @pytest.mark.asyncio
    async def test_round_trip(self, db_store, registry, clock):
        aggregate_id = uuid4()
        message = user_message(
            registry, aggregate_id=aggregate_id, correlation_id="corr-1",
            idempotency_key="user-1", occurred_on=clock.now,
        )
        await db_store.add(message)

        loaded = await db_store.get_by_id(message.id)

        assert loaded.id == message.id
        assert loaded.aggregate_id == aggregate_id
        assert loaded.occurred_on == clock.now
        assert loaded.is_poison_message is False
        assert loaded.content == message.content
        assert (await db_store.get_by_idempotency_key("user-1")).id == message.id
        assert [m.id for m in await db_store.get_by_correlation_id("corr-1")] == [message.id]
        assert [m.id for m in await db_store.get_by_aggregate_id(aggregate_id)] == [message.id]

    @pytest.mark.asyncio
    async def test_update_persists_failure_state(self, db_store, registry, clock):
        message = user_message(registry, occurred_on=clock.now)
        await db_store.add(message)

        message.mark_failed("timeout", now=clock.now)
        await db_store.update(message)

        loaded = await db_store.get_by_id(message.id)
        assert loaded.retry_count == 1
        assert loaded.error == "timeout"
        assert loaded.next_retry_at == clock.now + timedelta(minutes=2)

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, db_store, registry):
        with pytest.raises(KeyError):
            await db_store.update(user_message(registry))

    @pytest.mark.asyncio
    async def test_update_if_idle(self, db_store, registry, clock):
        delivered = user_message(registry, occurred_on=clock.now)
        leased = user_message(registry, occurred_on=clock.now - timedelta(minutes=1))
        idle = user_message(registry, occurred_on=clock.now)
        idle.mark_failed("timeout", now=clock.now)
        await db_store.add_range([delivered, leased, idle])

        stale = delivered.model_copy(deep=True)
        delivered.mark_processed(clock.now)
        await db_store.update(delivered)
        await db_store.claim_unprocessed_messages(1, "worker-a", 60, now=clock.now)

        for message in (stale, leased, idle):
            message.reset_for_retry()

        assert await db_store.update_if_idle(stale, now=clock.now) is False
        assert await db_store.update_if_idle(leased, now=clock.now) is False
        assert await db_store.update_if_idle(idle, now=clock.now) is True
        assert await db_store.update_if_idle(user_message(registry), now=clock.now) is False

        assert (await db_store.get_by_id(delivered.id)).processed_on == clock.now
        assert (await db_store.get_by_id(leased.id)).lease_owner == "worker-a"
        assert (await db_store.get_by_id(idle.id)).retry_count == 0

        expired = clock.now + timedelta(seconds=61)
        assert await db_store.update_if_idle(leased, now=expired) is True

    @pytest.mark.asyncio
    async def test_claim_and_lease_expiry(self, db_store, registry, clock):
        first = user_message(registry, occurred_on=clock.now - timedelta(minutes=2))
        second = user_message(registry, occurred_on=clock.now - timedelta(minutes=1))
        await db_store.add_range([second, first])

        claimed = await db_store.claim_unprocessed_messages(10, "worker-a", 60, now=clock.now)

        assert [m.id for m in claimed] == [first.id, second.id]
        assert all(m.lease_owner == "worker-a" for m in claimed)
        assert await db_store.claim_unprocessed_messages(10, "worker-b", 60, now=clock.now) == []

        later = clock.now + timedelta(seconds=61)
        reclaimed = await db_store.claim_unprocessed_messages(1, "worker-b", 60, now=later)
        assert [m.id for m in reclaimed] == [first.id]
        assert reclaimed[0].lease_owner == "worker-b"

    @pytest.mark.asyncio
    async def test_claim_skips_backoff_and_dlq(self, db_store, registry, clock):
        waiting = user_message(registry, occurred_on=clock.now)
        waiting.mark_failed("timeout", now=clock.now)
        dead = user_message(registry, occurred_on=clock.now)
        dead.mark_failed("bad", is_poison=True, now=clock.now)
        ready = user_message(registry, occurred_on=clock.now)
        await db_store.add_range([waiting, dead, ready])

        claimed = await db_store.claim_unprocessed_messages(10, "w", 60, now=clock.now)

        assert [m.id for m in claimed] == [ready.id]

    @pytest.mark.asyncio
    async def test_partitions(self, db_store, registry, clock):
        pending = user_message(registry, occurred_on=clock.now)
        retrying = user_message(registry, occurred_on=clock.now)
        retrying.mark_failed("timeout", now=clock.now)
        poisoned = user_message(registry, occurred_on=clock.now)
        poisoned.mark_failed("bad", is_poison=True, now=clock.now)
        await db_store.add_range([pending, retrying, poisoned])

        unprocessed = {m.id for m in await db_store.get_unprocessed_messages_by_type("UserCreatedEvent")}
        failed = {m.id for m in await db_store.get_failed_messages_by_type("UserCreatedEvent")}
        dlq = {m.id for m in await db_store.get_dlq_messages_by_type("UserCreatedEvent")}

        assert unprocessed == {pending.id, retrying.id}
        assert failed == {retrying.id}
        assert dlq == {poisoned.id}
        assert await db_store.count_dlq_messages() == 1

    @pytest.mark.asyncio
    async def test_statistics(self, db_store, registry, clock):
        pending = user_message(registry, occurred_on=clock.now - timedelta(hours=1))
        dead = OutboxMessage.create(MemberCreatedEvent(member_id=uuid4()), registry, occurred_on=clock.now)
        dead.mark_failed("bad", is_poison=True, now=clock.now)
        done = user_message(registry, occurred_on=clock.now)
        done.mark_processed(clock.now)
        await db_store.add_range([pending, dead, done])

        statistics = await db_store.get_statistics(now=clock.now)

        assert statistics.total == 3
        assert statistics.pending == 1
        assert statistics.processed == 1
        assert statistics.dead_lettered == 1
        assert statistics.poisoned == 1
        assert statistics.oldest_pending_occurred_on == pending.occurred_on
        assert statistics.by_type == {"UserCreatedEvent": 2, "MemberCreatedEvent": 1}

    @pytest.mark.asyncio
    async def test_empty_statistics(self, db_store):
        statistics = await db_store.get_statistics()

        assert statistics.total == 0
        assert statistics.oldest_pending_occurred_on is None

    @pytest.mark.asyncio
    async def test_delete_messages(self, db_store, registry):
        messages = [user_message(registry) for _ in range(3)]
        await db_store.add_range(messages)

        assert await db_store.delete_messages([m.id for m in messages[:2]]) == 2
        assert await db_store.delete_messages([]) == 0
        assert await db_store.get_by_id(messages[2].id) is not None


class TestCleanupOnDatabase:
    """Retention boundaries with text timestamps."""

    @pytest.mark.asyncio
    async def test_cutoff_boundary(self, db_store, registry, clock):
        cutoff = clock.now - timedelta(days=7)
        at_cutoff = user_message(registry, occurred_on=cutoff)
        at_cutoff.mark_processed(cutoff)
        just_older = user_message(registry, occurred_on=cutoff)
        just_older.mark_processed(cutoff - timedelta(microseconds=1))
        await db_store.add_range([at_cutoff, just_older])

        cleanup = OutboxCleanupService(db_store, batch_delay=0, clock=clock)

        assert await cleanup.cleanup_processed_messages(retention_days=7) == 1
        assert await db_store.get_by_id(at_cutoff.id) is not None
        assert await db_store.get_by_id(just_older.id) is None


class TestTransactionalPublish:
    """Business writes and outbox writes commit together."""

    @pytest.mark.asyncio
    async def test_commit(self, db, db_store, registry):
        await db.execute("CREATE TABLE members (id TEXT PRIMARY KEY, name TEXT NOT NULL)")
        member_id = uuid4()

        async with transactional_publish(db, db_store, registry) as txn:
            await txn.uow.execute("INSERT INTO members (id, name) VALUES ($1, $2)", member_id, "Ada")
            message = await txn.emit(MemberCreatedEvent(member_id=member_id), aggregate_id=member_id)

        assert [m.id for m in txn.emitted_events] == [message.id]
        assert await db.fetchval("SELECT COUNT(*) FROM members") == 1
        assert (await db_store.get_by_id(message.id)).aggregate_id == member_id

    @pytest.mark.asyncio
    async def test_commit_batch(self, db, db_store, registry):
        events = [UserCreatedEvent(user_id=uuid4()), MemberCreatedEvent(member_id=uuid4())]

        async with transactional_publish(db, db_store, registry) as txn:
            messages = await txn.emit_batch(events, correlation_id="signup-1")

        assert len(txn.emitted_events) == 2
        stored = await db_store.get_by_correlation_id("signup-1")
        assert {m.id for m in stored} == {m.id for m in messages}

    @pytest.mark.asyncio
    async def test_rollback(self, db, db_store, registry):
        await db.execute("CREATE TABLE members (id TEXT PRIMARY KEY, name TEXT NOT NULL)")
        member_id = uuid4()

        with pytest.raises(RuntimeError):
            async with transactional_publish(db, db_store, registry) as txn:
                await txn.uow.execute("INSERT INTO members (id, name) VALUES ($1, $2)", member_id, "Ada")
                message = await txn.emit(MemberCreatedEvent(member_id=member_id))
                raise RuntimeError("payment declined")

        assert txn.emitted_events == []
        assert await db.fetchval("SELECT COUNT(*) FROM members") == 0
        assert await db_store.get_by_id(message.id) is None

    @pytest.mark.asyncio
    async def test_rollback_with_outbox_disabled_delivers_nothing(
        self, db, db_store, bus, registry, monkeypatch
    ):
        monkeypatch.setenv("OUTBOX_ENABLED", "false")
        monkeypatch.setenv("OUTBOX_MAX_RETRIES", "4")
        received = []
        bus.subscribe(MemberCreatedEvent, received.append)
        services = build_outbox_services(RelaySettings.from_env(), db_store, bus, registry)

        with pytest.raises(RuntimeError):
            async with services.transactional(db) as txn:
                await txn.emit(MemberCreatedEvent(member_id=uuid4()))
                raise RuntimeError("payment declined")

        assert received == []
        assert (await services.processor.process_batch()).claimed == 0

        async with services.transactional(db) as txn:
            committed = await txn.emit(MemberCreatedEvent(member_id=uuid4()))

        assert received == []
        assert (await db_store.get_by_id(committed.id)).max_retries == 4
        assert (await services.processor.process_batch()).processed == 1
        assert len(received) == 1


class TestDatabaseIdempotencyLedger:
    """event_idempotency table."""

    @pytest.mark.asyncio
    async def test_try_mark_mark_remove(self, db):
        ledger = DatabaseIdempotencyLedger(db)
        aggregate_id = uuid4()

        assert await ledger.try_mark_event_processed("key-1", aggregate_id) is True
        assert await ledger.try_mark_event_processed("key-1") is False
        await ledger.mark_event_processed("key-1")

        record = await ledger.get("key-1")
        assert record.is_processed is True
        assert record.aggregate_id == str(aggregate_id)
        assert record.processed_at is not None

        assert await ledger.remove("key-1") is True
        assert not await ledger.is_event_processed("key-1")
        assert await ledger.get("key-1") is None


class TestDispatchOnDatabase:
    """Publish, dispatch and ledger write end to end."""

    @pytest.mark.asyncio
    async def test_dispatch_end_to_end(self, db, db_store, registry, bus):
        received = []
        bus.subscribe(UserCreatedEvent, received.append)
        ledger = DatabaseIdempotencyLedger(db)
        publisher = OutboxPublisher(db_store, registry)
        processor = OutboxProcessor(db_store, bus, registry, ledger=ledger, owner_id="itest")

        message = await publisher.publish(UserCreatedEvent(user_id=uuid4()), idempotency_key="user-9")
        result = await processor.process_batch()

        assert result.processed == 1
        assert len(received) == 1
        stored = await db_store.get_by_id(message.id)
        assert stored.is_processed
        assert stored.lease_owner is None
        assert await ledger.is_event_processed("user-9")
        assert (await processor.process_batch()).claimed == 0

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(self, db_store, registry, bus):
        def unavailable(event):
            raise ConnectionError("downstream unavailable")

        bus.subscribe(UserCreatedEvent, unavailable)
        publisher = OutboxPublisher(db_store, registry)
        processor = OutboxProcessor(db_store, bus, registry, owner_id="itest")

        message = await publisher.publish(UserCreatedEvent(user_id=uuid4()))
        result = await processor.process_batch()

        assert result.retry_scheduled == 1
        stored = await db_store.get_by_id(message.id)
        assert stored.retry_count == 1
        assert stored.next_retry_at is not None
        assert stored.lease_owner is None
