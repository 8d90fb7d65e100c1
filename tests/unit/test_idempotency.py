"""
Tests for the idempotency ledger and consumer-side guard.
"""

import pytest
from uuid import uuid4

from eventrelay.inbox import IdempotencyGuard, InMemoryIdempotencyLedger


class TestInMemoryIdempotencyLedger:
    """Ledger semantics."""

    @pytest.mark.asyncio
    async def test_mark_is_repeatable(self, ledger):
        aggregate_id = uuid4()
        await ledger.mark_event_processed("key-1", aggregate_id)
        await ledger.mark_event_processed("key-1", aggregate_id)

        record = await ledger.get("key-1")
        assert await ledger.is_event_processed("key-1")
        assert record.aggregate_id == str(aggregate_id)
        assert record.processed_at is not None

    @pytest.mark.asyncio
    async def test_try_mark_only_once(self, ledger):
        assert await ledger.try_mark_event_processed("key-2") is True
        assert await ledger.try_mark_event_processed("key-2") is False

    @pytest.mark.asyncio
    async def test_remove(self, ledger):
        await ledger.mark_event_processed("key-3")

        assert await ledger.remove("key-3") is True
        assert await ledger.remove("key-3") is False
        assert not await ledger.is_event_processed("key-3")
        assert await ledger.get("key-3") is None


class TestIdempotencyGuard:
    """Duplicate suppression around handler bodies."""

    @pytest.mark.asyncio
    async def test_first_delivery_processes(self, ledger):
        async with IdempotencyGuard(ledger, "evt-1") as guard:
            assert guard.should_process

        assert await ledger.is_event_processed("evt-1")

    @pytest.mark.asyncio
    async def test_redelivery_skipped(self, ledger):
        runs = []
        for _ in range(2):
            async with IdempotencyGuard(ledger, "evt-2") as guard:
                if guard.should_process:
                    runs.append(1)

        assert runs == [1]

    @pytest.mark.asyncio
    async def test_failure_releases_claim(self, ledger):
        with pytest.raises(RuntimeError):
            async with IdempotencyGuard(ledger, "evt-3"):
                raise RuntimeError("handler crashed")

        assert not await ledger.is_event_processed("evt-3")
        async with IdempotencyGuard(ledger, "evt-3") as guard:
            assert guard.should_process

    @pytest.mark.asyncio
    async def test_skipped_failure_keeps_original_claim(self, ledger):
        await ledger.mark_event_processed("evt-4")

        with pytest.raises(RuntimeError):
            async with IdempotencyGuard(ledger, "evt-4") as guard:
                assert not guard.should_process
                raise RuntimeError("unrelated")

        assert await ledger.is_event_processed("evt-4")

    @pytest.mark.asyncio
    async def test_missing_key_always_processes(self):
        ledger = InMemoryIdempotencyLedger()

        async with IdempotencyGuard(ledger, None) as guard:
            assert guard.should_process
        async with IdempotencyGuard(ledger, "") as guard:
            assert guard.should_process
