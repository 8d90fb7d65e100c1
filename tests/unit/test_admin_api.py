"""
Tests for the admin/operator HTTP endpoints.
"""

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from uuid import uuid4

from eventrelay.api import router
from eventrelay.config import RelaySettings
from eventrelay.events import UserCreatedEvent
from eventrelay.outbox.lifecycle import build_outbox_services
from eventrelay.outbox.models import OutboxMessage


@pytest.fixture
def app(store, bus, registry):
    app = FastAPI()
    app.include_router(router)
    app.state.outbox = build_outbox_services(RelaySettings(), store, bus, registry)
    return app


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


def poisoned(registry, clock) -> OutboxMessage:
    message = OutboxMessage.create(UserCreatedEvent(user_id=uuid4()), registry, occurred_on=clock.now)
    message.mark_failed("Failed to deserialize event: bad", is_poison=True, now=clock.now)
    return message


class TestDlqEndpoints:
    """DLQ triage over HTTP."""

    @pytest.mark.asyncio
    async def test_list_and_stats(self, client, store, registry, clock):
        await store.add_range([poisoned(registry, clock), poisoned(registry, clock)])

        response = await client.get("/api/admin/dlq", params={"limit": 1})
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert len(body["entries"]) == 1
        assert body["entries"][0]["is_poison_message"] is True

        stats = (await client.get("/api/admin/dlq/stats")).json()
        assert stats["total_dlq_messages"] == 2
        assert stats["poison_messages"] == 2

    @pytest.mark.asyncio
    async def test_retry_entry(self, client, store, registry, clock):
        message = poisoned(registry, clock)
        await store.add(message)

        response = await client.post(f"/api/admin/dlq/{message.id}/retry")

        assert response.status_code == 200
        assert response.json()["status"] == "queued_for_retry"
        assert not (await store.get_by_id(message.id)).is_in_dlq

    @pytest.mark.asyncio
    async def test_retry_unknown_entry(self, client):
        response = await client.post(f"/api/admin/dlq/{uuid4()}/retry")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_fail_entry(self, client, store, registry, clock):
        message = OutboxMessage.create(UserCreatedEvent(user_id=uuid4()), registry, max_retries=1)
        message.mark_failed("timeout", now=clock.now)
        await store.add(message)

        response = await client.post(
            f"/api/admin/dlq/{message.id}/fail", json={"reason": "member deleted"}
        )

        assert response.status_code == 200
        stored = await store.get_by_id(message.id)
        assert stored.is_poison_message
        assert stored.failure_reason == "member deleted"

    @pytest.mark.asyncio
    async def test_fail_requires_reason(self, client):
        response = await client.post(f"/api/admin/dlq/{uuid4()}/fail", json={"reason": ""})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_retry_all(self, client, store, registry, clock):
        await store.add(poisoned(registry, clock))

        skipped = (await client.post("/api/admin/dlq/retry-all")).json()
        assert skipped["count"] == 0

        retried = (await client.post("/api/admin/dlq/retry-all", params={"include_poisoned": True})).json()
        assert retried["count"] == 1

    @pytest.mark.asyncio
    async def test_process_dlq(self, client, store, registry, clock):
        await store.add(poisoned(registry, clock))

        response = await client.post("/api/admin/dlq/process")

        assert response.status_code == 200
        assert response.json()["total_messages"] == 1

    @pytest.mark.asyncio
    async def test_purge_old(self, client, store, registry, clock):
        # clock.now is well in the past relative to the service's wall clock
        await store.add(poisoned(registry, clock))

        body = (await client.post("/api/admin/dlq/purge-old", json={"days": 30})).json()

        assert body == {"status": "purged", "older_than_days": 30, "count": 1}
        assert await store.count_dlq_messages() == 0


class TestOutboxEndpoints:
    """Outbox status and manual dispatch."""

    @pytest.mark.asyncio
    async def test_dispatch_and_inspect(self, client, store, bus, registry):
        received = []
        bus.subscribe(UserCreatedEvent, received.append)
        message = OutboxMessage.create(UserCreatedEvent(user_id=uuid4()), registry)
        await store.add(message)

        before = (await client.get(f"/api/admin/outbox/{message.id}")).json()
        assert before["status"] == "pending"

        dispatched = (await client.post("/api/admin/outbox/dispatch")).json()
        assert dispatched["processed"] == 1
        assert len(received) == 1

        after = (await client.get(f"/api/admin/outbox/{message.id}")).json()
        assert after["status"] == "processed"

    @pytest.mark.asyncio
    async def test_unknown_message(self, client):
        response = await client.get(f"/api/admin/outbox/{uuid4()}")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_stats(self, client, store, registry):
        await store.add(OutboxMessage.create(UserCreatedEvent(user_id=uuid4()), registry))

        stats = (await client.get("/api/admin/outbox/stats")).json()

        assert stats["total"] == 1
        assert stats["pending"] == 1
        assert stats["by_type"] == {"UserCreatedEvent": 1}

    @pytest.mark.asyncio
    async def test_cleanup(self, client, store, registry, clock):
        done = OutboxMessage.create(UserCreatedEvent(user_id=uuid4()), registry, occurred_on=clock.now)
        done.mark_processed(clock.now)
        await store.add(done)

        response = await client.post("/api/admin/outbox/cleanup", json={"processed_retention_days": 7})

        assert response.status_code == 200
        assert response.json() == {"status": "cleaned", "count": 1}
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_reconciliation_run(self, client):
        response = await client.post("/api/admin/reconciliation/run")

        assert response.status_code == 200
        assert response.json()["total_processed"] == 0


class TestOutboxNotRunning:
    """Instances that do not run the outbox."""

    @pytest.mark.asyncio
    async def test_503_without_services(self):
        app = FastAPI()
        app.include_router(router)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/api/admin/dlq/stats")

        assert response.status_code == 503
