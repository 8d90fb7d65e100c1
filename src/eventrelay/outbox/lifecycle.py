"""
Outbox Lifecycle Management

Wires the dispatcher, maintenance services and scheduler together and ties
them to an application's lifespan.

Usage in FastAPI:
    from eventrelay.outbox.lifecycle import outbox_lifespan

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with outbox_lifespan(settings, store, bus, registry) as services:
            app.state.outbox = services
            yield

    app = FastAPI(lifespan=lifespan)
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import AsyncIterator, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ..config import RelaySettings, is_outbox_enabled, is_outbox_processor_enabled
from ..database.adapter import DatabaseAdapter, UnitOfWork
from ..events.bus import EventBus
from ..events.registry import EventTypeRegistry
from ..inbox.ledger import IdempotencyLedger
from ..reconciliation.service import UserMemberReconciliationService
from .cleanup import OutboxCleanupService
from .dlq import DlqManagementService
from .processor import AdaptiveBackoff, OutboxProcessor, start_outbox_processor, stop_outbox_processor
from .scheduler import create_scheduler, register_outbox_jobs
from .store.base import OutboxStore
from .transactional import TransactionalPublisher
from .writer import OutboxPublisher

logger = logging.getLogger(__name__)


@dataclass
class OutboxServices:
    """Everything the outbox runs in one process."""

    store: OutboxStore
    registry: EventTypeRegistry
    processor: OutboxProcessor
    cleanup: OutboxCleanupService
    dlq: DlqManagementService
    reconciliation: UserMemberReconciliationService
    max_retries: int = 3
    scheduler: Optional[AsyncIOScheduler] = None

    def publisher(self, uow: Optional[UnitOfWork] = None) -> OutboxPublisher:
        """Publisher on the outbox store, joined to ``uow`` when given."""
        store = self.store.bind(uow) if uow is not None else self.store
        return OutboxPublisher(store, self.registry, max_retries=self.max_retries)

    def transactional(self, db: DatabaseAdapter) -> TransactionalPublisher:
        return TransactionalPublisher(db, self.store, self.registry, max_retries=self.max_retries)


def build_outbox_services(
    settings: RelaySettings,
    store: OutboxStore,
    bus: EventBus,
    registry: EventTypeRegistry,
    ledger: Optional[IdempotencyLedger] = None,
) -> OutboxServices:
    processor = OutboxProcessor(
        store,
        bus,
        registry,
        ledger=ledger,
        batch_size=settings.batch_size,
        lease_seconds=settings.lease_seconds,
        backoff=AdaptiveBackoff(
            base_delay=settings.base_delay_seconds,
            max_delay=settings.max_delay_seconds,
            max_consecutive_errors=settings.max_consecutive_errors,
        ),
    )
    return OutboxServices(
        store=store,
        registry=registry,
        processor=processor,
        cleanup=OutboxCleanupService(store, batch_delay=settings.cleanup_batch_delay_seconds),
        dlq=DlqManagementService(store),
        reconciliation=UserMemberReconciliationService(
            store, orphan_age=timedelta(minutes=settings.orphan_age_minutes)
        ),
        max_retries=settings.max_retries,
    )


def _disabled_reasons() -> List[str]:
    reasons = []
    if not is_outbox_enabled():
        reasons.append("OUTBOX_ENABLED=false")
    if not is_outbox_processor_enabled():
        reasons.append("OUTBOX_PROCESSOR_ENABLED=false")
    return reasons


async def start_outbox_services(services: OutboxServices, settings: RelaySettings) -> None:
    if settings.dispatch_mode == "continuous":
        logger.info("Starting outbox processor...")
        await start_outbox_processor(services.processor)

    if settings.scheduler_enabled:
        services.scheduler = create_scheduler()
        register_outbox_jobs(
            services.scheduler,
            settings,
            processor=services.processor,
            cleanup=services.cleanup,
            dlq=services.dlq,
            reconciliation=services.reconciliation,
        )
        services.scheduler.start()
        logger.info("Outbox scheduler started")


async def stop_outbox_services(services: OutboxServices) -> None:
    if services.scheduler is not None:
        services.scheduler.shutdown(wait=False)
        services.scheduler = None
        logger.info("Outbox scheduler stopped")

    logger.info("Stopping outbox processor...")
    await stop_outbox_processor()


@asynccontextmanager
async def outbox_lifespan(
    settings: RelaySettings,
    store: OutboxStore,
    bus: EventBus,
    registry: EventTypeRegistry,
    ledger: Optional[IdempotencyLedger] = None,
) -> AsyncIterator[Optional[OutboxServices]]:
    """
    Run the outbox for the duration of the block.

    Yields None when this instance should not dispatch (see
    ``OUTBOX_ENABLED`` / ``OUTBOX_PROCESSOR_ENABLED``).
    """
    reasons = _disabled_reasons()
    if reasons:
        logger.info(f"Outbox processor disabled: {', '.join(reasons)}")
        yield None
        return

    services = build_outbox_services(settings, store, bus, registry, ledger)
    await start_outbox_services(services, settings)
    try:
        yield services
    finally:
        await stop_outbox_services(services)
