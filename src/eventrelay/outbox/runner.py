"""
Outbox Relay Runner

Standalone process that runs the outbox dispatcher and its scheduled
maintenance jobs. Designed to run in its own container next to the
service that writes the outbox.

Usage:
    eventrelay-runner
    python -m eventrelay.outbox.runner

Environment Variables:
    DATABASE_BACKEND: sqlite or postgresql (default: sqlite)
    DATABASE_URL: PostgreSQL connection string (required for postgresql)
    OUTBOX_BOOTSTRAP: "package.module:function" called with (registry, bus)
                      to register event types and handlers
    OUTBOX_DISPATCH_MODE: continuous or scheduled (default: continuous)
    OUTBOX_BATCH_SIZE: Batch size for dispatch (default: 50)
    LOG_LEVEL: Logging level (default: INFO)
"""

import asyncio
import importlib
import inspect
import logging
import os
import signal
import sys
from typing import Callable, Optional

from ..config import RelaySettings
from ..database.adapter import DatabaseBackend, DatabaseConfig, close_database, get_database
from ..events.bus import EventBus
from ..events.models import register_identity_events
from ..events.registry import EventTypeRegistry
from ..inbox.ledger import DatabaseIdempotencyLedger, IdempotencyLedger, InMemoryIdempotencyLedger
from ..observability import configure_logging, init_metrics, init_tracing
from .lifecycle import OutboxServices, outbox_lifespan
from .store.base import StoreBackend
from .store.factory import get_outbox_store

logger = logging.getLogger(__name__)


def load_bootstrap(path: str) -> Optional[Callable]:
    """Resolve a ``module:function`` bootstrap hook."""
    if not path:
        return None
    module_name, _, attr = path.partition(":")
    if not attr:
        raise ValueError(f"OUTBOX_BOOTSTRAP must look like 'package.module:function', got '{path}'")
    module = importlib.import_module(module_name)
    return getattr(module, attr)


class OutboxRunner:
    """
    Manages the relay lifecycle with graceful shutdown.
    """

    def __init__(self, settings: Optional[RelaySettings] = None):
        self.settings = settings or RelaySettings.from_env()
        self.registry = EventTypeRegistry()
        self.bus = EventBus()
        self.services: Optional[OutboxServices] = None
        self._shutdown_event = asyncio.Event()
        self._shutdown_requested = False

    def _setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)

    def _handle_shutdown_signal(self, sig: signal.Signals):
        if self._shutdown_requested:
            logger.warning(f"Received {sig.name} again, forcing exit")
            sys.exit(1)

        logger.info(f"Received {sig.name}, initiating graceful shutdown")
        self.request_shutdown()

    def request_shutdown(self):
        self._shutdown_requested = True
        self._shutdown_event.set()

    async def bootstrap(self):
        """Register the built-in identity events and run the bootstrap hook."""
        register_identity_events(self.registry)

        hook = load_bootstrap(self.settings.bootstrap)
        if hook is not None:
            result = hook(self.registry, self.bus)
            if inspect.isawaitable(result):
                await result
            logger.info(f"Bootstrap hook {self.settings.bootstrap} loaded")

        logger.info(f"Registered {len(self.registry)} event types")

    async def run(self, install_signal_handlers: bool = True):
        """Run the relay until shutdown is requested."""
        settings = self.settings
        logger.info("Starting Outbox Relay Runner")
        logger.info(f"  Dispatch mode: {settings.dispatch_mode}")
        logger.info(f"  Batch size: {settings.batch_size}")
        logger.info(f"  Lease: {settings.lease_seconds}s")

        if install_signal_handlers:
            self._setup_signal_handlers()

        await self.bootstrap()

        db = await get_database()
        try:
            store = await get_outbox_store(db=db)
            ledger: IdempotencyLedger
            if store.backend == StoreBackend.DATABASE:
                ledger = DatabaseIdempotencyLedger(db)
            else:
                ledger = InMemoryIdempotencyLedger()

            async with outbox_lifespan(settings, store, self.bus, self.registry, ledger) as services:
                if services is None:
                    logger.warning("Outbox relay has nothing to run in this instance, exiting")
                    return
                self.services = services
                logger.info("Outbox Relay is running")
                await self._shutdown_event.wait()
        except Exception as e:
            logger.error(f"Outbox Relay error: {e}", exc_info=True)
            raise
        finally:
            self.services = None
            await close_database()
            logger.info("Outbox Relay stopped")

    async def health_check(self) -> dict:
        """Return health status for monitoring."""
        processor = self.services.processor if self.services else None
        running = bool(processor and processor.is_running)
        scheduled = bool(self.services and self.services.scheduler and self.services.scheduler.running)
        return {
            "status": "healthy" if running or scheduled else "unhealthy",
            "processor_running": running,
            "scheduler_running": scheduled,
            "shutdown_requested": self._shutdown_requested,
        }


def _init_observability(settings: RelaySettings):
    configure_logging(
        level=settings.log_level,
        structured=settings.log_format == "json",
        service_name=settings.service_name,
    )
    if settings.tracing_enabled:
        init_tracing(settings.service_name, otlp_endpoint=settings.otlp_endpoint)
    if settings.metrics_enabled:
        init_metrics(settings.service_name, otlp_endpoint=settings.otlp_endpoint)


async def run_relay(settings: Optional[RelaySettings] = None):
    settings = settings or RelaySettings.from_env()
    _init_observability(settings)

    if DatabaseConfig().backend == DatabaseBackend.POSTGRESQL and not os.getenv("DATABASE_URL"):
        logger.error("DATABASE_URL environment variable is required for the PostgreSQL backend")
        sys.exit(1)

    await OutboxRunner(settings).run()


def main():
    """Console entry point."""
    asyncio.run(run_relay())


if __name__ == "__main__":
    main()
