"""
OutboxStore Factory

Selects the store backend from OUTBOX_STORE_BACKEND ("database" or
"memory"). The database store needs a connected ``DatabaseAdapter``; when
none is passed the global adapter is used.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from ...database.adapter import DatabaseAdapter, get_database
from .base import OutboxStore, StoreBackend
from .database import DatabaseOutboxStore
from .memory import InMemoryOutboxStore

logger = logging.getLogger(__name__)

# Global singleton instance
_default_store: Optional[OutboxStore] = None


async def get_outbox_store(
    backend: Optional[str] = None,
    *,
    db: Optional[DatabaseAdapter] = None,
    force_new: bool = False,
) -> OutboxStore:
    """
    Get an OutboxStore instance.

    Args:
        backend: "database" (default) or "memory". Falls back to the
                 OUTBOX_STORE_BACKEND env var.
        db: Database adapter for the database backend
        force_new: Create a new instance instead of returning the singleton

    Examples:
        store = await get_outbox_store()
        store = await get_outbox_store("memory", force_new=True)
    """
    global _default_store

    if backend is None:
        backend = os.getenv("OUTBOX_STORE_BACKEND", StoreBackend.DATABASE.value)
    backend = backend.lower()

    if backend not in (StoreBackend.DATABASE.value, StoreBackend.MEMORY.value):
        logger.warning(f"Unknown outbox store backend '{backend}', falling back to 'database'")
        backend = StoreBackend.DATABASE.value

    if _default_store is not None and not force_new and db is None:
        return _default_store

    if backend == StoreBackend.MEMORY.value:
        store: OutboxStore = InMemoryOutboxStore()
        logger.warning("Using in-memory outbox store; messages are lost on restart")
    else:
        store = DatabaseOutboxStore(db or await get_database())
        logger.info("Created DatabaseOutboxStore")

    if not force_new and db is None:
        _default_store = store
    return store


def reset_default_store() -> None:
    """Reset the default store singleton (tests, configuration changes)."""
    global _default_store
    _default_store = None
