"""Outbox message stores."""

from .base import OutboxStatistics, OutboxStore, StoreBackend
from .database import DatabaseOutboxStore
from .factory import get_outbox_store, reset_default_store
from .memory import InMemoryOutboxStore

__all__ = [
    "OutboxStatistics",
    "OutboxStore",
    "StoreBackend",
    "DatabaseOutboxStore",
    "InMemoryOutboxStore",
    "get_outbox_store",
    "reset_default_store",
]
