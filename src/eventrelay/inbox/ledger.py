"""
Idempotency Ledger

Records which idempotency keys have been fully processed. The dispatcher
writes to it after a successful publish; consumers consult it through
``IdempotencyGuard`` to drop redeliveries.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Union
from uuid import UUID

from ..database.adapter import DatabaseAdapter, affected_rows

logger = logging.getLogger(__name__)

AggregateId = Union[UUID, str, None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IdempotencyRecord:
    idempotency_key: str
    aggregate_id: Optional[str]
    is_processed: bool
    processed_at: Optional[datetime]


class IdempotencyLedger(ABC):
    """Port for the idempotency ledger."""

    @abstractmethod
    async def mark_event_processed(self, idempotency_key: str, aggregate_id: AggregateId = None) -> None:
        """Record the key as processed. Safe to call repeatedly."""

    @abstractmethod
    async def try_mark_event_processed(self, idempotency_key: str, aggregate_id: AggregateId = None) -> bool:
        """Record the key only if absent. Returns False when it was already there."""

    @abstractmethod
    async def is_event_processed(self, idempotency_key: str) -> bool:
        ...

    @abstractmethod
    async def remove(self, idempotency_key: str) -> bool:
        ...

    @abstractmethod
    async def get(self, idempotency_key: str) -> Optional[IdempotencyRecord]:
        ...


class InMemoryIdempotencyLedger(IdempotencyLedger):
    """Process-local ledger for tests and single-process deployments."""

    def __init__(self):
        self._records: Dict[str, IdempotencyRecord] = {}
        self._lock = asyncio.Lock()

    async def mark_event_processed(self, idempotency_key: str, aggregate_id: AggregateId = None) -> None:
        async with self._lock:
            self._records[idempotency_key] = IdempotencyRecord(
                idempotency_key=idempotency_key,
                aggregate_id=str(aggregate_id) if aggregate_id is not None else None,
                is_processed=True,
                processed_at=_utcnow(),
            )

    async def try_mark_event_processed(self, idempotency_key: str, aggregate_id: AggregateId = None) -> bool:
        async with self._lock:
            if idempotency_key in self._records:
                return False
            self._records[idempotency_key] = IdempotencyRecord(
                idempotency_key=idempotency_key,
                aggregate_id=str(aggregate_id) if aggregate_id is not None else None,
                is_processed=True,
                processed_at=_utcnow(),
            )
            return True

    async def is_event_processed(self, idempotency_key: str) -> bool:
        record = self._records.get(idempotency_key)
        return bool(record and record.is_processed)

    async def remove(self, idempotency_key: str) -> bool:
        async with self._lock:
            return self._records.pop(idempotency_key, None) is not None

    async def get(self, idempotency_key: str) -> Optional[IdempotencyRecord]:
        return self._records.get(idempotency_key)


class DatabaseIdempotencyLedger(IdempotencyLedger):
    """Ledger backed by the ``event_idempotency`` table."""

    def __init__(self, db: DatabaseAdapter):
        self._db = db

    async def mark_event_processed(self, idempotency_key: str, aggregate_id: AggregateId = None) -> None:
        await self._db.execute(
            """
            INSERT INTO event_idempotency (idempotency_key, aggregate_id, is_processed, processed_at, created_at)
            VALUES ($1, $2, TRUE, $3, $3)
            ON CONFLICT (idempotency_key) DO UPDATE
            SET is_processed = TRUE, processed_at = excluded.processed_at
            """,
            idempotency_key,
            str(aggregate_id) if aggregate_id is not None else None,
            _utcnow(),
        )
        logger.debug(f"Idempotency key marked processed: {idempotency_key}")

    async def try_mark_event_processed(self, idempotency_key: str, aggregate_id: AggregateId = None) -> bool:
        status = await self._db.execute(
            """
            INSERT INTO event_idempotency (idempotency_key, aggregate_id, is_processed, processed_at, created_at)
            VALUES ($1, $2, TRUE, $3, $3)
            ON CONFLICT (idempotency_key) DO NOTHING
            """,
            idempotency_key,
            str(aggregate_id) if aggregate_id is not None else None,
            _utcnow(),
        )
        return affected_rows(status) > 0

    async def is_event_processed(self, idempotency_key: str) -> bool:
        row = await self._db.fetchrow(
            "SELECT is_processed FROM event_idempotency WHERE idempotency_key = $1",
            idempotency_key,
        )
        return bool(row and row["is_processed"])

    async def remove(self, idempotency_key: str) -> bool:
        status = await self._db.execute(
            "DELETE FROM event_idempotency WHERE idempotency_key = $1",
            idempotency_key,
        )
        return affected_rows(status) > 0

    async def get(self, idempotency_key: str) -> Optional[IdempotencyRecord]:
        row = await self._db.fetchrow(
            """
            SELECT idempotency_key, aggregate_id, is_processed, processed_at
            FROM event_idempotency WHERE idempotency_key = $1
            """,
            idempotency_key,
        )
        if row is None:
            return None
        processed_at = row["processed_at"]
        if isinstance(processed_at, str):
            processed_at = datetime.fromisoformat(processed_at)
        return IdempotencyRecord(
            idempotency_key=row["idempotency_key"],
            aggregate_id=row["aggregate_id"],
            is_processed=bool(row["is_processed"]),
            processed_at=processed_at,
        )
