"""
SQL outbox store.

Runs against the ``outbox_messages`` table through ``DatabaseAdapter`` (or a
``UnitOfWork`` when bound to a caller's transaction). Claims are a single
conditional UPDATE: PostgreSQL locks candidate rows with
``FOR UPDATE SKIP LOCKED`` so concurrent dispatchers never block on or
share a row; SQLite serialises writers, so the plain UPDATE ... RETURNING
is already atomic.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Union
from uuid import UUID

from ...database.adapter import DatabaseAdapter, DatabaseBackend, UnitOfWork, affected_rows
from ..models import OutboxMessage
from .base import OutboxStatistics, OutboxStore, StoreBackend

logger = logging.getLogger(__name__)

Executor = Union[DatabaseAdapter, UnitOfWork]

TABLE = "outbox_messages"

COLUMNS = (
    "id", "type_name", "full_type_name", "module_name", "content",
    "occurred_on", "processed_on", "retry_count", "max_retries", "next_retry_at",
    "idempotency_key", "aggregate_id", "correlation_id", "schema_version",
    "failure_reason", "error", "is_poison_message", "poisoned_at",
    "moved_to_dlq_at", "dlq_reason", "lease_owner", "leased_until",
)

_SELECT = f"SELECT {', '.join(COLUMNS)} FROM {TABLE}"

_INSERT = (
    f"INSERT INTO {TABLE} ({', '.join(COLUMNS)}) "
    f"VALUES ({', '.join(f'${i}' for i in range(1, len(COLUMNS) + 1))})"
)

_UPDATE = (
    f"UPDATE {TABLE} SET "
    + ", ".join(f"{col} = ${i}" for i, col in enumerate(COLUMNS[1:], start=2))
    + " WHERE id = $1"
)

# Same as _UPDATE, last parameter = now
_UPDATE_IF_IDLE = (
    _UPDATE
    + " AND processed_on IS NULL"
    + f" AND (leased_until IS NULL OR leased_until <= ${len(COLUMNS) + 1})"
)

# $1 = now
_DISPATCHABLE = """
    processed_on IS NULL
    AND moved_to_dlq_at IS NULL
    AND is_poison_message = FALSE
    AND retry_count < max_retries
    AND (next_retry_at IS NULL OR next_retry_at <= $1)
    AND (leased_until IS NULL OR leased_until <= $1)
"""

_PENDING = "processed_on IS NULL AND moved_to_dlq_at IS NULL AND is_poison_message = FALSE"

_DELETE_CHUNK = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _params(message: OutboxMessage) -> List[Any]:
    row = message.model_dump(mode="python")
    return [row[col] for col in COLUMNS]


def _to_message(row: Dict[str, Any]) -> OutboxMessage:
    return OutboxMessage.model_validate(row)


class DatabaseOutboxStore(OutboxStore):
    """Outbox store backed by PostgreSQL or SQLite."""

    backend = StoreBackend.DATABASE

    def __init__(self, db: Executor):
        self._db = db

    def bind(self, uow: UnitOfWork) -> "DatabaseOutboxStore":
        return DatabaseOutboxStore(uow)

    @property
    def _is_postgres(self) -> bool:
        return self._db.backend == DatabaseBackend.POSTGRESQL

    async def _fetch(self, query: str, *args) -> List[OutboxMessage]:
        rows = await self._db.fetch(query, *args)
        return [_to_message(row) for row in rows]

    # Writes

    async def add(self, message: OutboxMessage) -> None:
        await self._db.execute(_INSERT, *_params(message))

    async def add_range(self, messages: Sequence[OutboxMessage]) -> None:
        if not messages:
            return
        # Atomic on its own; joins the caller's transaction when bound
        await self._db.executemany(_INSERT, [_params(m) for m in messages])

    async def update(self, message: OutboxMessage) -> None:
        status = await self._db.execute(_UPDATE, *_params(message))
        if affected_rows(status) == 0:
            raise KeyError(f"Outbox message {message.id} not found")

    async def update_if_idle(self, message: OutboxMessage, now: Optional[datetime] = None) -> bool:
        status = await self._db.execute(_UPDATE_IF_IDLE, *_params(message), now or _utcnow())
        return affected_rows(status) > 0

    async def delete_messages(self, ids: Sequence[UUID]) -> int:
        deleted = 0
        ids = list(ids)
        for start in range(0, len(ids), _DELETE_CHUNK):
            chunk = ids[start:start + _DELETE_CHUNK]
            placeholders = ", ".join(f"${i}" for i in range(1, len(chunk) + 1))
            status = await self._db.execute(
                f"DELETE FROM {TABLE} WHERE id IN ({placeholders})", *chunk
            )
            deleted += affected_rows(status)
        return deleted

    # Dispatch

    async def get_unprocessed_messages(
        self, limit: int = 100, now: Optional[datetime] = None
    ) -> List[OutboxMessage]:
        return await self._fetch(
            f"{_SELECT} WHERE {_DISPATCHABLE} ORDER BY occurred_on LIMIT $2",
            now or _utcnow(), limit,
        )

    async def claim_unprocessed_messages(
        self,
        limit: int,
        owner: str,
        lease_seconds: int,
        now: Optional[datetime] = None,
    ) -> List[OutboxMessage]:
        now = now or _utcnow()
        lock_clause = "FOR UPDATE SKIP LOCKED" if self._is_postgres else ""
        claimed = await self._fetch(
            f"""
            UPDATE {TABLE}
            SET lease_owner = $3, leased_until = $4
            WHERE id IN (
                SELECT id FROM {TABLE}
                WHERE {_DISPATCHABLE}
                ORDER BY occurred_on
                LIMIT $2
                {lock_clause}
            )
            RETURNING {', '.join(COLUMNS)}
            """,
            now, limit, owner, now + timedelta(seconds=lease_seconds),
        )
        claimed.sort(key=lambda m: m.occurred_on)
        if claimed:
            logger.debug(f"Claimed {len(claimed)} outbox messages for {owner}")
        return claimed

    async def get_by_id(self, message_id: UUID) -> Optional[OutboxMessage]:
        row = await self._db.fetchrow(f"{_SELECT} WHERE id = $1", message_id)
        return _to_message(row) if row else None

    # Type-filtered partitions

    async def get_unprocessed_messages_by_type(self, type_name: str) -> List[OutboxMessage]:
        return await self._fetch(
            f"{_SELECT} WHERE type_name = $1 AND {_PENDING} ORDER BY occurred_on",
            type_name,
        )

    async def get_failed_messages_by_type(self, type_name: str) -> List[OutboxMessage]:
        return await self._fetch(
            f"""
            {_SELECT}
            WHERE type_name = $1
              AND processed_on IS NULL
              AND moved_to_dlq_at IS NULL
              AND retry_count > 0
            ORDER BY occurred_on
            """,
            type_name,
        )

    async def get_dlq_messages_by_type(self, type_name: str) -> List[OutboxMessage]:
        return await self._fetch(
            f"{_SELECT} WHERE type_name = $1 AND moved_to_dlq_at IS NOT NULL ORDER BY moved_to_dlq_at",
            type_name,
        )

    # DLQ

    async def get_dlq_messages(
        self, limit: Optional[int] = None, offset: int = 0
    ) -> List[OutboxMessage]:
        if limit is None:
            return await self._fetch(
                f"{_SELECT} WHERE moved_to_dlq_at IS NOT NULL ORDER BY moved_to_dlq_at"
            )
        return await self._fetch(
            f"{_SELECT} WHERE moved_to_dlq_at IS NOT NULL ORDER BY moved_to_dlq_at LIMIT $1 OFFSET $2",
            limit, offset,
        )

    async def count_dlq_messages(self) -> int:
        count = await self._db.fetchval(
            f"SELECT COUNT(*) FROM {TABLE} WHERE moved_to_dlq_at IS NOT NULL"
        )
        return int(count or 0)

    async def get_dlq_messages_older_than(self, cutoff: datetime) -> List[OutboxMessage]:
        return await self._fetch(
            f"{_SELECT} WHERE moved_to_dlq_at IS NOT NULL AND moved_to_dlq_at < $1 ORDER BY moved_to_dlq_at",
            cutoff,
        )

    # Retention

    async def get_processed_messages_older_than(
        self, cutoff: datetime, limit: int
    ) -> List[OutboxMessage]:
        return await self._fetch(
            f"{_SELECT} WHERE processed_on IS NOT NULL AND processed_on < $1 ORDER BY processed_on LIMIT $2",
            cutoff, limit,
        )

    async def get_failed_messages_older_than(
        self, cutoff: datetime, limit: int
    ) -> List[OutboxMessage]:
        return await self._fetch(
            f"{_SELECT} WHERE moved_to_dlq_at IS NOT NULL AND moved_to_dlq_at < $1 ORDER BY moved_to_dlq_at LIMIT $2",
            cutoff, limit,
        )

    # Lookups

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[OutboxMessage]:
        row = await self._db.fetchrow(
            f"{_SELECT} WHERE idempotency_key = $1 ORDER BY occurred_on LIMIT 1",
            idempotency_key,
        )
        return _to_message(row) if row else None

    async def get_by_correlation_id(self, correlation_id: str) -> List[OutboxMessage]:
        return await self._fetch(
            f"{_SELECT} WHERE correlation_id = $1 ORDER BY occurred_on", correlation_id
        )

    async def get_by_aggregate_id(self, aggregate_id: UUID) -> List[OutboxMessage]:
        return await self._fetch(
            f"{_SELECT} WHERE aggregate_id = $1 ORDER BY occurred_on", aggregate_id
        )

    async def get_statistics(self, now: Optional[datetime] = None) -> OutboxStatistics:
        now = now or _utcnow()
        row = await self._db.fetchrow(
            f"""
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN {_PENDING} THEN 1 ELSE 0 END) AS pending,
                SUM(CASE WHEN processed_on IS NOT NULL THEN 1 ELSE 0 END) AS processed,
                SUM(CASE WHEN {_PENDING} AND retry_count > 0 THEN 1 ELSE 0 END) AS failed,
                SUM(CASE WHEN moved_to_dlq_at IS NOT NULL THEN 1 ELSE 0 END) AS dead_lettered,
                SUM(CASE WHEN is_poison_message = TRUE THEN 1 ELSE 0 END) AS poisoned,
                SUM(CASE WHEN leased_until IS NOT NULL AND leased_until > $1 THEN 1 ELSE 0 END) AS leased,
                MIN(CASE WHEN {_PENDING} THEN occurred_on END) AS oldest_pending
            FROM {TABLE}
            """,
            now,
        ) or {}
        by_type_rows = await self._db.fetch(
            f"SELECT type_name, COUNT(*) AS count FROM {TABLE} GROUP BY type_name"
        )
        return OutboxStatistics(
            total=int(row.get("total") or 0),
            pending=int(row.get("pending") or 0),
            processed=int(row.get("processed") or 0),
            failed=int(row.get("failed") or 0),
            dead_lettered=int(row.get("dead_lettered") or 0),
            poisoned=int(row.get("poisoned") or 0),
            leased=int(row.get("leased") or 0),
            oldest_pending_occurred_on=_as_datetime(row.get("oldest_pending")),
            by_type={r["type_name"]: int(r["count"]) for r in by_type_rows},
        )
