"""
Admin/Operator API

Endpoints for inspecting and driving the outbox by hand: DLQ triage,
outbox statistics, cleanup and reconciliation runs.

The router expects ``app.state.outbox`` to hold the ``OutboxServices``
built by ``eventrelay.outbox.lifecycle``.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ..outbox.cleanup import DEFAULT_FAILED_RETENTION_DAYS, DEFAULT_PROCESSED_RETENTION_DAYS
from ..outbox.lifecycle import OutboxServices

router = APIRouter(prefix="/api/admin", tags=["admin"])


def get_outbox_services(request: Request) -> OutboxServices:
    services = getattr(request.app.state, "outbox", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Outbox is not running in this instance")
    return services


class PermanentFailureRequest(BaseModel):
    """Request to mark a DLQ entry as permanently failed."""
    reason: str = Field(..., min_length=1, max_length=500)


class PurgeRequest(BaseModel):
    """Request to purge DLQ entries."""
    days: int = Field(30, ge=0)


class CleanupRequest(BaseModel):
    processed_retention_days: int = Field(DEFAULT_PROCESSED_RETENTION_DAYS, ge=0)
    failed_retention_days: int = Field(DEFAULT_FAILED_RETENTION_DAYS, ge=0)


# DLQ Management Endpoints

@router.get("/dlq")
async def list_dlq_entries(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    services: OutboxServices = Depends(get_outbox_services),
):
    """List Dead Letter Queue entries."""
    entries = await services.dlq.get_entries(limit=limit, offset=offset)
    total = await services.dlq.get_count()

    return {
        "entries": [e.to_dict() for e in entries],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/dlq/stats")
async def dlq_stats(services: OutboxServices = Depends(get_outbox_services)):
    """Get DLQ statistics."""
    statistics = await services.dlq.get_dlq_statistics()
    return statistics.to_dict()


@router.post("/dlq/process")
async def process_dlq(services: OutboxServices = Depends(get_outbox_services)):
    """Run DLQ triage now instead of waiting for the hourly job."""
    result = await services.dlq.process_dlq_messages()
    return result.to_dict()


@router.post("/dlq/retry-all")
async def retry_all_dlq(
    include_poisoned: bool = False,
    services: OutboxServices = Depends(get_outbox_services),
):
    """Retry all DLQ entries."""
    count = await services.dlq.retry_all(include_poisoned=include_poisoned)
    return {
        "status": "all_queued_for_retry",
        "include_poisoned": include_poisoned,
        "count": count,
    }


@router.post("/dlq/purge-old")
async def purge_old_dlq(
    body: PurgeRequest,
    services: OutboxServices = Depends(get_outbox_services),
):
    """Purge DLQ entries older than specified days."""
    count = await services.dlq.cleanup_old_dlq_messages(retention_days=body.days)
    return {"status": "purged", "older_than_days": body.days, "count": count}


@router.post("/dlq/{entry_id}/retry")
async def retry_dlq_entry(
    entry_id: UUID,
    services: OutboxServices = Depends(get_outbox_services),
):
    """Retry a specific DLQ entry."""
    if not await services.dlq.retry_dlq_message(entry_id):
        raise HTTPException(status_code=404, detail="DLQ entry not found")

    return {"status": "queued_for_retry", "entry_id": str(entry_id)}


@router.post("/dlq/{entry_id}/fail")
async def fail_dlq_entry(
    entry_id: UUID,
    body: PermanentFailureRequest,
    services: OutboxServices = Depends(get_outbox_services),
):
    """Mark a DLQ entry as permanently failed."""
    if not await services.dlq.mark_dlq_message_as_permanently_failed(entry_id, body.reason):
        raise HTTPException(status_code=404, detail="DLQ entry not found")

    return {"status": "permanently_failed", "entry_id": str(entry_id)}


# Outbox Status Endpoints

@router.get("/outbox/stats")
async def outbox_stats(services: OutboxServices = Depends(get_outbox_services)):
    """Get outbox queue statistics."""
    statistics = await services.store.get_statistics()
    return statistics.to_dict()


@router.get("/outbox/{message_id}")
async def get_outbox_message(
    message_id: UUID,
    services: OutboxServices = Depends(get_outbox_services),
):
    message = await services.store.get_by_id(message_id)
    if message is None:
        raise HTTPException(status_code=404, detail="Outbox message not found")

    data = message.model_dump(mode="json")
    data["status"] = message.status().value
    return data


@router.post("/outbox/dispatch")
async def dispatch_batch(services: OutboxServices = Depends(get_outbox_services)):
    """Dispatch one batch immediately."""
    result = await services.processor.process_batch()
    return result.to_dict()


@router.post("/outbox/cleanup")
async def cleanup_outbox(
    body: Optional[CleanupRequest] = None,
    services: OutboxServices = Depends(get_outbox_services),
):
    body = body or CleanupRequest()
    total = await services.cleanup.perform_full_cleanup(
        processed_retention_days=body.processed_retention_days,
        failed_retention_days=body.failed_retention_days,
    )
    return {"status": "cleaned", "count": total}


@router.post("/reconciliation/run")
async def run_reconciliation(services: OutboxServices = Depends(get_outbox_services)):
    """Run all user/member reconciliation sweeps now."""
    result = await services.reconciliation.perform_comprehensive_reconciliation()
    return result.to_dict()
