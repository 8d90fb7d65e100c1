"""
Outbox Scheduled Jobs

Recurring outbox maintenance on an in-process APScheduler.

Schedule (UTC):
- processed cleanup:  every 6 hours
- failed cleanup:     daily at 02:00
- full cleanup:       Sundays at 03:00 (also purges DLQ past retention)
- DLQ processing:     hourly
- reconciliation:     every 30 minutes
- dispatch batch:     every ``dispatch_interval_seconds`` (scheduled mode only)

Each job body is retried up to three times by tenacity before the failure
is left to the scheduler's error logging.
"""

import logging
from typing import Any, Awaitable, Callable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from tenacity import before_sleep_log, retry, stop_after_attempt, wait_exponential

from ..config import RelaySettings
from ..reconciliation.service import UserMemberReconciliationService
from .cleanup import OutboxCleanupService
from .dlq import DlqManagementService
from .processor import OutboxProcessor

logger = logging.getLogger(__name__)

JOB_ATTEMPTS = 3

PROCESSED_CLEANUP_JOB = "outbox-cleanup-processed"
FAILED_CLEANUP_JOB = "outbox-cleanup-failed"
FULL_CLEANUP_JOB = "outbox-cleanup-full"
DLQ_PROCESSING_JOB = "outbox-dlq-processing"
RECONCILIATION_JOB = "user-member-reconciliation"
DISPATCH_JOB = "outbox-dispatch"


def create_scheduler() -> AsyncIOScheduler:
    return AsyncIOScheduler(
        timezone="UTC",
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 60,
        },
    )


def job_retry(attempts: int = JOB_ATTEMPTS, min_wait: float = 1, max_wait: float = 30):
    """Retry decorator for scheduled job bodies."""
    return retry(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        reraise=True,
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )


def _job(name: str, body: Callable[[], Awaitable[Any]]) -> Callable[[], Awaitable[Any]]:
    @job_retry()
    async def run() -> Any:
        logger.info(f"Scheduled job {name} starting")
        result = await body()
        logger.info(f"Scheduled job {name} finished: {result}")
        return result

    run.__name__ = name.replace("-", "_")
    return run


def register_outbox_jobs(
    scheduler: AsyncIOScheduler,
    settings: RelaySettings,
    processor: Optional[OutboxProcessor] = None,
    cleanup: Optional[OutboxCleanupService] = None,
    dlq: Optional[DlqManagementService] = None,
    reconciliation: Optional[UserMemberReconciliationService] = None,
) -> List[str]:
    """
    Add the outbox jobs for whichever services are given.

    Returns the ids of the registered jobs.
    """
    job_ids: List[str] = []

    def add(job_id: str, body: Callable[[], Awaitable[Any]], trigger) -> None:
        scheduler.add_job(
            _job(job_id, body),
            trigger=trigger,
            id=job_id,
            name=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        job_ids.append(job_id)

    if cleanup is not None:
        add(
            PROCESSED_CLEANUP_JOB,
            lambda: cleanup.cleanup_processed_messages(
                settings.processed_retention_days, settings.cleanup_batch_size
            ),
            CronTrigger(hour="*/6", minute=0, timezone="UTC"),
        )
        add(
            FAILED_CLEANUP_JOB,
            lambda: cleanup.cleanup_failed_messages(
                settings.failed_retention_days, settings.cleanup_batch_size
            ),
            CronTrigger(hour=2, minute=0, timezone="UTC"),
        )

        async def full_cleanup() -> int:
            total = await cleanup.perform_full_cleanup(
                settings.processed_retention_days,
                settings.failed_retention_days,
                settings.cleanup_batch_size,
            )
            if dlq is not None:
                total += await dlq.cleanup_old_dlq_messages(settings.dlq_retention_days)
            return total

        add(
            FULL_CLEANUP_JOB,
            full_cleanup,
            CronTrigger(day_of_week="sun", hour=3, minute=0, timezone="UTC"),
        )

    if dlq is not None:
        async def process_dlq() -> dict:
            return (await dlq.process_dlq_messages()).to_dict()

        add(DLQ_PROCESSING_JOB, process_dlq, CronTrigger(minute=0, timezone="UTC"))

    if reconciliation is not None:
        async def reconcile() -> dict:
            return (await reconciliation.perform_comprehensive_reconciliation()).to_dict()

        add(RECONCILIATION_JOB, reconcile, IntervalTrigger(minutes=30))

    if processor is not None and settings.dispatch_mode == "scheduled":
        async def dispatch() -> dict:
            return (await processor.process_batch()).to_dict()

        add(
            DISPATCH_JOB,
            dispatch,
            IntervalTrigger(seconds=settings.dispatch_interval_seconds),
        )

    logger.info(f"Registered outbox jobs: {', '.join(job_ids) or 'none'}")
    return job_ids
