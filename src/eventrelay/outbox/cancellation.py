"""
Cooperative cancellation for long-running outbox work.

Every suspension point (store call, inter-batch delay, backoff sleep)
checks a shared ``asyncio.Event``; once set, work stops at the next check
with ``OperationCancelled``.
"""

import asyncio
from typing import Optional

from ..events.errors import OperationCancelled


def check_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled("Operation cancelled")


async def sleep_or_cancel(seconds: float, cancel_event: Optional[asyncio.Event]) -> bool:
    """
    Sleep for ``seconds`` or until cancellation is requested.

    Returns True if woken by cancellation.
    """
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return False
    if cancel_event.is_set():
        return True
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False
