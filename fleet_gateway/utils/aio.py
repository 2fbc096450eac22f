# Cooperative cancellation and queue helpers shared by the agent clients, the chat handler and the event stream.
# Date: 2026-10-19
# Version: 0.1.0

import asyncio
from typing import Any, Awaitable, Optional, TypeVar

from fleet_gateway.core.exceptions import CancellationError

T = TypeVar("T")


async def until_cancelled(awaitable: Awaitable[T], cancel: Optional[asyncio.Event]) -> T:
    """
    Awaits `awaitable` unless `cancel` is set first.

    When the cancel event wins the race the pending work is cancelled rather
    than awaited to completion, and CancellationError is raised.
    """
    if cancel is None:
        return await awaitable

    work = asyncio.ensure_future(awaitable)
    if cancel.is_set():
        work.cancel()
        raise CancellationError("cancelled before the call started")

    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        # Also reached when the surrounding task itself is cancelled
        waiter.cancel()
        abandoned = not work.done()
        if abandoned:
            work.cancel()

    if abandoned:
        raise CancellationError("cancelled while waiting")
    return work.result()


async def next_item(queue: asyncio.Queue, producer: "asyncio.Future[Any]") -> Optional[Any]:
    """
    Returns the next item of `queue`, or None once `producer` has finished and
    the queue is drained. A producer that dies without a final item therefore
    never leaves the consumer waiting.
    """
    if not queue.empty():
        return queue.get_nowait()
    if producer.done():
        return None

    getter = asyncio.ensure_future(queue.get())
    try:
        await asyncio.wait({getter, producer}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if not getter.done():
            getter.cancel()

    if getter.done() and not getter.cancelled():
        return getter.result()
    # A cancelled get leaves any item it was woken for in the queue
    return queue.get_nowait() if not queue.empty() else None
