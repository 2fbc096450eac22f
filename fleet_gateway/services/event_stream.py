# Server-Sent-Events framing and the streaming response that carries a chat event stream.
# Date: 2026-10-19
# Version: 0.1.0

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Mapping, Optional, Union

from pydantic import BaseModel
from starlette.requests import ClientDisconnect
from starlette.responses import StreamingResponse

from fleet_gateway.models.common import EventType, WireEvent
from fleet_gateway.utils.aio import next_item
from fleet_gateway.utils.logger import console

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}

Payload = Union[BaseModel, Mapping[str, Any]]


def encode_event(event_type: EventType, payload: Payload) -> bytes:
    """Serializes one event as a single SSE frame: `data: {"type": ..., "data": {...}}` and a blank line."""
    if isinstance(payload, BaseModel):
        data: Dict[str, Any] = payload.model_dump(mode="json", by_alias=True)
    else:
        data = dict(payload)
    event = WireEvent(type=event_type, data=data)
    return f"data: {event.model_dump_json()}\n\n".encode("utf-8")


class EventStreamWriter:
    """
    Writes events to the response transport, one frame per call, each sent on
    its own so the client sees it immediately.

    Ordering is the caller's responsibility. Once the transport is gone every
    write is a no-op that returns False.
    """

    def __init__(self, send: Callable[[bytes], Awaitable[None]]):
        self._send = send
        self._closed = False
        self.events_written = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        self._closed = True

    async def write_event(self, event_type: EventType, payload: Payload) -> bool:
        if self._closed:
            return False
        frame = encode_event(event_type, payload)
        try:
            await self._send(frame)
        except (OSError, ClientDisconnect):
            console.debug(f"Transport closed while writing a '{event_type.value}' event.")
            self._closed = True
            return False
        self.events_written += 1
        return True


Producer = Callable[[EventStreamWriter, asyncio.Event], Awaitable[None]]


async def stream_events(producer: Producer, cancel: asyncio.Event) -> AsyncIterator[bytes]:
    """
    Runs `producer` in its own task and yields the frames it writes, in order.

    At most one frame waits between the producer and the response. When the
    response stops iterating early (the client went away), the writer is
    closed, the cancel event is set and the producer task is cancelled.
    """
    frames: asyncio.Queue = asyncio.Queue(maxsize=1)
    writer = EventStreamWriter(frames.put)
    task = asyncio.create_task(producer(writer, cancel))
    try:
        while True:
            frame = await next_item(frames, task)
            if frame is None:
                break
            yield frame
        await task
    finally:
        if not task.done():
            console.info("Client disconnected from the event stream.")
            writer.close()
            cancel.set()
            task.cancel()


def event_stream_response(producer: Producer, headers: Optional[Mapping[str, str]] = None,
                          cancel: Optional[asyncio.Event] = None) -> StreamingResponse:
    """A `text/event-stream` response whose body is the frames written by `producer`."""
    return StreamingResponse(
        stream_events(producer, cancel or asyncio.Event()),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, **(headers or {})},
    )
