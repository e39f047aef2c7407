"""
Server-sent-events sink for the meetings stream.

The pipeline pushes typed events into a QueueEventSink; the HTTP response
pulls them out through stream() and writes one SSE frame per event. The two
sides only share the queue, so a slow client never blocks a worker.

Disconnects:
When the client goes away Starlette stops iterating stream(). We mark the sink
closed at that point, and every later emit() from the still-running pipeline
becomes a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable

from pipeline.events import StreamEvent, format_sse


logger = logging.getLogger("meetings-stream")

_CLOSE = object()


class QueueEventSink:
    def __init__(self, frame: Callable[[StreamEvent], bytes] = format_sse):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._frame = frame
        self._closed = False
        self._client_gone = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def client_disconnected(self) -> bool:
        return self._client_gone

    def emit(self, event: StreamEvent) -> None:
        if self._closed:
            self.dropped += 1
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSE)

    async def stream(self) -> AsyncIterator[bytes]:
        try:
            while True:
                event = await self._queue.get()
                if event is _CLOSE:
                    break
                yield self._frame(event)
        finally:
            if not self._closed:
                self._client_gone = True
                self._closed = True
                logger.info("Client disconnected; remaining meetings will not be sent")
