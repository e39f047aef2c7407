"""
Typed events for the meetings stream and the sink contract they are pushed to.

The pipeline only ever talks to an EventSink. How the events are framed on the
transport (server-sent events, JSON lines) is the sink's business.

Event names on the wire:
- meeting:  one in-order meeting result
- complete: {"count": N}, sent once after every meeting was emitted
- error:    {"message": "..."}, sent instead of complete when the run aborts
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, Union, runtime_checkable

import orjson


class SinkWriteError(RuntimeError):
    """The transport behind a sink refused a write (client went away)."""


@dataclass(frozen=True)
class ItemEvent:
    index: int
    payload: dict = field(default_factory=dict)

    name = "meeting"
    terminal = False

    def data(self) -> dict:
        return self.payload


@dataclass(frozen=True)
class CompleteEvent:
    count: int

    name = "complete"
    terminal = True

    def data(self) -> dict:
        return {"count": self.count}


@dataclass(frozen=True)
class ErrorEvent:
    message: str

    name = "error"
    terminal = True

    def data(self) -> dict:
        return {"message": self.message}


StreamEvent = Union[ItemEvent, CompleteEvent, ErrorEvent]


@runtime_checkable
class EventSink(Protocol):
    """
    Push-style output channel.

    emit() must never raise: once the transport is gone it becomes a no-op.
    close() must be safe to call more than once.
    """

    @property
    def closed(self) -> bool: ...

    def emit(self, event: StreamEvent) -> None: ...

    def close(self) -> None: ...


def format_sse(event: StreamEvent) -> bytes:
    """Frame one event as a server-sent event."""
    return b"event: " + event.name.encode() + b"\ndata: " + orjson.dumps(event.data()) + b"\n\n"


def format_json_line(event: StreamEvent) -> bytes:
    return orjson.dumps({"event": event.name, "data": event.data()}) + b"\n"
