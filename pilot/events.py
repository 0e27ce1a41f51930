"""Event Stream Publisher and the native-callback bridge.

``EventStream`` is the ordered sink one Turn Loop invocation publishes into
and exactly one consumer (an SSE response, a test) drains. Once the consumer
detaches, ``publish`` is a no-op and the invocation keeps running.

``CallbackBridge`` turns the synchronous, thread-hopping progress callback
of the native agent runtime into an async iterator, so the native backend
publishes through the same interface as the chat backends.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

# Event types, in the vocabulary callers see on the wire.
SCREENSHOT = "screenshot"
NARRATIVE = "narrative"
ACTION_PROPOSED = "action-proposed"
ACTION_RESULT = "action-result"
TURN_COMPLETE = "turn-complete"
ERROR = "error"
SESSION_COMPLETE = "session-complete"

EVENT_TYPES = (
    SCREENSHOT,
    NARRATIVE,
    ACTION_PROPOSED,
    ACTION_RESULT,
    TURN_COMPLETE,
    ERROR,
    SESSION_COMPLETE,
)

TERMINAL_EVENTS = frozenset({ERROR, SESSION_COMPLETE})


@dataclass(frozen=True)
class Event:
    type: str
    data: dict = field(default_factory=dict)
    seq: int = 0

    def to_dict(self) -> dict:
        return {"type": self.type, "seq": self.seq, **self.data}


class EventStream:
    """Ordered, append-only event sink with a single consumer."""

    def __init__(self, conversation_id: str = ""):
        self.conversation_id = conversation_id
        self._queue: asyncio.Queue[Event | None] = asyncio.Queue()
        self._seq = itertools.count(1)
        self._detached = False
        self._closed = False
        self.published: int = 0

    @property
    def detached(self) -> bool:
        return self._detached

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event_type: str, data: dict | None = None) -> Event | None:
        """Append an event. Returns None when nobody is listening any more."""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type!r}")
        if self._closed or self._detached:
            return None
        event = Event(type=event_type, data=dict(data or {}), seq=next(self._seq))
        self._queue.put_nowait(event)
        self.published += 1
        return event

    def close(self) -> None:
        """End the stream. Further publishes are dropped."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def detach(self) -> None:
        """The consumer went away: drop buffered and future events."""
        if self._detached:
            return
        self._detached = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def events(self) -> AsyncIterator[Event]:
        """Yield events in emission order until the stream closes or detaches."""
        while True:
            event = await self._queue.get()
            if event is None:
                break
            yield event


class CallbackBridge:
    """Bridge between a synchronous worker-thread callback and async code.

    Usage:
        bridge = CallbackBridge(loop)
        task = asyncio.create_task(desktop.run_agent(..., callback=bridge.callback))
        bridge.finish_when(task)
        async for event_type, data in bridge.events():
            ...
    """

    _DONE = object()

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self._queue: asyncio.Queue[Any] = asyncio.Queue()

    def callback(self, event_type: str, data: Any = None) -> None:
        """Thread-safe callback invoked by the agent runtime from a worker thread."""
        self._loop.call_soon_threadsafe(self._queue.put_nowait, (event_type, data))

    def finish(self) -> None:
        """Signal the end of the stream. Safe from any thread."""
        self._loop.call_soon_threadsafe(self._queue.put_nowait, self._DONE)

    def finish_when(self, task: asyncio.Future) -> None:
        task.add_done_callback(lambda _t: self.finish())

    async def events(self) -> AsyncIterator[tuple[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is self._DONE:
                break
            yield item
