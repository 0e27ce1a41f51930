"""SSE adapter: ``EventStream`` → sse-starlette event dicts."""

import json
from typing import AsyncIterator

from pilot.events import EventStream


async def sse_events(stream: EventStream) -> AsyncIterator[dict]:
    """Yield ``{"event", "id", "data"}`` dicts for ``EventSourceResponse``.

    Ends after the terminal event. If the client goes away first the
    generator is closed and the stream detached; the invocation keeps
    running without a consumer.
    """
    try:
        async for event in stream.events():
            yield {
                "event": event.type,
                "id": str(event.seq),
                "data": json.dumps(event.data, default=str),
            }
    finally:
        stream.detach()
