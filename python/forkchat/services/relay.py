"""Live relay from a generation task to one HTTP response body.

The generation task publishes every event; the /chat response iterates the
relay and writes NDJSON lines. The queue is unbounded and publish never
awaits, so a slow or vanished reader can never stall persistence. When the
client disconnects the response detaches the relay and later events are
dropped.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

_CLOSED = object()


def encode_ndjson(event: dict[str, Any]) -> str:
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False) + "\n"


class LiveRelay:
    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._detached = False

    @property
    def detached(self) -> bool:
        return self._detached

    def publish(self, event: dict[str, Any]) -> None:
        if self._closed or self._detached:
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        """Signal end of stream. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def detach(self) -> None:
        """Reader went away; drop everything from now on."""
        self._detached = True

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    async def ndjson(self) -> AsyncIterator[str]:
        """Yield one JSON line per event; detaches when the reader stops early."""
        try:
            async for event in self.events():
                yield encode_ndjson(event)
        finally:
            self.detach()
