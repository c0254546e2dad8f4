import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict

from ..errors import ChannelClosed

logger = logging.getLogger(__name__)

_CLOSE = object()


class SessionChannel:
    """Server side of one SSE channel.

    Writers call `send()`; the SSE response drains `events()`. Once `close()`
    has been called every further `send()` raises `ChannelClosed`.
    """

    def __init__(self, endpoint: str = "") -> None:
        self.endpoint = endpoint
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: Dict[str, Any]) -> None:
        """Queue a JSON message for delivery as an SSE `message` event."""
        if self._closed:
            raise ChannelClosed("channel is closed")
        self._queue.put_nowait(message)

    def close(self) -> None:
        """Stop the event stream. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSE)

    async def events(self) -> AsyncIterator[Dict[str, str]]:
        """Yield sse-starlette event dicts: the endpoint event, then queued messages."""
        yield {"event": "endpoint", "data": self.endpoint}
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            yield {"event": "message", "data": json.dumps(item, ensure_ascii=False)}
