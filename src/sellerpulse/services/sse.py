import json
import time
from contextlib import aclosing
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict

from ..models import StreamEvent

SSE_HEADERS: Dict[str, str] = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
    # nginx and friends buffer proxied responses unless told otherwise
    "X-Accel-Buffering": "no",
}


class SSEEncoder:
    """Formats StreamEvents as ``data: <json>\\n\\n`` frames.

    Each frame gets an ``id`` (millisecond timestamp, bumped so it is strictly
    increasing for this encoder) and an ISO-8601 ``timestamp``.
    """

    def __init__(self) -> None:
        self._last_id = 0

    def _next_id(self) -> int:
        self._last_id = max(self._last_id + 1, int(time.time() * 1000))
        return self._last_id

    def frame(self, event: StreamEvent) -> Dict[str, Any]:
        return {
            "id": self._next_id(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **event.to_dict(),
        }

    def encode(self, event: StreamEvent) -> str:
        return f"data: {json.dumps(self.frame(event), default=str)}\n\n"


async def sse_frames(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    """Encode an event stream, one complete frame per yielded chunk.

    The streaming response writes every chunk as its own body message, so each
    event reaches the client as soon as it is produced. Closing this generator
    closes ``events``.
    """
    encoder = SSEEncoder()
    async with aclosing(events) as stream:
        async for event in stream:
            yield encoder.encode(event)
