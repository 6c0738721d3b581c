import json

import pytest

from sellerpulse.models import StreamEvent
from sellerpulse.services.sse import SSE_HEADERS, SSEEncoder, sse_frames


def _decode(frame: str) -> dict:
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    return json.loads(frame[len("data: ") : -2])


def test_encode_produces_data_frame_with_id_and_timestamp() -> None:
    """encode wraps the event in one data frame carrying id and timestamp."""
    encoder = SSEEncoder()
    body = _decode(encoder.encode(StreamEvent("chunk", {"content": "hello\nworld"})))
    assert body["type"] == "chunk"
    assert body["content"] == "hello\nworld"
    assert isinstance(body["id"], int)
    assert "timestamp" in body


def test_frame_ids_strictly_increase() -> None:
    """Ids never repeat even when frames are produced within one millisecond."""
    encoder = SSEEncoder()
    ids = [encoder.frame(StreamEvent("thinking"))["id"] for _ in range(50)]
    assert all(a < b for a, b in zip(ids, ids[1:]))


def test_sse_headers_disable_buffering() -> None:
    """Response headers mark an uncached event stream that proxies must not buffer."""
    assert SSE_HEADERS["Content-Type"] == "text/event-stream"
    assert SSE_HEADERS["Cache-Control"] == "no-cache"
    assert SSE_HEADERS["X-Accel-Buffering"] == "no"


@pytest.mark.asyncio
async def test_sse_frames_yields_one_complete_frame_per_event() -> None:
    """Each event becomes exactly one chunk holding exactly one frame."""

    async def events():
        yield StreamEvent("start", {"content": "Analyzing"})
        yield StreamEvent("chunk", {"content": "a\n\nb"})
        yield StreamEvent("end", {"complete": True})

    chunks = [chunk async for chunk in sse_frames(events())]
    assert len(chunks) == 3
    assert [_decode(c)["type"] for c in chunks] == ["start", "chunk", "end"]
    assert all(c.count("\n\n") == 1 for c in chunks)


@pytest.mark.asyncio
async def test_sse_frames_closes_source_when_consumer_stops() -> None:
    """Closing the frame stream early closes the event source too."""
    closed = False

    async def events():
        nonlocal closed
        try:
            while True:
                yield StreamEvent("chunk", {"content": "x"})
        finally:
            closed = True

    frames = sse_frames(events())
    await frames.__anext__()
    await frames.aclose()
    assert closed is True
