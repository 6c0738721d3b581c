"""
Inference client for an Ollama-style ``/api/chat`` endpoint.

Wire format (both streaming and non-streaming):
    {"message": {"role": "assistant", "content": "...", "tool_calls": [...]}}\n
    {"message": {...}}\n
    {"done": true, ...}\n

The body is newline-delimited JSON. Network reads do not line up with frame
boundaries, so bytes are buffered and only complete lines are parsed.
"""

import errno
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterator, List, Optional, TypeVar
from urllib.parse import urlsplit, urlunsplit

import httpx

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"
CHAT_PATH = "/api/chat"
TAGS_PATH = "/api/tags"

T = TypeVar("T")


class InferenceError(Exception):
    """Base class for upstream inference failures."""


class InferenceConnectionError(InferenceError):
    """Connection refused, DNS failure or a broken transport."""


class InferenceTimeoutError(InferenceError):
    """The upstream request exceeded the configured timeout."""


class InferenceStatusError(InferenceError):
    """Upstream answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class InferenceProtocolError(InferenceError):
    """Upstream body could not be decoded into any usable frame."""


@dataclass(frozen=True)
class MessageDelta:
    """One decoded upstream frame."""

    content: str = ""
    role: str = "assistant"
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    done: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_frame(cls, frame: Dict[str, Any]) -> "MessageDelta":
        message = frame.get("message")
        if not isinstance(message, dict):
            message = {}
        return cls(
            content=message.get("content") or "",
            role=message.get("role") or "assistant",
            tool_calls=list(message.get("tool_calls") or []),
            done=bool(frame.get("done")),
            raw=frame,
        )


class NDJSONDecoder:
    """Incremental newline-delimited JSON decoder.

    ``feed`` returns every complete frame found so far and keeps any trailing
    partial line for the next call; ``flush`` parses whatever is left once the
    body has ended. Lines that are not JSON objects are logged and dropped.
    """

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, chunk: bytes) -> List[Dict[str, Any]]:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        return [frame for frame in map(self._parse, lines) if frame is not None]

    def flush(self) -> List[Dict[str, Any]]:
        tail, self._buffer = self._buffer, b""
        frame = self._parse(tail)
        return [frame] if frame is not None else []

    @staticmethod
    def _parse(line: bytes) -> Optional[Dict[str, Any]]:
        text = line.strip()
        if not text:
            return None
        try:
            frame = json.loads(text)
        except ValueError:
            logger.warning("Skipping unparseable upstream line: %.200r", text)
            return None
        if not isinstance(frame, dict):
            logger.warning("Skipping non-object upstream frame: %.200r", text)
            return None
        return frame


def loopback_alternate(base_url: str) -> Optional[str]:
    """Return base_url with a localhost-class host replaced by 127.0.0.1, else None."""
    parts = urlsplit(base_url)
    host = (parts.hostname or "").lower()
    if host != "localhost" and not host.endswith(".localhost"):
        return None
    netloc = LOOPBACK_HOST if parts.port is None else f"{LOOPBACK_HOST}:{parts.port}"
    userinfo, _, _ = parts.netloc.rpartition("@")
    if userinfo:
        netloc = f"{userinfo}@{netloc}"
    return urlunsplit(parts._replace(netloc=netloc))


def is_connection_refused(exc: BaseException) -> bool:
    seen: Optional[BaseException] = exc
    visited = set()
    while seen is not None and id(seen) not in visited:
        visited.add(id(seen))
        if isinstance(seen, ConnectionRefusedError):
            return True
        if isinstance(seen, OSError) and seen.errno == errno.ECONNREFUSED:
            return True
        seen = seen.__cause__ or seen.__context__
    return "refused" in str(exc).lower()


async def with_loopback_fallback(
    base_url: str, attempt: Callable[[str], Awaitable[T]]
) -> T:
    """Run attempt(base_url); on a refused localhost connection retry once on 127.0.0.1.

    Any other failure, and any failure of the retry itself, propagates unchanged.
    """
    try:
        return await attempt(base_url)
    except httpx.ConnectError as exc:
        alternate = loopback_alternate(base_url)
        if alternate is None or not is_connection_refused(exc):
            raise
        logger.warning("Connection to %s refused, retrying once with %s", base_url, alternate)
    return await attempt(alternate)


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except httpx.TimeoutException as exc:
        raise InferenceTimeoutError("Upstream request timed out") from exc
    except httpx.ConnectError as exc:
        raise InferenceConnectionError(f"Cannot connect to inference service: {exc}") from exc
    except httpx.HTTPError as exc:
        raise InferenceConnectionError(f"Upstream transport failure: {exc}") from exc


def _status_error(status_code: int, body: bytes, model: str) -> InferenceStatusError:
    text = body.decode("utf-8", errors="replace")
    message = f"Inference API error ({status_code}): {text[:200]}"
    try:
        detail = json.loads(text).get("error")
    except (ValueError, AttributeError):
        detail = None
    if detail:
        message = f"Inference error: {detail}"
        if "not found" in str(detail):
            message = f"Model '{model}' not found. Install it with: ollama pull {model}"
    return InferenceStatusError(message, status_code)


class InferenceClient:
    """Async client for the upstream generation service."""

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _payload(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        stream: bool,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": self.model, "messages": messages, "stream": stream}
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        return payload

    async def _post(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        response = await self._client.post(f"{url}{CHAT_PATH}", json=payload)
        if response.is_error:
            raise _status_error(response.status_code, response.content, self.model)
        return response

    async def _open_stream(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        request = self._client.build_request("POST", f"{url}{CHAT_PATH}", json=payload)
        response = await self._client.send(request, stream=True)
        if response.is_error:
            body = await response.aread()
            await response.aclose()
            raise _status_error(response.status_code, body, self.model)
        return response

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Single request/response call. Returns the last upstream ``message`` object."""
        payload = self._payload(messages, tools, stream=False)
        logger.debug("complete: %d messages, %d tools", len(messages), len(tools or []))
        with _translate_errors():
            response = await with_loopback_fallback(
                self.base_url, lambda url: self._post(url, payload)
            )

        decoder = NDJSONDecoder()
        frames = decoder.feed(response.content) + decoder.flush()
        message = None
        for frame in frames:
            if isinstance(frame.get("message"), dict):
                message = frame["message"]
        if message is None:
            raise InferenceProtocolError(
                f"No message received from inference service (model {self.model})"
            )
        return message

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[MessageDelta]:
        """Stream message deltas. Finite, not restartable; ends after the done frame."""
        payload = self._payload(messages, tools, stream=True)
        decoder = NDJSONDecoder()
        valid_frames = 0

        with _translate_errors():
            response = await with_loopback_fallback(
                self.base_url, lambda url: self._open_stream(url, payload)
            )
            try:
                async for chunk in response.aiter_bytes():
                    for frame in decoder.feed(chunk):
                        delta = self._accept(frame)
                        if delta is None:
                            continue
                        valid_frames += 1
                        yield delta
                        if delta.done:
                            return
                for frame in decoder.flush():
                    delta = self._accept(frame)
                    if delta is None:
                        continue
                    valid_frames += 1
                    yield delta
                    if delta.done:
                        return
            finally:
                await response.aclose()

        if valid_frames == 0:
            raise InferenceProtocolError("Upstream stream ended without any valid frame")
        logger.debug("Upstream stream ended without done frame after %d frames", valid_frames)
        yield MessageDelta(done=True)

    @staticmethod
    def _accept(frame: Dict[str, Any]) -> Optional[MessageDelta]:
        if frame.get("done"):
            return MessageDelta.from_frame(frame)
        if isinstance(frame.get("message"), dict):
            return MessageDelta.from_frame(frame)
        if "error" in frame:
            raise InferenceProtocolError(f"Upstream error: {frame['error']}")
        logger.warning("Skipping upstream frame without message: %.200r", frame)
        return None

    async def list_models(self) -> List[Dict[str, Any]]:
        """Return the models installed on the upstream service."""

        async def _get(url: str) -> httpx.Response:
            response = await self._client.get(f"{url}{TAGS_PATH}")
            if response.is_error:
                raise _status_error(response.status_code, response.content, self.model)
            return response

        with _translate_errors():
            response = await with_loopback_fallback(self.base_url, _get)
        try:
            return list(response.json().get("models") or [])
        except (ValueError, AttributeError) as exc:
            raise InferenceProtocolError("Failed to parse models list") from exc

    async def probe(self, base_url: str, timeout: float) -> Dict[str, Any]:
        """Check whether an upstream answers on base_url. Never raises."""
        url = base_url.rstrip("/")
        host = urlsplit(url).hostname
        try:
            response = await self._client.get(f"{url}{TAGS_PATH}", timeout=timeout)
            data = response.json()
        except httpx.TimeoutException:
            return {"success": False, "host": host, "url": url, "error": "Connection timeout"}
        except httpx.HTTPError as exc:
            return {"success": False, "host": host, "url": url, "error": str(exc)}
        except ValueError:
            return {"success": False, "host": host, "url": url, "error": "Failed to parse response"}
        return {"success": response.is_success, "host": host, "url": url, "response": data}
