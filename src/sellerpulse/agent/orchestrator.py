import asyncio
import logging
import traceback
import weakref
from contextlib import aclosing
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from ..models import Message, RequestContext, StreamEvent, ToolCall, ToolResult
from ..services.inference import InferenceClient, InferenceError
from ..services.session_store import SessionRepository, require_owned_session
from ..settings import Settings
from .tools import ExecutionContext, ToolDispatcher, summarize_tool_result

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    IDLE = "idle"
    SESSION_RESOLVED = "session_resolved"
    INITIAL_ANALYSIS = "initial_analysis"
    TOOL_EXECUTION = "tool_execution"
    FINAL_GENERATION = "final_generation"
    COMPLETE = "complete"
    ERROR = "error"


def _event(type_: str, **payload: Any) -> StreamEvent:
    return StreamEvent(type=type_, payload=payload)  # type: ignore[arg-type]


def extract_tool_calls(message: Dict[str, Any]) -> List[ToolCall]:
    """ToolCalls proposed by an upstream message, with ids made unique within the turn."""
    calls: List[ToolCall] = []
    seen = set()
    for index, raw in enumerate(message.get("tool_calls") or []):
        if not isinstance(raw, dict):
            continue
        call = ToolCall.from_upstream(raw, index)
        if call.id in seen:
            call = ToolCall(id=f"{call.id}_{index}", name=call.name, arguments=call.arguments)
        seen.add(call.id)
        calls.append(call)
    return calls


def _conversation(history: Sequence[Message]) -> List[Dict[str, Any]]:
    """Replayable prompt context: user/assistant text only, tool turns are dropped."""
    return [
        {"role": m.role, "content": m.content}
        for m in history
        if m.role in ("user", "assistant")
    ]


def _assistant_tool_message(message: Dict[str, Any], calls: Sequence[ToolCall]) -> Dict[str, Any]:
    return {
        "role": "assistant",
        "content": message.get("content") or "",
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.parameters()},
            }
            for call in calls
        ],
    }


def _tool_event(call: ToolCall, result: ToolResult) -> StreamEvent:
    if result.success:
        return _event("tool", tool=call.name, status="done", preview=summarize_tool_result(result))
    return _event("tool", tool=call.name, status="error", message=result.error)


class ChatOrchestrator:
    """Sequences one chat turn: session, analysis, tool fan-out, final generation, persistence."""

    def __init__(
        self,
        sessions: SessionRepository,
        inference: InferenceClient,
        dispatcher: ToolDispatcher,
        acquire_data_source: Callable[[RequestContext], Awaitable[Any]],
        settings: Settings,
    ) -> None:
        self._sessions = sessions
        self._inference = inference
        self._dispatcher = dispatcher
        self._acquire = acquire_data_source
        self._settings = settings
        # One writer per session id at a time; entries vanish once no turn holds them.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _session_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _system_message(self) -> Dict[str, Any]:
        return {"role": "system", "content": self._settings.render_system_prompt()}

    def _execution_context(self, request_context: RequestContext) -> ExecutionContext:
        return ExecutionContext(
            request_context=request_context,
            acquire=self._acquire,
            today=self._settings.today(),
        )

    def _error_event(self, message: str, exc: Optional[BaseException] = None) -> StreamEvent:
        payload: Dict[str, Any] = {"message": message}
        if exc is not None and self._settings.debug:
            payload["details"] = "".join(traceback.format_exception(exc))
        return _event("error", **payload)

    async def _resolve_session(self, session_id: Optional[str], user_id: str) -> Tuple[str, bool]:
        """Reuse session_id when it exists and belongs to user_id, otherwise mint a new one."""
        if session_id:
            session = await self._sessions.get_session(session_id)
            if session is not None and session.user_id == user_id:
                return session_id, False
            logger.info("Session %s unknown or not owned by %s, creating a new one", session_id, user_id)
        return await self._sessions.create_session(user_id), True

    async def stream_chat(
        self,
        message: Any,
        session_id: Optional[str],
        request_context: RequestContext,
    ) -> AsyncIterator[StreamEvent]:
        """Run one streaming turn, yielding the client-facing events.

        Always ends with exactly one terminal event: ``end`` on success,
        ``error`` otherwise.
        """
        if not isinstance(message, str) or not message.strip():
            yield self._error_event("Message is required")
            return

        yield _event("start", content=self._settings.start_message)
        state = TurnState.IDLE
        try:
            session_id, created = await self._resolve_session(session_id, request_context.user_id)
            if created:
                yield _event("session", sessionId=session_id)
            state = TurnState.SESSION_RESOLVED

            async with self._session_lock(session_id):
                async with aclosing(self._run_turn(message, session_id, request_context)) as events:
                    async for state, event in events:
                        if event is not None:
                            yield event
        except Exception as e:
            logger.exception("Streaming turn failed in state %s: %s", state.value, e)
            yield self._error_event(str(e) or "An unexpected error occurred", e)

    async def _run_turn(
        self,
        message: str,
        session_id: str,
        request_context: RequestContext,
    ) -> AsyncIterator[Tuple[TurnState, Optional[StreamEvent]]]:
        """Yield (state, event) pairs; an event of None only marks a state transition."""
        await self._sessions.add_message(session_id, "user", message)
        base_messages = [
            self._system_message(),
            *_conversation(await self._sessions.get_history(session_id)),
        ]

        yield TurnState.INITIAL_ANALYSIS, None
        logger.info("Session %s: initial analysis", session_id)
        try:
            analysis = await self._inference.complete(
                base_messages, tools=self._dispatcher.registry.definitions()
            )
        except InferenceError as e:
            logger.error("Initial inference request failed: %s", e)
            yield TurnState.ERROR, self._error_event(f"Failed to connect to AI: {e}", e)
            return

        tool_calls = extract_tool_calls(analysis)
        results: List[ToolResult] = []

        if not tool_calls:
            logger.info("Session %s: no tools were called", session_id)
            answer = analysis.get("content") or ""
            yield TurnState.FINAL_GENERATION, _event("thinking", content=self._settings.thinking_message)
            if answer:
                yield TurnState.FINAL_GENERATION, _event("chunk", content=answer)
        else:
            yield TurnState.TOOL_EXECUTION, None
            logger.info(
                "Session %s: dispatching tools %s",
                session_id,
                ", ".join(call.name for call in tool_calls),
            )
            for call in tool_calls:
                yield TurnState.TOOL_EXECUTION, _event(
                    "tool", tool=call.name, status="running", message=f"Executing {call.name}..."
                )

            by_id: Dict[str, ToolResult] = {}
            context = self._execution_context(request_context)
            async with aclosing(self._dispatcher.iter_completed(tool_calls, context)) as completed:
                async for call, result in completed:
                    by_id[call.id] = result
                    yield TurnState.TOOL_EXECUTION, _tool_event(call, result)
            results = [by_id[call.id] for call in tool_calls]
            yield TurnState.FINAL_GENERATION, None

            final_messages = [
                *base_messages,
                _assistant_tool_message(analysis, tool_calls),
                *(result.to_message() for result in results),
            ]
            yield TurnState.FINAL_GENERATION, _event("thinking", content=self._settings.thinking_message)

            answer = ""
            try:
                async with aclosing(self._inference.stream(final_messages)) as deltas:
                    async for delta in deltas:
                        if delta.content:
                            answer += delta.content
                            yield TurnState.FINAL_GENERATION, _event("chunk", content=delta.content)
                        if delta.done:
                            break
            except InferenceError as e:
                logger.warning("Streaming failed (%s), falling back to a non-streaming call", e)
                try:
                    fallback = await self._inference.complete(final_messages)
                except InferenceError as fallback_error:
                    logger.error("Fallback request failed: %s", fallback_error)
                    yield TurnState.ERROR, self._error_event(
                        f"Failed to generate response: {fallback_error}", fallback_error
                    )
                    return
                partial = answer
                answer = fallback.get("content") or "Response generated"
                if partial:
                    # The complete text supersedes the chunks already sent.
                    yield TurnState.FINAL_GENERATION, _event("chunk", content=answer, replace=True)
                else:
                    yield TurnState.FINAL_GENERATION, _event("chunk", content=answer)

        await self._sessions.add_message(
            session_id,
            "assistant",
            answer,
            {"tool_calls": tool_calls, "tool_results": results},
        )
        logger.info("Session %s: turn complete (%d chars)", session_id, len(answer))
        yield TurnState.COMPLETE, _event(
            "end", complete=True, sessionId=session_id, messageLength=len(answer)
        )

    async def process_query(
        self,
        query: str,
        request_context: RequestContext,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Non-streaming turn. Returns ``{success, response, data, toolCalls}``.

        Inference failures propagate as InferenceError; an explicit session_id
        must exist and belong to the caller (SessionError otherwise).
        """
        history: List[Message] = []
        if session_id:
            session = await require_owned_session(self._sessions, session_id, request_context.user_id)
            history = list(session.messages)

        messages = [
            self._system_message(),
            *_conversation(history),
            {"role": "user", "content": query},
        ]
        analysis = await self._inference.complete(messages, tools=self._dispatcher.registry.definitions())
        tool_calls = extract_tool_calls(analysis)

        data: Any = None
        results: List[ToolResult] = []
        if not tool_calls:
            response = analysis.get("content") or "No response from model"
        else:
            results = await self._dispatcher.dispatch_all(tool_calls, self._execution_context(request_context))
            final = await self._inference.complete(
                [
                    *messages,
                    _assistant_tool_message(analysis, tool_calls),
                    *(result.to_message() for result in results),
                ]
            )
            response = final.get("content") or "No response from model"
            payloads = [result.payload() for result in results]
            data = payloads[0] if len(payloads) == 1 else payloads

        if session_id:
            async with self._session_lock(session_id):
                await self._sessions.add_message(session_id, "user", query)
                await self._sessions.add_message(
                    session_id,
                    "assistant",
                    response,
                    {"tool_calls": tool_calls, "tool_results": results},
                )

        return {
            "success": True,
            "response": response,
            "data": data,
            "toolCalls": [{"name": c.name, "parameters": c.parameters()} for c in tool_calls],
        }
