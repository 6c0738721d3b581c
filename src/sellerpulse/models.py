import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

logger = logging.getLogger(__name__)

Role = Literal["user", "assistant", "tool"]
EventType = Literal["start", "session", "tool", "thinking", "chunk", "error", "end"]


@dataclass(frozen=True)
class ToolCall:
    """A function invocation proposed by the upstream model."""

    id: str
    name: str
    # Raw JSON string or already-structured mapping, as sent upstream.
    arguments: Any = None

    @classmethod
    def from_upstream(cls, raw: Dict[str, Any], index: int) -> "ToolCall":
        """Build a ToolCall from an upstream `tool_calls` entry.

        Upstream entries look like ``{"id": ..., "function": {"name": ..., "arguments": ...}}``;
        the id is optional and is synthesised from the position when missing.
        """
        fn = raw.get("function")
        if not isinstance(fn, dict):
            # Malformed entries still become a call so they settle as "Unknown tool".
            fn = {}
        return cls(
            id=str(raw.get("id") or f"call_{index}"),
            name=str(fn.get("name") or "unknown"),
            arguments=fn.get("arguments"),
        )

    def parameters(self) -> Dict[str, Any]:
        """Return the arguments as a dict, or {} when they cannot be parsed."""
        if isinstance(self.arguments, dict):
            return self.arguments
        if isinstance(self.arguments, str) and self.arguments.strip():
            try:
                parsed = json.loads(self.arguments)
            except json.JSONDecodeError:
                logger.debug("Unparseable arguments on tool call %s", self.id)
                return {}
            return parsed if isinstance(parsed, dict) else {}
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "parameters": self.parameters()}


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one tool call. Always paired with the ToolCall of the same id."""

    tool_call_id: str
    name: str
    success: bool
    data: Any = None
    error: Optional[str] = None

    def payload(self) -> Any:
        """Content handed back to the model for this tool call."""
        if self.success:
            return self.data
        return {"error": self.error}

    def to_message(self) -> Dict[str, Any]:
        return {
            "role": "tool",
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "content": json.dumps(self.payload(), default=str),
        }

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "toolCallId": self.tool_call_id,
            "name": self.name,
            "success": self.success,
        }
        if self.success:
            out["data"] = self.data
        else:
            out["error"] = self.error
        return out


@dataclass(frozen=True)
class Message:
    """One conversation entry. Immutable once appended to a session."""

    role: Role
    content: str
    timestamp: datetime
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_results: List[ToolResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.tool_calls:
            out["toolCalls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_results:
            out["toolResults"] = [tr.to_dict() for tr in self.tool_results]
        return out


@dataclass
class Session:
    """Per-user conversation thread."""

    id: str
    user_id: str
    created_at: datetime
    updated_at: datetime
    title: str = "New Chat"
    messages: List[Message] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "messageCount": len(self.messages),
        }

    def to_dict(self) -> Dict[str, Any]:
        out = self.summary()
        out["messages"] = [m.to_dict() for m in self.messages]
        return out


@dataclass(frozen=True)
class StreamEvent:
    """A single event sent to the client during a streaming turn."""

    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, **self.payload}


@dataclass(frozen=True)
class RequestContext:
    """Caller identity resolved by the auth layer."""

    user_id: str
    tenant: Optional[str] = None
