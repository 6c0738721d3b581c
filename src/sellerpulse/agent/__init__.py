"""Agent package for the sellerpulse streaming analyst.

This package exposes the orchestrator and the tool registry while keeping
implementation details (date filters, SQL handlers, dispatch) organized in
separate modules.
"""

from .handlers import build_registry
from .orchestrator import ChatOrchestrator, TurnState, extract_tool_calls
from .tools import (
    ExecutionContext,
    ToolDispatcher,
    ToolExecutionError,
    ToolRegistrationError,
    ToolRegistry,
    ToolSpec,
    summarize_tool_result,
)

__all__ = [
    "ChatOrchestrator",
    "ExecutionContext",
    "ToolDispatcher",
    "ToolExecutionError",
    "ToolRegistrationError",
    "ToolRegistry",
    "ToolSpec",
    "TurnState",
    "build_registry",
    "extract_tool_calls",
    "summarize_tool_result",
]
