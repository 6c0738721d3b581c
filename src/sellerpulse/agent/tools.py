import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
    Type,
)

from pydantic import BaseModel, ValidationError

from ..models import RequestContext, ToolCall, ToolResult

logger = logging.getLogger(__name__)


class ToolRegistrationError(Exception):
    """A tool's declared schema does not match its argument model."""


class ToolExecutionError(Exception):
    """Raised by handlers for expected, user-facing failures."""


@dataclass
class ExecutionContext:
    """Per-request state handed to every tool handler.

    The data-source handle is obtained lazily from the injected ``acquire``
    collaborator and shared by all tool calls of the request.
    """

    request_context: RequestContext
    acquire: Callable[[RequestContext], Awaitable[Any]]
    today: date = field(default_factory=date.today)
    _data_source: Any = field(default=None, init=False, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    async def data_source(self) -> Any:
        async with self._lock:
            if self._data_source is None:
                self._data_source = await self.acquire(self.request_context)
            return self._data_source


Handler = Callable[[Any, ExecutionContext], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, Any]
    args_model: Type[BaseModel]
    handler: Handler

    def definition(self) -> Dict[str, Any]:
        """Tool definition in the function-calling format sent upstream."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def _check_schema(spec: ToolSpec) -> None:
    params = spec.parameters
    if params.get("type") != "object" or not isinstance(params.get("properties"), dict):
        raise ToolRegistrationError(f"{spec.name}: parameters must be an object schema")

    fields = spec.args_model.model_fields
    declared = set(params["properties"])
    accepted = {f.alias or name for name, f in fields.items()}
    if declared != accepted:
        raise ToolRegistrationError(
            f"{spec.name}: schema properties {sorted(declared)} do not match "
            f"argument model fields {sorted(accepted)}"
        )

    required = set(params.get("required") or [])
    model_required = {f.alias or name for name, f in fields.items() if f.is_required()}
    if required != model_required:
        raise ToolRegistrationError(
            f"{spec.name}: schema requires {sorted(required)} but model requires {sorted(model_required)}"
        )


class ToolRegistry:
    """Closed set of tools, each validated against its schema when registered."""

    def __init__(self, specs: Iterable[ToolSpec] = ()) -> None:
        self._tools: Dict[str, ToolSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ToolRegistrationError(f"Duplicate tool name: {spec.name}")
        _check_schema(spec)
        self._tools[spec.name] = spec

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def definitions(self) -> List[Dict[str, Any]]:
        return [spec.definition() for spec in self._tools.values()]

    def describe(self) -> List[Dict[str, Any]]:
        return [
            {"name": s.name, "description": s.description, "parameters": s.parameters}
            for s in self._tools.values()
        ]


def parse_arguments(arguments: Any) -> Dict[str, Any]:
    """Accept tool arguments as a JSON string or an already-structured mapping."""
    if arguments is None or arguments == "":
        return {}
    if isinstance(arguments, str):
        parsed = json.loads(arguments)
    else:
        parsed = arguments
    if not isinstance(parsed, dict):
        raise ValueError("arguments must be a JSON object")
    return dict(parsed)


def _validation_summary(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


class ToolDispatcher:
    """Resolves tool names against the registry and runs handlers.

    Every call produces exactly one ToolResult; failures are captured in the
    result rather than raised.
    """

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def dispatch(
        self,
        name: str,
        arguments: Any,
        context: ExecutionContext,
        tool_call_id: str = "",
    ) -> ToolResult:
        def failure(message: str) -> ToolResult:
            return ToolResult(tool_call_id=tool_call_id, name=name, success=False, error=message)

        spec = self._registry.get(name)
        if spec is None:
            logger.warning("Unknown tool requested: %s", name)
            return failure(f"Unknown tool: {name}")

        try:
            raw = parse_arguments(arguments)
        except ValueError as e:
            logger.warning("Invalid tool arguments for %s: %s", name, e)
            return failure(f"Invalid arguments for {name}: {e}")

        try:
            args = spec.args_model.model_validate(raw)
        except ValidationError as e:
            summary = _validation_summary(e)
            logger.warning("Tool %s rejected arguments: %s", name, summary)
            return failure(f"Invalid arguments for {name}: {summary}")

        logger.info("Executing tool: %s with parameters %s", name, raw)
        try:
            data = await spec.handler(args, context)
        except ToolExecutionError as e:
            logger.warning("Tool %s failed: %s", name, e)
            return failure(str(e))
        except Exception as e:
            logger.exception("Error executing tool %s: %s", name, e)
            return failure(str(e) or e.__class__.__name__)

        if isinstance(data, dict) and data.get("success") is False:
            return failure(str(data.get("error") or "Tool reported failure"))
        logger.info("Tool %s completed successfully", name)
        return ToolResult(tool_call_id=tool_call_id, name=name, success=True, data=data)

    async def dispatch_call(self, call: ToolCall, context: ExecutionContext) -> ToolResult:
        return await self.dispatch(call.name, call.arguments, context, tool_call_id=call.id)

    async def dispatch_all(
        self, calls: Sequence[ToolCall], context: ExecutionContext
    ) -> List[ToolResult]:
        """Run all calls concurrently and wait for every one. Results follow call order."""
        outcomes = await asyncio.gather(
            *(self.dispatch_call(call, context) for call in calls),
            return_exceptions=True,
        )
        results = []
        for call, outcome in zip(calls, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Tool %s crashed outside its handler: %s", call.name, outcome)
                outcome = ToolResult(call.id, call.name, success=False, error=str(outcome))
            results.append(outcome)
        return results

    async def iter_completed(
        self, calls: Sequence[ToolCall], context: ExecutionContext
    ) -> AsyncIterator[Tuple[ToolCall, ToolResult]]:
        """Run all calls concurrently, yielding (call, result) as each one settles."""
        tasks = {asyncio.ensure_future(self.dispatch_call(call, context)): call for call in calls}
        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    call = tasks[task]
                    try:
                        result = task.result()
                    except Exception as e:
                        logger.error("Tool %s crashed outside its handler: %s", call.name, e)
                        result = ToolResult(call.id, call.name, success=False, error=str(e))
                    yield call, result
        finally:
            for task in pending:
                task.cancel()


def _money(value: float) -> str:
    return f"${value:,.2f}"


def summarize_tool_result(result: ToolResult) -> str:
    """Short human-readable preview of a tool result for the status event."""
    if not result.success:
        return "Error occurred"

    if isinstance(result.data, dict) and "totalItems" in result.data:
        return f"{result.data['totalItems']} items"

    payload = result.data.get("data") if isinstance(result.data, dict) else result.data

    if isinstance(payload, list):
        count = len(payload)
        if count == 0:
            return "No data found"
        first = payload[0] if isinstance(payload[0], dict) else {}
        for key in ("total_sales", "totalSales"):
            if key in first:
                total = 0.0
                for row in payload:
                    try:
                        total += float(row.get(key) or 0)
                    except (TypeError, ValueError):
                        continue
                return f"{count} records, {_money(total)} total"
        return f"{count} records found"

    if isinstance(payload, dict):
        if "totalItems" in payload:
            return f"{payload['totalItems']} items"
        totals = payload.get("totals")
        if isinstance(totals, dict) and "totalSales" in totals:
            return f"{totals.get('totalOrders', 0)} orders, {_money(float(totals['totalSales']))} total"
        return "Data retrieved"

    return "Complete"
