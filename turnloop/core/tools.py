"""
Tool registry and dispatcher.

Tool providers are registered explicitly by the host. Discovery asks each
provider for its tools exactly once; a provider that fails is logged and
skipped. Executing a tool call validates it, runs the handler with a
timeout, and always produces a Return, never an exception.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Protocol

from turnloop.core.cancellation import CancellationToken, OperationCancelledError
from turnloop.core.filters import NameFilter
from turnloop.core.validation import ValidationContext, validate_tool_call
from turnloop.models.body import Body
from turnloop.models.call import CallStatus, Capability, Return
from turnloop.models.interactions import Metrics, ToolCallInteraction, ToolResultInteraction
from turnloop.models.messages import MessageCode, RuntimeMessage
from turnloop.models.tool_result import ToolEnvelope, timed_execution

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT = 120.0
MIN_TOOL_TIMEOUT = 1.0
MAX_TOOL_TIMEOUT = 600.0

ToolHandler = Callable[[ToolCallInteraction], Any]


@dataclass
class Tool:
    """A callable tool advertised to the model."""

    name: str
    description: str
    execute: ToolHandler
    parameters_schema: dict[str, Any] = field(default_factory=dict)
    category: str = "General"
    required_capabilities: Capability = Capability.NONE
    timeout: float | None = None

    def to_openai(self) -> dict[str, Any]:
        """OpenAI function calling format."""
        parameters = self.parameters_schema or {"type": "object", "properties": {}}
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }


class ToolProvider(Protocol):
    def get_tools(self) -> Iterable[Tool]:
        ...


def clamp_timeout(seconds: float | None, default: float = DEFAULT_TOOL_TIMEOUT) -> float:
    if seconds is None or seconds <= 0:
        seconds = default
    return max(MIN_TOOL_TIMEOUT, min(MAX_TOOL_TIMEOUT, seconds))


class ToolManager:
    """
    Name to tool registry with lazy, one-time discovery.

    Names are matched exactly; registering a name twice keeps the last tool.
    After discovery the registry is only read.
    """

    def __init__(
        self,
        providers: Iterable[ToolProvider] | None = None,
        default_timeout: float = DEFAULT_TOOL_TIMEOUT,
    ):
        self._providers: list[ToolProvider] = list(providers or [])
        self._tools: dict[str, Tool] = {}
        self._discovered = False
        self.default_timeout = clamp_timeout(default_timeout)

    # -- registration --

    def register_provider(self, provider: ToolProvider) -> None:
        self._providers.append(provider)
        if self._discovered:
            self._load_provider(provider)

    def register_tool(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.debug("Tool '%s' re-registered; last registration wins", tool.name)
        self._tools[tool.name] = tool

    def discover_tools(self) -> None:
        """Load tools from every registered provider. Runs at most once."""
        if self._discovered:
            return
        self._discovered = True
        for provider in self._providers:
            self._load_provider(provider)
        logger.debug("Discovered %d tools from %d providers", len(self._tools), len(self._providers))

    def _load_provider(self, provider: ToolProvider) -> None:
        try:
            tools = list(provider.get_tools())
        except Exception as e:
            logger.warning("Skipping tool provider %s: %s", type(provider).__name__, e)
            return
        for tool in tools:
            self.register_tool(tool)

    # -- lookup --

    def get_tool(self, name: str) -> Tool | None:
        self.discover_tools()
        return self._tools.get(name)

    def get_tools(self, tool_filter: str | None = None) -> list[Tool]:
        self.discover_tools()
        name_filter = NameFilter.parse(tool_filter)
        return [t for t in self._tools.values() if name_filter.should_include(t.name)]

    def openai_tools(self, tool_filter: str | None = None) -> list[dict[str, Any]]:
        return [t.to_openai() for t in self.get_tools(tool_filter)]

    # -- execution --

    async def execute_tool(
        self,
        call: ToolCallInteraction,
        provider: str | None = None,
        model: str | None = None,
        capabilities=None,
        token: CancellationToken | None = None,
    ) -> Return:
        """
        Validate and run one tool call.

        Returns a Return whose body holds exactly one ToolResult correlated
        with ``call``. Failures are reported as tool errors.
        """
        self.discover_tools()
        context = ValidationContext(provider=provider, model=model, tools=self, capabilities=capabilities)
        validation = validate_tool_call(call, context)
        if not validation.is_valid:
            message = f"Tool call is invalid: {validation.summary()}"
            logger.info("Rejected tool call %s (%s): %s", call.id, call.name, validation.summary())
            envelope = ToolEnvelope.fail(message, error_type="invalid_call", tool_name=call.name)
            return Return.tool_error(
                message,
                messages=validation.messages,
                result=self._result_for(call, envelope.to_payload(), validation.messages),
                code=MessageCode.TOOL_VALIDATION_ERROR,
            )

        tool = self._tools[call.name]
        timeout = clamp_timeout(tool.timeout, self.default_timeout)
        token = token or CancellationToken()

        with timed_execution() as timing:
            try:
                output = await token.guard(asyncio.wait_for(self._invoke(tool, call), timeout))
            except OperationCancelledError:
                raise
            except asyncio.TimeoutError:
                output = ToolEnvelope.fail(
                    f"Tool '{call.name}' timed out after {timeout:g}s", error_type="timeout", tool_name=call.name
                )
            except Exception as e:
                logger.warning("Tool '%s' raised: %s", call.name, e)
                output = ToolEnvelope.fail(
                    f"Error executing tool '{call.name}': {e}",
                    error_type=type(e).__name__,
                    tool_name=call.name,
                )

        return self._to_return(call, output, timing.get("duration_ms", 0))

    @staticmethod
    async def _invoke(tool: Tool, call: ToolCallInteraction) -> Any:
        if inspect.iscoroutinefunction(tool.execute):
            return await tool.execute(call)
        result = await asyncio.to_thread(tool.execute, call)
        if inspect.isawaitable(result):
            result = await result
        return result

    @staticmethod
    def _result_for(
        call: ToolCallInteraction,
        payload: Any,
        messages: Iterable[RuntimeMessage] = (),
        duration_ms: int = 0,
    ) -> ToolResultInteraction:
        return ToolResultInteraction(
            id=call.id,
            name=call.name,
            result=payload,
            messages=tuple(messages),
            turn_id=call.turn_id,
            metrics=Metrics(completion_time=duration_ms / 1000),
        )

    def _to_return(self, call: ToolCallInteraction, output: Any, duration_ms: int) -> Return:
        if isinstance(output, ToolEnvelope):
            result = self._result_for(call, output.to_payload(), duration_ms=duration_ms)
            if output.ok:
                return Return.success([result], status=CallStatus.FINISHED)
            code = MessageCode.TOOL_TIMEOUT if output.error_type == "timeout" else MessageCode.TOOL_EXECUTION_ERROR
            return Return.tool_error(output.error or "Tool failed", result=result, code=code)

        if isinstance(output, ToolResultInteraction):
            return Return.success([_backfill(output, call)])

        if isinstance(output, Return):
            return _correlate_return(output, call)

        envelope = ToolEnvelope.success(output, tool_name=call.name, duration_ms=duration_ms)
        return self._to_return(call, envelope, duration_ms)


def _backfill(result: ToolResultInteraction, call: ToolCallInteraction) -> ToolResultInteraction:
    return dataclasses.replace(
        result,
        id=result.id or call.id,
        name=result.name or call.name,
        turn_id=result.turn_id or call.turn_id,
    )


def _correlate_return(ret: Return, call: ToolCallInteraction) -> Return:
    """Make sure a handler's Return carries one result correlated with ``call``."""
    items = list(ret.body.interactions)
    for index in range(len(items) - 1, -1, -1):
        if isinstance(items[index], ToolResultInteraction):
            items[index] = _backfill(items[index], call)
            return ret.with_body(Body.of(items))

    payload = {"error": ret.error_message} if ret.is_error else None
    result = ToolResultInteraction(
        id=call.id,
        name=call.name,
        result=payload,
        messages=ret.messages,
        turn_id=call.turn_id,
    )
    return ret.with_body(Body.of(items + [result]))


_default_manager: ToolManager | None = None


def get_tool_manager() -> ToolManager:
    """Process-wide default tool manager."""
    global _default_manager
    if _default_manager is None:
        _default_manager = ToolManager()
    return _default_manager


def reset_tool_manager() -> None:
    """Drop the process-wide tool manager (for tests)."""
    global _default_manager
    _default_manager = None


def extract_tool_result(
    call: ToolCallInteraction, ret: Return, turn_id: str | None = None
) -> ToolResultInteraction:
    """
    The ToolResult answering ``call`` from an execution Return.

    Executors that produce no result get a synthesized error result, so every
    executed call is answered.
    """
    result = None
    for item in reversed(ret.body.interactions):
        if isinstance(item, ToolResultInteraction):
            result = item
            break
    if result is None:
        result = ToolResultInteraction(
            id=call.id,
            name=call.name,
            result={"error": ret.error_message or "Tool execution failed or returned no result"},
            messages=ret.messages,
        )
    result = _backfill(result, call)
    if turn_id and not result.turn_id:
        result = dataclasses.replace(result, turn_id=turn_id)
    return result
