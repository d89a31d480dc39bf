"""
Scripted providers, adapters and observers shared by the turnloop tests.
"""

from typing import Any, Callable

from turnloop.core.observer import ConversationObserver
from turnloop.models.body import Body
from turnloop.models.call import CallStatus, Request, Return
from turnloop.models.interactions import (
    Agent,
    Metrics,
    TextInteraction,
    ToolCallInteraction,
    ToolResultInteraction,
)


def usage(prompt: int = 10, completion: int = 5) -> Metrics:
    return Metrics(
        provider="openai",
        model="gpt-4o",
        input_tokens_prompt=prompt,
        output_tokens_generation=completion,
        last_effective_total_tokens=prompt + completion,
    )


def assistant_reply(content: str, metrics: Metrics | None = None) -> Return:
    """Provider Return holding one assistant message."""
    return Return.success([TextInteraction(agent=Agent.ASSISTANT, content=content, metrics=metrics or usage())])


def tool_call_reply(*calls: tuple[str, str, dict | None]) -> Return:
    """Provider Return asking for the given (id, name, arguments) tool calls."""
    items = [ToolCallInteraction(id=call_id, name=name, arguments=args) for call_id, name, args in calls]
    return Return.success(items, status=CallStatus.CALLING_TOOLS)


def text_delta(content: str) -> Return:
    return Return(
        status=CallStatus.STREAMING,
        body=Body.of([TextInteraction(agent=Agent.ASSISTANT, content=content)]),
    )


class FakeStreamingAdapter:
    """Streams scripted deltas, one script per provider turn."""

    def __init__(self, scripts: list[list[Return]]):
        self.scripts = list(scripts)
        self.calls = 0
        self.closed = False
        self.pending_at_call: list[int] = []

    async def stream(self, request, options, token):
        self.calls += 1
        self.pending_at_call.append(request.body.pending_tool_calls_count())
        script = self.scripts.pop(0) if self.scripts else []
        try:
            for delta in script:
                yield delta
        finally:
            self.closed = True

    def normalize_delta(self, raw: Return) -> Return:
        if raw.is_error or raw.status == CallStatus.CALLING_TOOLS:
            return raw
        return raw.with_body(raw.body, CallStatus.STREAMING)


class ScriptedExecutor:
    """
    Provider executor that replays scripted responses.

    Each response is a Return, ``None``, an exception to raise, or a callable
    taking the request.
    """

    def __init__(
        self,
        responses: list[Any] | None = None,
        tool_handler: Callable[[ToolCallInteraction], Return] | None = None,
        adapter: FakeStreamingAdapter | None = None,
        repeat_last: bool = False,
    ):
        self.responses = list(responses or [])
        self.tool_handler = tool_handler
        self.adapter = adapter
        self.repeat_last = repeat_last
        self.requests: list[Request] = []
        self.pending_at_call: list[int] = []
        self.executed_tools: list[ToolCallInteraction] = []

    async def exec_provider(self, request: Request, token) -> Return | None:
        self.requests.append(request.clone())
        self.pending_at_call.append(request.body.pending_tool_calls_count())
        if not self.responses:
            return None
        item = self.responses[0] if self.repeat_last and len(self.responses) == 1 else self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        return item

    def try_get_streaming_adapter(self, request: Request):
        return self.adapter

    async def exec_tool(self, call: ToolCallInteraction, request: Request, token) -> Return:
        self.executed_tools.append(call)
        if self.tool_handler is not None:
            return self.tool_handler(call)
        return Return.success([ToolResultInteraction(id=call.id, name=call.name, result={"value": 42})])


class RecordingObserver(ConversationObserver):
    """Records every hook call as (hook, argument)."""

    def __init__(self):
        self.events: list[tuple[str, Any]] = []

    def _record(self, hook: str, arg: Any) -> None:
        self.events.append((hook, arg))

    def on_start(self, request):
        self._record("start", request)

    def on_delta(self, interaction):
        self._record("delta", interaction)

    def on_partial(self, ret):
        self._record("partial", ret)

    def on_tool_call(self, call):
        self._record("tool_call", call)

    def on_tool_result(self, result):
        self._record("tool_result", result)

    def on_final(self, ret):
        self._record("final", ret)

    def on_error(self, error):
        self._record("error", error)

    def named(self, hook: str) -> list[Any]:
        return [arg for name, arg in self.events if name == hook]
