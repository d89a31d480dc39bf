"""
Provider execution.

The session talks to providers through the ``ProviderExecutor`` and
``StreamingAdapter`` protocols. ``LiteLLMExecutor`` is the default
implementation: it maps interactions to chat messages, calls LiteLLM and maps
the response back to interactions.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import time
import uuid
from typing import Any, AsyncIterator, Iterable, Protocol

from turnloop.core.cancellation import CancellationToken
from turnloop.core.capabilities import CapabilityRegistry, litellm_model_id
from turnloop.core.llm import LLMClient, LLMError
from turnloop.core.tokens import count_messages_tokens, count_tokens
from turnloop.core.tools import ToolManager
from turnloop.models.body import Body
from turnloop.models.call import CallStatus, Capability, Request, Return
from turnloop.models.config import StreamingOptions
from turnloop.models.interactions import (
    Agent,
    Interaction,
    Metrics,
    TextInteraction,
    ToolCallInteraction,
    ToolResultInteraction,
)

logger = logging.getLogger(__name__)


class StreamingAdapter(Protocol):
    """
    Incremental provider output.

    Each yielded Return is a delta. Text deltas carry the assistant text
    accumulated so far; tool calls are announced once they are complete.
    """

    def stream(
        self, request: Request, options: StreamingOptions, token: CancellationToken
    ) -> AsyncIterator[Return]:
        ...

    def normalize_delta(self, raw: Return) -> Return:
        ...


class ProviderExecutor(Protocol):
    async def exec_provider(self, request: Request, token: CancellationToken) -> Return | None:
        ...

    def try_get_streaming_adapter(self, request: Request) -> StreamingAdapter | None:
        ...

    async def exec_tool(self, call: ToolCallInteraction, request: Request, token: CancellationToken) -> Return:
        ...


_ROLES = {
    Agent.SYSTEM: "system",
    Agent.CONTEXT: "system",
    Agent.USER: "user",
    Agent.ASSISTANT: "assistant",
}


def _result_content(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def interactions_to_messages(interactions: Iterable[Interaction]) -> list[dict[str, Any]]:
    """Chat-completion messages for a sequence of interactions."""
    messages: list[dict[str, Any]] = []
    for item in interactions:
        if isinstance(item, TextInteraction):
            if not item.content:
                continue
            messages.append({"role": _ROLES.get(item.agent, "user"), "content": item.content})
        elif isinstance(item, ToolCallInteraction):
            entry = {
                "id": item.id,
                "type": "function",
                "function": {"name": item.name, "arguments": json.dumps(item.arguments or {})},
            }
            last = messages[-1] if messages else None
            if last is not None and last["role"] == "assistant":
                last.setdefault("tool_calls", []).append(entry)
            else:
                messages.append({"role": "assistant", "content": None, "tool_calls": [entry]})
        elif isinstance(item, ToolResultInteraction):
            messages.append({
                "role": "tool",
                "tool_call_id": item.id,
                "name": item.name,
                "content": _result_content(item.result),
            })
    return messages


def parse_arguments(raw: Any) -> dict[str, Any] | None:
    """Decode tool call arguments. Undecodable arguments become ``None``."""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logger.warning("Could not decode tool arguments: %.200s", raw)
        return None
    return value if isinstance(value, dict) else None


def _int(value: Any) -> int:
    return value if isinstance(value, int) else 0


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def metrics_from_usage(
    usage: Any,
    provider: str,
    model: str,
    finish_reason: str | None,
    elapsed: float,
) -> Metrics:
    prompt = _int(getattr(usage, "prompt_tokens", 0))
    completion = _int(getattr(usage, "completion_tokens", 0))
    prompt_details = getattr(usage, "prompt_tokens_details", None)
    completion_details = getattr(usage, "completion_tokens_details", None)
    cached = _int(getattr(prompt_details, "cached_tokens", 0))
    reasoning = _int(getattr(completion_details, "reasoning_tokens", 0))
    return Metrics(
        provider=provider,
        model=model,
        finish_reason=finish_reason if isinstance(finish_reason, str) else None,
        completion_time=elapsed,
        input_tokens_prompt=max(prompt - cached, 0),
        input_tokens_cached=cached,
        output_tokens_generation=max(completion - reasoning, 0),
        output_tokens_reasoning=reasoning,
        last_effective_total_tokens=prompt + completion,
    )


class LiteLLMExecutor:
    """Provider executor backed by LiteLLM."""

    def __init__(
        self,
        client: LLMClient,
        tool_manager: ToolManager | None = None,
        capabilities: CapabilityRegistry | None = None,
        streaming: bool = True,
    ):
        self.client = client
        self.tool_manager = tool_manager
        self.capabilities = capabilities
        self.streaming = streaming

    def build_call(self, request: Request) -> tuple[str, list[dict[str, Any]], list[dict[str, Any]] | None, dict[str, Any]]:
        """Model id, messages, tools and extra LiteLLM arguments for ``request``."""
        model = litellm_model_id(request.provider, request.model)
        messages = interactions_to_messages(request.body.interactions)
        tools = None
        if self.tool_manager is not None:
            tools = self.tool_manager.openai_tools(request.body.tool_filter) or None
        extra: dict[str, Any] = dict(request.options)
        schema = request.body.json_output_schema
        if schema and Capability.JSON_OUTPUT in request.capability:
            extra["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "response", "schema": schema, "strict": False},
            }
        if request.endpoint:
            extra["api_base"] = request.endpoint
        return model, messages, tools, extra

    async def exec_provider(self, request: Request, token: CancellationToken) -> Return | None:
        model, messages, tools, extra = self.build_call(request)
        start = time.monotonic()
        try:
            response = await token.guard(self.client.chat(messages, tools=tools, model=model, **extra))
        except LLMError as e:
            logger.warning("Provider call to %s failed: %s", model, e)
            return Return.provider_error(str(e), request)
        if response is None or not getattr(response, "choices", None):
            return None
        return self.response_to_return(response, request, time.monotonic() - start)

    def response_to_return(self, response: Any, request: Request, elapsed: float) -> Return:
        choice = response.choices[0]
        message = choice.message
        metrics = metrics_from_usage(
            getattr(response, "usage", None), request.provider, request.model, choice.finish_reason, elapsed
        )

        interactions: list[Interaction] = []
        content = _str(message.content)
        reasoning = _str(getattr(message, "reasoning_content", None))
        if content or reasoning:
            interactions.append(TextInteraction(agent=Agent.ASSISTANT, content=content, reasoning=reasoning))
        for tool_call in getattr(message, "tool_calls", None) or []:
            interactions.append(ToolCallInteraction(
                id=_str(tool_call.id) or f"call_{uuid.uuid4().hex[:12]}",
                name=_str(tool_call.function.name),
                arguments=parse_arguments(tool_call.function.arguments),
            ))
        if interactions:
            # usage belongs to the response, not to each interaction
            interactions[0] = dataclasses.replace(interactions[0], metrics=metrics)

        status = CallStatus.CALLING_TOOLS if any(isinstance(i, ToolCallInteraction) for i in interactions) else CallStatus.FINISHED
        return Return.success(interactions, request, status)

    def try_get_streaming_adapter(self, request: Request) -> StreamingAdapter | None:
        if not self.streaming:
            return None
        if self.capabilities is not None and not self.capabilities.supports_streaming(request.provider, request.model):
            return None
        return LiteLLMStreamingAdapter(self)

    async def exec_tool(self, call: ToolCallInteraction, request: Request, token: CancellationToken) -> Return:
        if self.tool_manager is None:
            return Return.tool_error(f"No tool manager available to run '{call.name}'")
        return await self.tool_manager.execute_tool(
            call, request.provider, request.model, self.capabilities, token
        )


class LiteLLMStreamingAdapter:
    def __init__(self, executor: LiteLLMExecutor):
        self.executor = executor

    async def stream(
        self, request: Request, options: StreamingOptions, token: CancellationToken
    ) -> AsyncIterator[Return]:
        model, messages, tools, extra = self.executor.build_call(request)
        if options.include_usage:
            extra["stream_options"] = {"include_usage": True}

        start = time.monotonic()
        try:
            response = await token.guard(
                self.executor.client.chat(messages, tools=tools, stream=True, model=model, **extra)
            )
        except LLMError as e:
            logger.warning("Streaming call to %s failed: %s", model, e)
            yield Return.provider_error(str(e), request)
            return

        text = ""
        reasoning = ""
        calls: dict[int, dict[str, str]] = {}
        finish_reason = None
        usage = None

        chunks = response.__aiter__()
        while True:
            try:
                chunk = await token.guard(chunks.__anext__())
            except StopAsyncIteration:
                break

            usage = getattr(chunk, "usage", None) or usage
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta
            if isinstance(choice.finish_reason, str):
                finish_reason = choice.finish_reason

            changed = False
            piece = _str(getattr(delta, "content", None))
            if piece:
                text += piece
                changed = True
            thought = _str(getattr(delta, "reasoning_content", None))
            if thought and options.include_reasoning:
                reasoning += thought
                changed = True
            for part in getattr(delta, "tool_calls", None) or []:
                slot = calls.setdefault(part.index or 0, {"id": "", "name": "", "arguments": ""})
                slot["id"] = _str(part.id) or slot["id"]
                if part.function is not None:
                    slot["name"] += _str(part.function.name)
                    slot["arguments"] += _str(part.function.arguments)

            if changed:
                yield Return(
                    status=CallStatus.STREAMING,
                    body=Body.of([TextInteraction(agent=Agent.ASSISTANT, content=text, reasoning=reasoning)]),
                    request=request,
                )

        elapsed = time.monotonic() - start
        if usage is not None:
            metrics = metrics_from_usage(usage, request.provider, request.model, finish_reason, elapsed)
        else:
            metrics = self._estimate(messages, text, request, finish_reason, elapsed)

        final: list[Interaction] = []
        if text or reasoning:
            final.append(TextInteraction(agent=Agent.ASSISTANT, content=text, reasoning=reasoning, metrics=metrics))
        for index in sorted(calls):
            slot = calls[index]
            final.append(ToolCallInteraction(
                id=slot["id"] or f"call_{uuid.uuid4().hex[:12]}",
                name=slot["name"],
                arguments=parse_arguments(slot["arguments"]),
                metrics=Metrics() if final else metrics,
            ))
        if final:
            status = CallStatus.CALLING_TOOLS if calls else CallStatus.FINISHED
            yield Return(status=status, body=Body.of(final), request=request)

    @staticmethod
    def _estimate(
        messages: list[dict[str, Any]], text: str, request: Request, finish_reason: str | None, elapsed: float
    ) -> Metrics:
        estimated_in = count_messages_tokens(messages, request.model)
        estimated_out = count_tokens(text, request.model)
        return Metrics(
            provider=request.provider,
            model=request.model,
            finish_reason=finish_reason,
            completion_time=elapsed,
            estimated_input_tokens=estimated_in,
            estimated_output_tokens=estimated_out,
            last_effective_total_tokens=estimated_in + estimated_out,
        )

    def normalize_delta(self, raw: Return) -> Return:
        """Give every tool call an id and mark the delta as streaming output."""
        items: list[Interaction] = []
        changed = False
        for item in raw.body.interactions:
            if isinstance(item, ToolCallInteraction) and not item.id:
                item = dataclasses.replace(item, id=f"call_{uuid.uuid4().hex[:12]}")
                changed = True
            items.append(item)
        body = Body.of(items) if changed else raw.body
        status = raw.status if raw.is_error or raw.status == CallStatus.CALLING_TOOLS else CallStatus.STREAMING
        return raw.with_body(body, status)
