"""
Special turns.

A special turn runs against an isolated copy of the session request, with
its own interactions, model or filters, and folds its result back into the
main history through one persistence strategy. Observers hear about it only
once, after the result has been applied.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Sequence

from turnloop.core.cancellation import CancellationToken, OperationCancelledError
from turnloop.core.coalescer import coalesce_text
from turnloop.core.filters import InteractionFilter
from turnloop.core.tools import extract_tool_result
from turnloop.models.body import Body
from turnloop.models.call import CallStatus, Capability, Request, Return
from turnloop.models.interactions import (
    Agent,
    Interaction,
    TextInteraction,
    ToolCallInteraction,
    ToolResultInteraction,
    ensure_turn_id,
    new_turn_id,
)
from turnloop.models.messages import MessageCode

if TYPE_CHECKING:
    from turnloop.core.executor import ProviderExecutor, StreamingAdapter
    from turnloop.core.observer import ObserverNotifier
    from turnloop.core.capabilities import CapabilityRegistry
    from turnloop.models.config import AssistantSettings, StreamingOptions

logger = logging.getLogger(__name__)


class HistoryPersistenceStrategy(str, Enum):
    PERSIST_RESULT = "persist_result"
    PERSIST_ALL = "persist_all"
    EPHEMERAL = "ephemeral"
    REPLACE_ABOVE = "replace_above"


@dataclass
class SpecialTurnConfig:
    """Overrides for one special turn. Unset fields inherit from the session request."""

    override_interactions: Sequence[Interaction] | None = None
    override_provider: str | None = None
    override_model: str | None = None
    override_endpoint: str | None = None
    override_capability: Capability | None = None
    override_tool_filter: str | None = None
    override_context_filter: str | None = None
    process_tools: bool = False
    max_tool_passes: int = 4
    force_non_streaming: bool = False
    timeout: float | None = None
    persistence: HistoryPersistenceStrategy = HistoryPersistenceStrategy.PERSIST_RESULT
    persistence_filter: InteractionFilter | None = None
    turn_type: str = "custom"
    metadata: dict[str, Any] = field(default_factory=dict)


def produced_interactions(ret: Return) -> list[Interaction]:
    """Interactions a provider Return contributes: its new ones, or all of them if none are marked."""
    return ret.body.get_new_interactions() or list(ret.body.interactions)


# -- built-in turns --

GREETING_USER_PROMPT = "Please send a short friendly greeting to start the chat. Keep it to one or two sentences."

SUMMARIZE_SYSTEM_PROMPT = (
    "You are a helpful assistant that creates concise, accurate summaries of conversations. "
    "Your summaries preserve all essential information while reducing token count significantly. "
    "Do not add a main title or section headers. You can use ordered or unordered lists to "
    "organize information. Format your response as markdown."
)

MAX_SUMMARY_RESULT_CHARS = 500


def greeting_prompt(system_prompt: str | None) -> str:
    if system_prompt and system_prompt.strip():
        return (
            "You are a chat assistant. The user has provided the following instructions:\n"
            f"---\n{system_prompt}\n---\n"
            "Based on the instructions, generate a brief, friendly greeting message that welcomes the "
            "user to the chat and naturally guides the conversation toward your area of expertise. "
            "Be warm and professional, highlighting your unique capabilities without overwhelming the "
            "user with technical details. Keep it concise and engaging. One or two sentences maximum."
        )
    return (
        "Your job is to generate a brief, friendly greeting message that welcomes the user to the "
        "chat. This is a generic purpose chat. Keep the greeting concise: one or two sentences maximum."
    )


def greeting_turn(
    provider: str,
    model: str | None = None,
    system_prompt: str | None = None,
    timeout: float = 30,
) -> SpecialTurnConfig:
    return SpecialTurnConfig(
        override_interactions=[
            TextInteraction(agent=Agent.SYSTEM, content=greeting_prompt(system_prompt)),
            TextInteraction(agent=Agent.USER, content=GREETING_USER_PROMPT),
        ],
        override_provider=provider,
        override_model=model,
        override_capability=Capability.TEXT2TEXT,
        override_tool_filter="-*",
        timeout=timeout,
        persistence=HistoryPersistenceStrategy.PERSIST_RESULT,
        turn_type="greeting",
        metadata={"is_greeting": True},
    )


def _summary_line(item: Interaction) -> list[str]:
    if isinstance(item, TextInteraction):
        return [f"[{item.agent.display_name()}]: {item.content}", ""]
    if isinstance(item, ToolCallInteraction):
        lines = [f"[Tool Call]: {item.name}"]
        if item.arguments:
            lines.append(f"Arguments: {json.dumps(item.arguments, default=str)}")
        return lines + [""]
    if isinstance(item, ToolResultInteraction):
        rendered = item.result if isinstance(item.result, str) else json.dumps(item.result, default=str)
        if len(rendered) > MAX_SUMMARY_RESULT_CHARS:
            rendered = rendered[:MAX_SUMMARY_RESULT_CHARS] + "... [truncated]"
        return [f"[Tool Result]: {item.name}", f"Result: {rendered}", ""]
    return []


def summarize_prompt(history: Sequence[Interaction]) -> str:
    lines = [
        "Please summarize the following conversation. Create a concise summary that captures:",
        "1. The key topics discussed",
        "2. Important decisions or conclusions reached",
        "3. Any pending questions or tasks",
        "4. Relevant context that would be needed to continue the conversation",
        "",
        "Format the summary as a coherent narrative that an AI assistant can use to continue helping the user.",
        "Be concise but ensure no critical information is lost.",
        "",
        "---",
        "CONVERSATION TO SUMMARIZE:",
        "---",
        "",
    ]
    for item in history:
        if item.agent in (Agent.SYSTEM, Agent.CONTEXT):
            continue
        lines.extend(_summary_line(item))
    lines += ["---", "END OF CONVERSATION", "---"]
    return "\n".join(lines)


def summarize_turn(
    provider: str,
    model: str | None,
    history: Sequence[Interaction],
    timeout: float = 60,
) -> SpecialTurnConfig:
    return SpecialTurnConfig(
        override_interactions=[
            TextInteraction(agent=Agent.SYSTEM, content=SUMMARIZE_SYSTEM_PROMPT),
            TextInteraction(agent=Agent.USER, content=summarize_prompt(history)),
        ],
        override_provider=provider,
        override_model=model,
        override_tool_filter="-*",
        timeout=timeout,
        force_non_streaming=True,
        persistence=HistoryPersistenceStrategy.REPLACE_ABOVE,
        persistence_filter=InteractionFilter.preserve_system_context(),
        turn_type="summarize",
        metadata={"is_summarize": True},
    )


class SpecialTurnMixin:
    """
    Special turn execution for ConversationSession.

    Relies on the session's ``request``, ``executor``, ``settings``,
    ``capabilities``, ``streaming_options``, ``_notifier``,
    ``_session_token`` and ``_last_return``.
    """

    request: Request
    executor: ProviderExecutor
    settings: AssistantSettings
    capabilities: CapabilityRegistry | None
    streaming_options: StreamingOptions
    _notifier: ObserverNotifier
    _session_token: CancellationToken
    _last_return: Return | None
    _greeting_emitted: bool

    async def execute_special_turn(
        self,
        config: SpecialTurnConfig,
        prefer_streaming: bool = False,
        token: CancellationToken | None = None,
    ) -> Return:
        """
        Run ``config`` in isolation and apply its persistence strategy.

        Never raises: failures come back as error Returns after the history
        has been restored.
        """
        turn_id = new_turn_id()
        snapshot = self.request.body
        isolated = self._isolated_request(config, snapshot)
        use_streaming = prefer_streaming and not config.force_non_streaming and not config.process_tools

        linked = CancellationToken.linked(self._session_token, token)
        if config.timeout:
            linked.cancel_after(config.timeout)

        logger.debug("Special turn '%s' (%s) starting, streaming=%s", config.turn_type, turn_id, use_streaming)
        try:
            if use_streaming:
                result = await self._special_streaming(isolated, turn_id, linked)
            else:
                result = await self._special_non_streaming(isolated, config, turn_id, linked)
        except OperationCancelledError as e:
            logger.warning("Special turn '%s' cancelled: %s", config.turn_type, e)
            result = Return.cancelled(f"Special turn failed: {e}", isolated, timed_out=e.timed_out)
        except Exception as e:
            logger.warning("Special turn '%s' failed: %s", config.turn_type, e)
            result = Return.provider_error(f"Special turn failed: {e}", isolated)
        finally:
            linked.dispose()
            self.request.body = snapshot

        return self._apply_persistence(config, snapshot, result, turn_id)

    def _isolated_request(self, config: SpecialTurnConfig, snapshot: Body) -> Request:
        if config.override_interactions is not None:
            body = Body.of(config.override_interactions, mark_new=False,
                           tool_filter=snapshot.tool_filter, context_filter=snapshot.context_filter)
        else:
            body = snapshot.cleared_new()
        body = body.with_filters(config.override_tool_filter, config.override_context_filter)
        return self.request.clone(
            body=body,
            provider=config.override_provider or self.request.provider,
            model=config.override_model or self.request.model,
            endpoint=config.override_endpoint or self.request.endpoint,
            capability=config.override_capability or self.request.capability,
        )

    async def _special_non_streaming(
        self, isolated: Request, config: SpecialTurnConfig, turn_id: str, token: CancellationToken
    ) -> Return:
        ret = await token.guard(self.executor.exec_provider(isolated, token))
        if ret is None:
            return Return.provider_error("Special turn provider returned no response", isolated, MessageCode.NO_RESPONSE)
        if ret.is_error:
            return ret

        collected = ensure_turn_id(produced_interactions(ret), turn_id)
        body = isolated.body.with_appended(collected)
        passes = 0
        while config.process_tools and body.pending_tool_calls_count() and passes < config.max_tool_passes:
            for call in body.pending_tool_calls():
                executed = await token.guard(self.executor.exec_tool(call, isolated, token))
                result = extract_tool_result(call, executed, turn_id)
                body = body.with_appended([result])
                collected.append(result)
            passes += 1
            isolated = isolated.clone(body=body)
            ret = await token.guard(self.executor.exec_provider(isolated, token))
            if ret is None or ret.is_error:
                return ret or Return.provider_error("Special turn provider returned no response", isolated)
            new = ensure_turn_id(produced_interactions(ret), turn_id)
            body = body.with_appended(new)
            collected.extend(new)

        return Return.success(collected, isolated)

    async def _special_streaming(self, isolated: Request, turn_id: str, token: CancellationToken) -> Return:
        adapter: StreamingAdapter | None = self.executor.try_get_streaming_adapter(isolated)
        if adapter is None:
            logger.debug("No streaming adapter for special turn; using non-streaming path")
            return await self._special_non_streaming(isolated, SpecialTurnConfig(), turn_id, token)

        accumulated: TextInteraction | None = None
        received = False
        async for raw in adapter.stream(isolated, self.streaming_options, token):
            token.raise_if_cancelled()
            delta = adapter.normalize_delta(raw)
            received = True
            if delta.is_error:
                return delta
            for item in produced_interactions(delta):
                if isinstance(item, TextInteraction):
                    accumulated = coalesce_text(accumulated, item, turn_id, preserve_metrics=False)

        if not received:
            return Return.provider_error("Special turn streaming returned no response", isolated, MessageCode.NO_RESPONSE)
        interactions = [accumulated] if accumulated is not None and not accumulated.is_blank() else []
        return Return.success(interactions, isolated)

    def _apply_persistence(
        self, config: SpecialTurnConfig, snapshot: Body, result: Return, turn_id: str
    ) -> Return:
        produced = ensure_turn_id(produced_interactions(result), turn_id)
        strategy = config.persistence

        if strategy == HistoryPersistenceStrategy.PERSIST_RESULT:
            persisted = [i for i in produced if i.agent == Agent.ASSISTANT]
            history = snapshot.with_appended(persisted)
        elif strategy == HistoryPersistenceStrategy.PERSIST_ALL:
            persisted = (config.persistence_filter or InteractionFilter.default()).apply(produced)
            history = snapshot.with_appended(persisted)
        elif strategy == HistoryPersistenceStrategy.REPLACE_ABOVE and not result.is_error:
            replace_filter = config.persistence_filter or InteractionFilter.preserve_system_context()
            preserved = [i for i in snapshot if not replace_filter.includes(i)]
            persisted = produced
            history = snapshot.with_interactions(preserved).with_appended(persisted)
        else:
            if strategy == HistoryPersistenceStrategy.REPLACE_ABOVE:
                logger.warning("Special turn '%s' failed; history left unchanged", config.turn_type)
            persisted = []
            history = snapshot

        self.request.body = history
        if persisted:
            self._last_return = Return.from_body(history, self.request)
        self._notifier.notify("on_final", Return.from_body(history, self.request))

        logger.debug(
            "Special turn '%s' (%s) applied %s: %d interaction(s) persisted",
            config.turn_type, turn_id, strategy.value, len(persisted),
        )
        return Return(
            status=CallStatus.ERROR if result.is_error else CallStatus.FINISHED,
            body=Body.of(produced),
            request=result.request,
            error_message=result.error_message,
            error_kind=result.error_kind,
            messages=result.messages,
        )

    async def generate_greeting(
        self, prefer_streaming: bool = False, token: CancellationToken | None = None
    ) -> Return | None:
        """Greet the user through a special turn. Returns None when disabled or on failure."""
        if not self.settings.enable_greeting:
            return None

        system = next(
            (i for i in self.request.body
             if isinstance(i, TextInteraction) and i.agent == Agent.SYSTEM and i.content.strip()),
            None,
        )
        model = None
        if self.capabilities is not None:
            model = self.capabilities.get_default_model(self.request.provider, Capability.TEXT2TEXT)
        config = greeting_turn(
            self.request.provider,
            model or self.request.model,
            system.content if system else None,
            timeout=self.settings.greeting_timeout,
        )

        result = await self.execute_special_turn(config, prefer_streaming, token)
        if result.is_error:
            logger.warning("Greeting generation failed: %s", result.error_message)
            return None
        self._greeting_emitted = True
        return result
