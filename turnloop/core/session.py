"""
Conversation session: the multi-turn loop.

A session owns the conversation history and drives it towards a stable
result: call the provider, run the tool calls it asks for, hand the results
back, and stop once the provider answers without pending tool calls. Both a
run-to-completion method and a streaming generator are offered. Neither
raises: every failure ends the run with an error Return.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, TypeVar

from turnloop.core.cancellation import CancellationToken, OperationCancelledError
from turnloop.core.capabilities import CapabilityRegistry
from turnloop.core.context_manager import ContextManagementMixin, is_context_exceeded_error
from turnloop.core.executor import LiteLLMExecutor, ProviderExecutor, StreamingAdapter
from turnloop.core.llm import LLMClient, LLMError
from turnloop.core.observer import ConversationObserver, ObserverNotifier
from turnloop.core.special_turns import SpecialTurnMixin, produced_interactions
from turnloop.core.tools import ToolManager, extract_tool_result, get_tool_manager
from turnloop.core.validation import (
    JsonSchemaResponseValidator,
    ValidationContext,
    validate_request,
)
from turnloop.models.body import Body
from turnloop.models.call import CallStatus, ErrorKind, Request, Return
from turnloop.models.config import AssistantSettings, EngineConfig, SessionOptions, StreamingOptions
from turnloop.models.interactions import (
    Agent,
    Interaction,
    Metrics,
    TextInteraction,
    ToolCallInteraction,
    ensure_turn_id,
    new_turn_id,
)
from turnloop.models.messages import MessageCode, Origin

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PendingToolCallsError(Exception):
    """Raised when a provider call is attempted while tool calls are unanswered."""

    def __init__(self, count: int):
        self.count = count
        super().__init__(f"Provider call attempted with {count} pending tool call(s)")


@dataclass
class _RunState:
    turns: int = 0


@dataclass
class _TurnOutcome:
    yields: list[Return] = field(default_factory=list)
    finished: bool = False
    adapter: StreamingAdapter | None = None
    passes: int = 0


@dataclass
class _StreamState:
    turn_id: str
    received: int = 0
    error: Return | None = None
    last_delta: Return | None = None
    last_text: TextInteraction | None = None
    last_tool_calls: list[ToolCallInteraction] = field(default_factory=list)
    announced: set[str] = field(default_factory=set)


class ConversationSession(SpecialTurnMixin, ContextManagementMixin):
    """
    One conversation with one provider.

    Calls must be serialized by the caller; each call may bring its own
    cancellation token, which is linked with the session's.
    """

    def __init__(
        self,
        request: Request,
        executor: ProviderExecutor,
        observer: ConversationObserver | None = None,
        options: SessionOptions | None = None,
        settings: AssistantSettings | None = None,
        streaming_options: StreamingOptions | None = None,
        capabilities: CapabilityRegistry | None = None,
    ):
        self.request = request
        self.executor = executor
        self.options = options or SessionOptions()
        self.settings = settings or AssistantSettings()
        self.streaming_options = streaming_options or StreamingOptions()
        self.capabilities = capabilities
        self._notifier = ObserverNotifier(observer)
        self._session_token = CancellationToken()
        self._last_return: Return | None = None
        self._greeting_emitted = False
        self._summarized_this_turn = False

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        executor: ProviderExecutor | None = None,
        observer: ConversationObserver | None = None,
        tool_manager: ToolManager | None = None,
        capabilities: CapabilityRegistry | None = None,
    ) -> ConversationSession:
        """Session for an engine config, talking to LiteLLM unless ``executor`` is given."""
        if executor is None:
            executor = LiteLLMExecutor(
                LLMClient.from_config(config.model),
                tool_manager or get_tool_manager(),
                capabilities,
            )
        interactions = []
        if config.system_prompt:
            interactions.append(TextInteraction(agent=Agent.SYSTEM, content=config.system_prompt))
        model_id = config.model.provider
        model = model_id.split("/", 1)[1] if "/" in model_id else model_id
        request = Request(
            provider=config.model.provider_name,
            model=model,
            body=Body.of(interactions, mark_new=False, tool_filter=config.tool_filter),
            endpoint=config.model.endpoint,
        )
        return cls(
            request,
            executor,
            observer=observer,
            options=config.session,
            settings=config.assistant,
            streaming_options=config.streaming,
            capabilities=capabilities,
        )

    # -- history --

    def add_interaction(self, item: Interaction | str, agent: Agent = Agent.USER) -> None:
        if isinstance(item, str):
            item = TextInteraction(agent=agent, content=item)
        self.request.body = self.request.body.with_appended([item])

    def get_history_return(self) -> Return:
        return Return.from_body(self.request.body, self.request)

    def get_history_interactions(self) -> list[Interaction]:
        return list(self.request.body.interactions)

    @property
    def last_return(self) -> Return | None:
        return self._last_return

    def get_new_interactions(self) -> list[Interaction]:
        if self._last_return is None:
            return []
        return self._last_return.body.get_new_interactions()

    def get_combined_metrics(self, new_only: bool = False) -> Metrics:
        items = self.get_new_interactions() if new_only else self.request.body.interactions
        return Metrics.sum(i.metrics for i in items)

    def get_turn_metrics(self, turn_id: str) -> Metrics:
        return Metrics.sum(i.metrics for i in self.request.body if i.turn_id == turn_id)

    def cancel(self) -> None:
        """Cancel whatever the session is running."""
        self._session_token.cancel("Session was cancelled")

    # -- run to completion --

    async def run_to_stable_result(
        self,
        options: SessionOptions | None = None,
        token: CancellationToken | None = None,
    ) -> Return:
        """
        Loop provider and tool calls until the history is stable.

        Returns the final history snapshot, or an error Return describing
        validation failure, provider failure, cancellation, or exhausted turns.
        """
        options = options or self.options
        linked = self._begin_run(token)
        try:
            return await self._run(options, linked)
        except Exception as e:
            return self._fail(e)
        finally:
            linked.dispose()

    async def _run(self, options: SessionOptions, token: CancellationToken) -> Return:
        self._notifier.notify("on_start", self.request)
        greeting = await self._maybe_greet(options, False, token)
        if greeting is not None:
            return greeting

        invalid = self._validate(wants_streaming=False)
        if invalid is not None:
            return self._finish(invalid)

        state = _RunState()
        while state.turns < options.max_turns:
            turn_id = new_turn_id()
            prepared = await self._prepare_turn(options, state, turn_id, token, streaming=False)
            if prepared.finished:
                return prepared.yields[-1]

            ret, stable = await self._execute_provider_turn(options, state, turn_id, token)
            if ret.is_error or stable or not options.process_tools:
                return self._finish(ret)

        return self._finish(self._max_turns_error(options))

    # -- streaming --

    async def stream(
        self,
        options: SessionOptions | None = None,
        streaming_options: StreamingOptions | None = None,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[Return]:
        """
        Like ``run_to_stable_result``, yielding as the conversation progresses.

        Yields delta Returns holding only the interactions new in that delta,
        one Return per executed tool call, and a final Return that ends the
        stream. Deltas are never persisted; one snapshot per provider call is.
        """
        options = options or self.options
        streaming_options = streaming_options or self.streaming_options
        linked = self._begin_run(token)
        try:
            async for ret in self._stream(options, streaming_options, linked):
                yield ret
        finally:
            linked.dispose()

    async def _stream(
        self, options: SessionOptions, streaming_options: StreamingOptions, token: CancellationToken
    ) -> AsyncIterator[Return]:
        self._notifier.notify("on_start", self.request)
        greeting, failure = await self._attempt(self._maybe_greet(options, True, token))
        if failure is not None or greeting is not None:
            yield failure or greeting
            return

        invalid = self._validate(wants_streaming=True)
        if invalid is not None:
            yield self._finish(invalid)
            return

        state = _RunState()
        while state.turns < options.max_turns:
            turn_id = new_turn_id()
            prepared, failure = await self._attempt(
                self._prepare_turn(options, state, turn_id, token, streaming=True)
            )
            if failure is not None:
                yield failure
                return
            for ret in prepared.yields:
                yield ret
            if prepared.finished:
                return
            if prepared.adapter is None:
                continue

            # only the first provider call of a turn counts against max_turns
            passes = 0
            while True:
                stream_state = _StreamState(turn_id)
                deltas, failure = await self._attempt(
                    self._open_stream(prepared.adapter, options, streaming_options, token)
                )
                if failure is not None:
                    yield failure
                    return

                while True:
                    delta, failure = await self._attempt(
                        self._next_delta(deltas, prepared.adapter, stream_state, token)
                    )
                    if failure is not None or delta is None:
                        break
                    yield delta
                await self._close_stream(deltas)
                if failure is not None:
                    yield failure
                    return
                if passes == 0:
                    state.turns += 1

                completed, failure = await self._attempt(
                    self._complete_streamed_call(options, stream_state, passes, token)
                )
                if failure is not None:
                    yield failure
                    return
                for ret in completed.yields:
                    yield ret
                if completed.finished:
                    return
                if completed.passes == passes:
                    break
                passes = completed.passes

        yield self._finish(self._max_turns_error(options))

    async def _open_stream(
        self,
        adapter: StreamingAdapter,
        options: SessionOptions,
        streaming_options: StreamingOptions,
        token: CancellationToken,
    ) -> AsyncIterator[Return]:
        self._ensure_no_pending(options)
        token.raise_if_cancelled()
        return adapter.stream(self.request, streaming_options, token).__aiter__()

    async def _next_delta(
        self,
        deltas: AsyncIterator[Return],
        adapter: StreamingAdapter,
        state: _StreamState,
        token: CancellationToken,
    ) -> Return | None:
        """Read, tag and announce one delta. None once the stream is exhausted or failed."""
        token.raise_if_cancelled()
        try:
            raw = await token.guard(deltas.__anext__())
        except StopAsyncIteration:
            return None

        delta = adapter.normalize_delta(raw)
        if delta.is_error:
            state.error = delta
            return None

        new = ensure_turn_id(produced_interactions(delta), state.turn_id)
        state.received += 1
        tool_calls = [i for i in new if isinstance(i, ToolCallInteraction)]
        if tool_calls:
            state.last_tool_calls = tool_calls
        for item in new:
            if isinstance(item, TextInteraction):
                if item.agent == Agent.ASSISTANT:
                    state.last_text = item
                self._notifier.notify("on_delta", item)
            elif isinstance(item, ToolCallInteraction) and item.id not in state.announced:
                state.announced.add(item.id)
                self._notifier.notify("on_delta", item)

        out = Return(status=delta.status, body=Body.of(new), request=self.request)
        state.last_delta = out
        return out

    @staticmethod
    async def _close_stream(deltas: AsyncIterator[Return]) -> None:
        aclose = getattr(deltas, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.debug("Error closing provider stream: %s", e)

    async def _complete_streamed_call(
        self,
        options: SessionOptions,
        stream_state: _StreamState,
        passes: int,
        token: CancellationToken,
    ) -> _TurnOutcome:
        """
        Persist a finished stream and answer the tool calls it asked for.

        ``outcome.passes`` stays at ``passes`` when the turn has no tool pass
        left; the calls then wait for the next turn.
        """
        outcome = _TurnOutcome(passes=passes)

        if stream_state.error is not None:
            outcome.yields.append(self._finish(stream_state.error))
            outcome.finished = True
            return outcome
        if stream_state.received == 0:
            error = Return.provider_error("Provider returned no response", self.request, MessageCode.NO_RESPONSE)
            outcome.yields.append(self._finish(error))
            outcome.finished = True
            return outcome

        snapshot = self._persist_streaming_snapshot(stream_state)
        invalid = self._validate_response(snapshot)
        if invalid is not None:
            outcome.yields.append(self._finish(invalid))
            outcome.finished = True
            return outcome

        if not options.process_tools or self.request.body.pending_tool_calls_count() == 0:
            if passes:
                snapshot = self._turn_snapshot(stream_state.turn_id, snapshot.status)
            outcome.yields.append(self._finish(snapshot))
            outcome.finished = True
            return outcome
        if passes >= options.max_tool_passes:
            return outcome

        answered, outcome.passes = await self._answer_pending(options, stream_state.turn_id, token, passes)
        outcome.yields.extend(answered)
        stop = _stability_error(answered)
        if stop is not None:
            self._finish(stop)
            outcome.finished = True
        return outcome

    def _persist_streaming_snapshot(self, stream_state: _StreamState) -> Return:
        """Persist the stream's final text and tool calls as one snapshot."""
        known = {i.id for i in self.request.body if isinstance(i, ToolCallInteraction)}
        items: list[Interaction] = []
        if stream_state.last_text is not None and stream_state.last_text.content.strip():
            items.append(stream_state.last_text)
        items.extend(c for c in stream_state.last_tool_calls if c.id not in known)
        status = CallStatus.CALLING_TOOLS if stream_state.last_tool_calls else CallStatus.FINISHED
        return self._merge(ensure_turn_id(items, stream_state.turn_id), status)

    # -- turn steps shared by both paths --

    async def _prepare_turn(
        self,
        options: SessionOptions,
        state: _RunState,
        turn_id: str,
        token: CancellationToken,
        streaming: bool,
    ) -> _TurnOutcome:
        """
        Start a turn: answer leftover tool calls, manage the context window
        and, when streaming, pick the adapter. Without an adapter the whole
        turn runs here through the non-streaming path.
        """
        token.raise_if_cancelled()
        self._summarized_this_turn = False
        outcome = _TurnOutcome()

        if options.process_tools and self.request.body.pending_tool_calls_count():
            answered, _ = await self._answer_pending(options, turn_id, token)
            if streaming:
                outcome.yields.extend(answered)
            stop = _stability_error(answered)
            if stop is not None:
                if not streaming:
                    outcome.yields.append(stop)
                self._finish(stop)
                outcome.finished = True
                return outcome

        await self.check_and_summarize_context(token)

        if streaming:
            outcome.adapter = self.executor.try_get_streaming_adapter(self.request)
            if outcome.adapter is None:
                logger.debug("No streaming adapter for %s; using non-streaming turn", self.request.provider)
                ret, stable = await self._execute_provider_turn(options, state, turn_id, token)
                outcome.yields.append(ret)
                if ret.is_error or stable or not options.process_tools:
                    self._finish(ret)
                    outcome.finished = True
        return outcome

    async def _execute_provider_turn(
        self,
        options: SessionOptions,
        state: _RunState,
        turn_id: str,
        token: CancellationToken,
    ) -> tuple[Return, bool]:
        """
        One provider call plus the tool passes and follow-up calls it leads to.

        Only the first call counts as a turn. Returns the turn's Return and
        whether the history is stable.
        """
        ret = await self._handle_provider_turn(options, turn_id, token)
        state.turns += 1
        if ret.is_error:
            return ret, False

        stable = self.request.body.pending_tool_calls_count() == 0
        if stable or not options.process_tools:
            return ret, stable

        drained = await self._process_pending_tools(options, turn_id, token)
        if drained[-1].is_error:
            return drained[-1], False
        stable = self.request.body.pending_tool_calls_count() == 0
        status = CallStatus.FINISHED if stable else CallStatus.CALLING_TOOLS
        return self._turn_snapshot(turn_id, status), stable

    async def _handle_provider_turn(
        self, options: SessionOptions, turn_id: str, token: CancellationToken
    ) -> Return:
        ret = await self._call_provider(options, token)
        if (
            ret is not None
            and ret.is_error
            and is_context_exceeded_error(ret.error_message)
            and not self._summarized_this_turn
        ):
            logger.info("Provider reported context overflow; summarizing and retrying")
            if await self.try_summarize_context(token):
                ret = await self._call_provider(options, token)

        if ret is None:
            return Return.provider_error("Provider returned no response", self.request, MessageCode.NO_RESPONSE)
        if ret.is_error:
            return ret

        new = ensure_turn_id(produced_interactions(ret), turn_id)
        status = CallStatus.CALLING_TOOLS if any(isinstance(i, ToolCallInteraction) for i in new) else CallStatus.FINISHED
        snapshot = self._merge(new, status)
        return self._validate_response(snapshot) or snapshot

    async def _call_provider(self, options: SessionOptions, token: CancellationToken) -> Return | None:
        self._ensure_no_pending(options)
        token.raise_if_cancelled()
        return await token.guard(self.executor.exec_provider(self.request, token))

    async def _process_pending_tools(
        self, options: SessionOptions, turn_id: str, token: CancellationToken
    ) -> list[Return]:
        """
        Answer pending tool calls and hand the results back to the provider.

        Up to ``max_tool_passes`` passes run under ``turn_id``. Each pass that
        answers every call is followed by a provider call; tool calls it asks
        for go to the next pass, or to the next turn once the passes are
        spent. The last Return is that provider snapshot or an error.
        """
        yields: list[Return] = []
        passes = 0
        while passes < options.max_tool_passes and self.request.body.pending_tool_calls_count():
            answered, passes = await self._answer_pending(options, turn_id, token, passes)
            yields.extend(answered)
            if _stability_error(answered) is not None:
                break
            ret = await self._handle_provider_turn(options, turn_id, token)
            yields.append(ret)
            if ret.is_error:
                break
        return yields

    async def _answer_pending(
        self, options: SessionOptions, turn_id: str, token: CancellationToken, passes: int = 0
    ) -> tuple[list[Return], int]:
        """
        Run tool passes until every pending call has a result.

        Each pass executes every pending call once, in order. Calls still
        unanswered once ``max_tool_passes`` is spent end in a stability error.
        Returns the tool Returns and the updated pass count.
        """
        yields: list[Return] = []
        while True:
            pending = self.request.body.pending_tool_calls()
            if not pending:
                break
            if passes >= options.max_tool_passes:
                logger.warning("Tool calls still pending after %d pass(es)", passes)
                yields.append(Return.stability_exceeded(
                    f"Maximum tool passes ({options.max_tool_passes}) exceeded "
                    f"with {len(pending)} pending tool call(s)",
                    last=self._last_return,
                    request=self.request,
                    body=self.request.body,
                    code=MessageCode.MAX_TOOL_PASSES,
                ))
                break
            for call in pending:
                token.raise_if_cancelled()
                yields.append(await self._execute_single_tool(call, turn_id, token))
            passes += 1
        return yields, passes

    async def _execute_single_tool(
        self, call: ToolCallInteraction, turn_id: str, token: CancellationToken
    ) -> Return:
        self._notifier.notify("on_tool_call", call)
        try:
            executed = await token.guard(self.executor.exec_tool(call, self.request, token))
        except OperationCancelledError:
            raise
        except Exception as e:
            logger.warning("Tool '%s' failed outside the tool manager: %s", call.name, e)
            executed = Return.tool_error(f"Error executing tool '{call.name}': {e}", self.request)

        result = extract_tool_result(call, executed, call.turn_id or turn_id)
        self._merge([result], CallStatus.CALLING_TOOLS, notify=False)
        self._notifier.notify("on_tool_result", result)

        out = Return(
            status=CallStatus.CALLING_TOOLS,
            body=Body.of([result]),
            request=self.request,
            messages=executed.all_messages,
        )
        self._notifier.notify("on_partial", out)
        return out

    # -- helpers --

    def _begin_run(self, token: CancellationToken | None) -> CancellationToken:
        if self._session_token.cancelled:
            self._session_token = CancellationToken()
        return CancellationToken.linked(self._session_token, token)

    def _merge(self, interactions: list[Interaction], status: CallStatus, notify: bool = True) -> Return:
        """Append to history and publish the new snapshot."""
        self.request.body = self.request.body.with_appended(interactions)
        snapshot = Return.from_body(self.request.body, self.request, status)
        self._last_return = snapshot
        if notify:
            self._notifier.notify("on_partial", Return.success(interactions, self.request, status))
        return snapshot

    def _turn_snapshot(self, turn_id: str, status: CallStatus) -> Return:
        """History snapshot whose new interactions are everything tagged with ``turn_id``."""
        body = self.request.body
        marked = frozenset(i for i, item in enumerate(body.interactions) if item.turn_id == turn_id)
        snapshot = Return.from_body(dataclasses.replace(body, new_indices=marked), self.request, status)
        self._last_return = snapshot
        return snapshot

    def _ensure_no_pending(self, options: SessionOptions) -> None:
        if not options.process_tools:
            return
        count = self.request.body.pending_tool_calls_count()
        if count:
            raise PendingToolCallsError(count)

    def _validate(self, wants_streaming: bool) -> Return | None:
        context = ValidationContext(
            provider=self.request.provider,
            model=self.request.model,
            capabilities=self.capabilities,
            body=self.request.body,
            wants_streaming=wants_streaming,
        )
        result = validate_request(self.request, context)
        for message in result.messages:
            if message not in result.errors:
                logger.info("Request validation: %s", message)
        if result.is_valid:
            return None
        logger.warning("Request rejected: %s", result.summary())
        return Return.validation_error(result.messages, self.request)

    def _validate_response(self, snapshot: Return) -> Return | None:
        body = self.request.body
        if not body.requires_json_output or snapshot.status != CallStatus.FINISHED:
            return None
        context = ValidationContext(body=body)
        result = JsonSchemaResponseValidator().validate(Body.of(snapshot.body.get_new_interactions()), context)
        if result.is_valid:
            return None
        return Return.validation_error(result.messages, self.request)

    def _awaiting_answer(self) -> bool:
        for item in reversed(self.request.body.interactions):
            if item.agent in (Agent.SYSTEM, Agent.CONTEXT):
                continue
            return item.agent == Agent.USER
        return False

    async def _maybe_greet(
        self, options: SessionOptions, streaming: bool, token: CancellationToken
    ) -> Return | None:
        """The greeting Return when this run is greeting-only, else None."""
        if not options.generate_greeting or self._greeting_emitted or not self.settings.enable_greeting:
            return None
        awaiting = self._awaiting_answer()
        greeting = await self.generate_greeting(prefer_streaming=streaming, token=token)
        if greeting is None or awaiting:
            return None
        return greeting

    def _max_turns_error(self, options: SessionOptions) -> Return:
        logger.warning("Max turns (%d) reached without a stable result", options.max_turns)
        return Return.stability_exceeded(
            f"Max turns ({options.max_turns}) reached without a stable result",
            last=self._last_return,
            request=self.request,
            body=self.request.body,
        )

    def _finish(self, ret: Return) -> Return:
        self._notifier.notify("on_final", ret)
        return ret

    async def _attempt(self, awaitable: Awaitable[T]) -> tuple[T | None, Return | None]:
        """Await and turn any failure into a notified error Return."""
        try:
            return await awaitable, None
        except Exception as e:
            return None, self._fail(e)

    def _fail(self, error: Exception) -> Return:
        if isinstance(error, OperationCancelledError):
            logger.info("Run cancelled: %s", error)
            ret = Return.cancelled(str(error), self.request, timed_out=error.timed_out)
        elif isinstance(error, PendingToolCallsError):
            logger.error("%s", error)
            ret = Return.error(
                str(error), ErrorKind.VALIDATION, self.request, Origin.VALIDATION, MessageCode.PENDING_TOOL_CALLS
            )
        elif isinstance(error, LLMError):
            logger.warning("Provider failed: %s", error)
            ret = Return.provider_error(str(error), self.request)
        else:
            logger.exception("Conversation run failed")
            ret = Return.provider_error(f"{type(error).__name__}: {error}", self.request)
        self._notifier.notify("on_error", error)
        return self._finish(ret)


def _stability_error(returns: list[Return]) -> Return | None:
    for ret in returns:
        if ret.error_kind == ErrorKind.STABILITY_EXCEEDED:
            return ret
    return None
