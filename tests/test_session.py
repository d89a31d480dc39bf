"""
Tests for the conversation session turn loop.
"""

import itertools

import pytest

from helpers import ScriptedExecutor, assistant_reply, tool_call_reply, usage

from turnloop.core.cancellation import CancellationToken
from turnloop.core.session import PendingToolCallsError
from turnloop.models.call import CallStatus, ErrorKind, Return
from turnloop.models.config import SessionOptions
from turnloop.models.interactions import (
    Agent,
    TextInteraction,
    ToolCallInteraction,
    ToolResultInteraction,
)
from turnloop.models.messages import MessageCode


class TestStableRuns:
    """Runs that settle on an answer."""

    @pytest.mark.asyncio
    async def test_plain_answer(self, make_session, observer):
        executor = ScriptedExecutor([assistant_reply("42")])
        session = make_session(executor)

        ret = await session.run_to_stable_result()

        assert not ret.is_error
        assert ret.status == CallStatus.FINISHED
        agents = [i.agent for i in session.get_history_interactions()]
        assert agents == [Agent.SYSTEM, Agent.USER, Agent.ASSISTANT]
        new = ret.body.get_new_interactions()
        assert len(new) == 1
        assert new[0].content == "42"
        assert new[0].turn_id is not None
        assert [name for name, _ in observer.events] == ["start", "partial", "final"]

    @pytest.mark.asyncio
    async def test_tool_call_then_answer(self, make_session):
        executor = ScriptedExecutor([
            tool_call_reply(("c1", "echo", {"text": "hi"})),
            assistant_reply("done"),
        ])
        session = make_session(executor)

        ret = await session.run_to_stable_result()

        assert not ret.is_error
        history = session.get_history_interactions()
        assert [type(i) for i in history[2:]] == [ToolCallInteraction, ToolResultInteraction, TextInteraction]
        call, result, answer = history[2:]
        assert result.id == call.id
        assert result.turn_id == call.turn_id
        assert answer.turn_id == call.turn_id
        assert len(executor.executed_tools) == 1
        assert len(executor.requests) == 2
        assert [type(i) for i in ret.body.get_new_interactions()] == [
            ToolCallInteraction,
            ToolResultInteraction,
            TextInteraction,
        ]

    @pytest.mark.asyncio
    async def test_tool_call_on_the_only_turn(self, make_session):
        executor = ScriptedExecutor([
            tool_call_reply(("c1", "echo", {"text": "hi"})),
            assistant_reply("done"),
        ])
        session = make_session(executor, options=SessionOptions(max_turns=1))

        ret = await session.run_to_stable_result()

        assert not ret.is_error
        assert ret.status == CallStatus.FINISHED
        assert ret.body.last_text().content == "done"
        assert [c.id for c in executor.executed_tools] == ["c1"]
        assert len(executor.requests) == 2

    @pytest.mark.asyncio
    async def test_more_tool_rounds_than_tool_passes(self, make_session):
        executor = ScriptedExecutor([
            tool_call_reply(("c1", "echo", {"text": "a"})),
            tool_call_reply(("c2", "echo", {"text": "b"})),
            tool_call_reply(("c3", "echo", {"text": "c"})),
            assistant_reply("done"),
        ])
        session = make_session(executor, options=SessionOptions(max_turns=10, max_tool_passes=2))

        ret = await session.run_to_stable_result()

        assert not ret.is_error
        assert ret.body.last_text().content == "done"
        assert [c.id for c in executor.executed_tools] == ["c1", "c2", "c3"]
        assert executor.pending_at_call == [0, 0, 0, 0]
        turn_ids = [i.turn_id for i in session.get_history_interactions()[2:]]
        # c3 waits for the second turn; its result keeps the call's turn id
        assert len(set(turn_ids[:6])) == 1
        assert turn_ids[-1] != turn_ids[0]

    @pytest.mark.asyncio
    async def test_provider_never_called_with_pending_tool_calls(self, make_session):
        executor = ScriptedExecutor([
            tool_call_reply(("c1", "echo", {"text": "a"}), ("c2", "echo", {"text": "b"})),
            tool_call_reply(("c3", "echo", {"text": "c"})),
            assistant_reply("done"),
        ])
        session = make_session(executor)

        ret = await session.run_to_stable_result()

        assert not ret.is_error
        assert executor.pending_at_call == [0, 0, 0]
        assert [c.id for c in executor.executed_tools] == ["c1", "c2", "c3"]

    @pytest.mark.asyncio
    async def test_tool_results_keep_call_order(self, make_session):
        executor = ScriptedExecutor([
            tool_call_reply(("b", "echo", {"text": "1"}), ("a", "echo", {"text": "2"})),
            assistant_reply("done"),
        ])
        session = make_session(executor)

        await session.run_to_stable_result()

        results = [i.id for i in session.get_history_interactions() if isinstance(i, ToolResultInteraction)]
        assert results == ["b", "a"]

    @pytest.mark.asyncio
    async def test_pending_calls_in_history_are_answered_first(self, make_session):
        executor = ScriptedExecutor([assistant_reply("done")])
        session = make_session(executor, interactions=[
            TextInteraction(agent=Agent.USER, content="hi"),
            ToolCallInteraction(id="old", name="echo", arguments={"text": "x"}),
        ])

        ret = await session.run_to_stable_result()

        assert not ret.is_error
        assert [c.id for c in executor.executed_tools] == ["old"]
        assert executor.pending_at_call == [0]

    @pytest.mark.asyncio
    async def test_tools_disabled_returns_first_result(self, make_session):
        executor = ScriptedExecutor([tool_call_reply(("c1", "echo", {"text": "hi"}))])
        session = make_session(executor, options=SessionOptions(process_tools=False))

        ret = await session.run_to_stable_result()

        assert not ret.is_error
        assert ret.status == CallStatus.CALLING_TOOLS
        assert executor.executed_tools == []
        assert session.request.body.pending_tool_calls_count() == 1


class TestStabilityLimits:
    """Max turns and max tool passes."""

    @pytest.mark.asyncio
    async def test_max_turns_stops_endless_tool_calls(self, make_session):
        ids = itertools.count()
        executor = ScriptedExecutor(
            [lambda request: tool_call_reply((f"c{next(ids)}", "echo", {"text": "x"}))],
            repeat_last=True,
        )
        session = make_session(executor, options=SessionOptions(max_turns=3, max_tool_passes=1))

        ret = await session.run_to_stable_result()

        assert ret.is_error
        assert ret.error_kind == ErrorKind.STABILITY_EXCEEDED
        assert "Max turns (3)" in ret.error_message
        assert any(m.code == MessageCode.MAX_TURNS for m in ret.messages)
        # each turn: one provider call, one tool pass, one follow-up call
        assert len(executor.requests) == 6
        assert len(executor.executed_tools) == 6
        assert executor.pending_at_call == [0] * 6
        assert ret.last is not None
        assert not ret.last.is_error

    @pytest.mark.asyncio
    async def test_max_tool_passes(self, make_session):
        # results carry a foreign id, so the call is never answered
        executor = ScriptedExecutor(
            [tool_call_reply(("c1", "echo", {"text": "x"}))],
            tool_handler=lambda call: Return.success([ToolResultInteraction(id="other", name="echo", result=1)]),
        )
        session = make_session(executor, options=SessionOptions(max_tool_passes=2))

        ret = await session.run_to_stable_result()

        assert ret.error_kind == ErrorKind.STABILITY_EXCEEDED
        assert any(m.code == MessageCode.MAX_TOOL_PASSES for m in ret.messages)
        assert len(executor.executed_tools) == 2
        assert len(executor.requests) == 1

    def test_pending_tool_calls_error_is_validation(self, make_session):
        session = make_session(ScriptedExecutor())

        ret = session._fail(PendingToolCallsError(2))

        assert ret.error_kind == ErrorKind.VALIDATION
        assert any(m.code == MessageCode.PENDING_TOOL_CALLS for m in ret.messages)
        assert "2 pending" in ret.error_message


class TestFailures:
    """Failures end the run with an error Return."""

    @pytest.mark.asyncio
    async def test_no_response(self, make_session, observer):
        session = make_session(ScriptedExecutor([None]))

        ret = await session.run_to_stable_result()

        assert ret.error_kind == ErrorKind.PROVIDER
        assert "Provider returned no response" in ret.error_message
        assert observer.named("final")[-1] is ret

    @pytest.mark.asyncio
    async def test_exception_is_converted(self, make_session, observer):
        session = make_session(ScriptedExecutor([RuntimeError("boom")]))

        ret = await session.run_to_stable_result()

        assert ret.is_error
        assert "boom" in ret.error_message
        errors = observer.named("error")
        assert len(errors) == 1
        assert isinstance(errors[0], RuntimeError)
        assert observer.named("final")[-1] is ret

    @pytest.mark.asyncio
    async def test_provider_error_return_passes_through(self, make_session):
        session = make_session(ScriptedExecutor([Return.provider_error("upstream down")]))

        ret = await session.run_to_stable_result()

        assert ret.error_kind == ErrorKind.PROVIDER
        assert ret.error_message == "Provider error: upstream down"

    @pytest.mark.asyncio
    async def test_invalid_request_makes_no_provider_call(self, make_session):
        executor = ScriptedExecutor([assistant_reply("never")])
        session = make_session(executor, interactions=[])

        ret = await session.run_to_stable_result()

        assert ret.error_kind == ErrorKind.VALIDATION
        assert executor.requests == []

    @pytest.mark.asyncio
    async def test_cancelled_token(self, make_session):
        executor = ScriptedExecutor([assistant_reply("never")])
        session = make_session(executor)
        token = CancellationToken()
        token.cancel("stop")

        ret = await session.run_to_stable_result(token=token)

        assert ret.error_kind == ErrorKind.CANCELLATION
        assert ret.error_message == "stop"
        assert executor.requests == []
        assert len(session.get_history_interactions()) == 2

    @pytest.mark.asyncio
    async def test_session_usable_after_cancel(self, make_session):
        session = make_session(ScriptedExecutor([assistant_reply("hello")]))
        session.cancel()

        ret = await session.run_to_stable_result()

        assert not ret.is_error

    @pytest.mark.asyncio
    async def test_json_output_validated(self, make_session):
        schema = {"type": "object", "properties": {"answer": {"type": "integer"}}, "required": ["answer"]}
        session = make_session(ScriptedExecutor([assistant_reply("not json")]), json_output_schema=schema)

        ret = await session.run_to_stable_result()

        assert ret.error_kind == ErrorKind.VALIDATION
        assert any(m.code == MessageCode.JSON_OUTPUT_MISMATCH for m in ret.messages)

    @pytest.mark.asyncio
    async def test_json_output_accepted(self, make_session):
        schema = {"type": "object", "properties": {"answer": {"type": "integer"}}, "required": ["answer"]}
        session = make_session(ScriptedExecutor([assistant_reply('{"answer": 42}')]), json_output_schema=schema)

        ret = await session.run_to_stable_result()

        assert not ret.is_error


class TestHistory:
    """History accessors and metrics."""

    @pytest.mark.asyncio
    async def test_history_return_is_idempotent(self, make_session):
        session = make_session(ScriptedExecutor([assistant_reply("42")]))
        await session.run_to_stable_result()

        first = session.get_history_return()
        second = session.get_history_return()

        assert first.body.interactions == second.body.interactions
        assert [i.turn_id for i in first.body] == [i.turn_id for i in second.body]

    def test_add_interaction_from_text(self, make_session):
        session = make_session(ScriptedExecutor())

        session.add_interaction("Another question")

        last = session.get_history_interactions()[-1]
        assert last.agent == Agent.USER
        assert last.content == "Another question"

    @pytest.mark.asyncio
    async def test_metrics(self, make_session):
        executor = ScriptedExecutor([
            tool_call_reply(("c1", "echo", {"text": "hi"})),
            assistant_reply("done", usage(prompt=30, completion=7)),
        ])
        session = make_session(executor)

        await session.run_to_stable_result()

        combined = session.get_combined_metrics()
        assert combined.input_tokens == 30
        assert combined.output_tokens == 7
        answer = session.get_history_interactions()[-1]
        assert session.get_turn_metrics(answer.turn_id).total_tokens == 37
        assert session.get_combined_metrics(new_only=True).total_tokens == 37

    @pytest.mark.asyncio
    async def test_last_return_tracks_latest_snapshot(self, make_session):
        session = make_session(ScriptedExecutor([assistant_reply("42")]))
        assert session.last_return is None

        await session.run_to_stable_result()

        assert session.last_return is not None
        assert [i.content for i in session.get_new_interactions()] == ["42"]


class TestGreeting:
    """Greeting before the first turn."""

    @pytest.mark.asyncio
    async def test_greeting_only_run(self, make_session):
        executor = ScriptedExecutor([assistant_reply("Hello there!")])
        session = make_session(
            executor,
            interactions=[TextInteraction(agent=Agent.SYSTEM, content="You help with taxes.")],
            options=SessionOptions(generate_greeting=True),
        )

        ret = await session.run_to_stable_result()

        assert not ret.is_error
        history = session.get_history_interactions()
        assert [i.agent for i in history] == [Agent.SYSTEM, Agent.ASSISTANT]
        assert history[-1].content == "Hello there!"
        assert len(executor.requests) == 1
        greeting_request = executor.requests[0]
        assert "taxes" in greeting_request.body.interactions[0].content
        assert greeting_request.body.tool_filter == "-*"

    @pytest.mark.asyncio
    async def test_greeting_emitted_once(self, make_session):
        executor = ScriptedExecutor([assistant_reply("Hello!"), assistant_reply("The answer is 42")])
        session = make_session(
            executor,
            interactions=[TextInteraction(agent=Agent.SYSTEM, content="Be nice.")],
            options=SessionOptions(generate_greeting=True),
        )
        await session.run_to_stable_result()
        session.add_interaction("What is the answer?")

        ret = await session.run_to_stable_result()

        assert ret.body.last_text().content == "The answer is 42"
        assert len(executor.requests) == 2

    @pytest.mark.asyncio
    async def test_greeting_failure_continues_with_question(self, make_session):
        executor = ScriptedExecutor([RuntimeError("greeting broke"), assistant_reply("42")])
        session = make_session(executor, options=SessionOptions(generate_greeting=True))

        ret = await session.run_to_stable_result()

        assert not ret.is_error
        assert ret.body.last_text().content == "42"
