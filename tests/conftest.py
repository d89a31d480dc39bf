"""
Pytest fixtures for turnloop tests.
"""

from typing import Any

import pytest

from helpers import RecordingObserver

from turnloop.core.capabilities import CapabilityRegistry, ModelInfo
from turnloop.core.session import ConversationSession
from turnloop.core.tools import Tool, ToolManager, reset_tool_manager
from turnloop.models.body import Body
from turnloop.models.call import Capability, Request
from turnloop.models.config import AssistantSettings, SessionOptions
from turnloop.models.interactions import Agent, TextInteraction, ToolCallInteraction


@pytest.fixture(autouse=True)
def _fresh_tool_manager():
    """Each test starts without a process-wide tool manager."""
    reset_tool_manager()
    yield
    reset_tool_manager()


@pytest.fixture
def capabilities():
    """Registry with the model used throughout the tests, so nothing asks LiteLLM."""
    registry = CapabilityRegistry()
    registry.register(ModelInfo(
        provider="openai",
        model="gpt-4o",
        capabilities=Capability.TOOL_CHAT | Capability.JSON_OUTPUT,
        context_limit=1000,
        default_for=Capability.TEXT2TEXT,
    ))
    return registry


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def make_session(capabilities, observer):
    """Factory for a session with a system prompt and one user question."""

    def _make(
        executor,
        interactions: list | None = None,
        options: SessionOptions | None = None,
        settings: AssistantSettings | None = None,
        **body_kwargs: Any,
    ) -> ConversationSession:
        if interactions is None:
            interactions = [
                TextInteraction(agent=Agent.SYSTEM, content="You are a helpful assistant."),
                TextInteraction(agent=Agent.USER, content="What is the answer?"),
            ]
        request = Request(
            provider="openai",
            model="gpt-4o",
            body=Body.of(interactions, mark_new=False, **body_kwargs),
        )
        return ConversationSession(
            request,
            executor,
            observer=observer,
            options=options,
            settings=settings,
            capabilities=capabilities,
        )

    return _make


@pytest.fixture
def echo_tool():
    """A tool that requires a 'text' argument and records its invocations."""
    invocations: list[ToolCallInteraction] = []

    def handler(call: ToolCallInteraction) -> dict:
        invocations.append(call)
        return {"echo": call.arguments["text"]}

    tool = Tool(
        name="echo",
        description="Echo text back",
        execute=handler,
        parameters_schema={
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    )
    tool.invocations = invocations
    return tool


@pytest.fixture
def tool_manager(echo_tool):
    manager = ToolManager()
    manager.register_tool(echo_tool)
    return manager
