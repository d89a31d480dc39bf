"""
Interaction value types.

An interaction is one unit of conversation. The set of variants is closed:
text (system, user, assistant or context), a tool call issued by the model,
and the result answering a tool call.
"""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Iterable, Union

from turnloop.models.messages import RuntimeMessage


class Agent(str, Enum):
    """Role of the party that produced an interaction."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    CONTEXT = "context"

    def display_name(self) -> str:
        return self.value.replace("_", " ").title().replace(" ", "")


def new_turn_id() -> str:
    """Allocate a fresh turn correlation id."""
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Metrics:
    """Token and latency counters for one or more interactions."""

    provider: str | None = None
    model: str | None = None
    finish_reason: str | None = None
    completion_time: float = 0.0
    input_tokens_prompt: int = 0
    input_tokens_cached: int = 0
    output_tokens_generation: int = 0
    output_tokens_reasoning: int = 0
    estimated_input_tokens: int = 0
    estimated_output_tokens: int = 0
    last_effective_total_tokens: int = 0

    @property
    def input_tokens(self) -> int:
        return self.input_tokens_prompt + self.input_tokens_cached

    @property
    def output_tokens(self) -> int:
        return self.output_tokens_generation + self.output_tokens_reasoning

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def effective_total_tokens(self) -> int:
        """Reported totals, falling back to estimates when the provider gave none."""
        total = self.total_tokens
        if total:
            return total
        return self.estimated_input_tokens + self.estimated_output_tokens

    def combine(self, other: Metrics | None) -> Metrics:
        """Return the sum of both metrics. Identity fields from ``other`` win when set."""
        if other is None:
            return self
        last = other.last_effective_total_tokens or other.effective_total_tokens
        return Metrics(
            provider=other.provider or self.provider,
            model=other.model or self.model,
            finish_reason=other.finish_reason or self.finish_reason,
            completion_time=self.completion_time + other.completion_time,
            input_tokens_prompt=self.input_tokens_prompt + other.input_tokens_prompt,
            input_tokens_cached=self.input_tokens_cached + other.input_tokens_cached,
            output_tokens_generation=self.output_tokens_generation + other.output_tokens_generation,
            output_tokens_reasoning=self.output_tokens_reasoning + other.output_tokens_reasoning,
            estimated_input_tokens=self.estimated_input_tokens + other.estimated_input_tokens,
            estimated_output_tokens=self.estimated_output_tokens + other.estimated_output_tokens,
            last_effective_total_tokens=last or self.last_effective_total_tokens,
        )

    @classmethod
    def sum(cls, items: Iterable[Metrics]) -> Metrics:
        total = cls()
        for item in items:
            total = total.combine(item)
        return total


@dataclass(frozen=True, kw_only=True)
class TextInteraction:
    """Plain text from the system, the user, the assistant or injected context."""

    agent: Agent = Agent.ASSISTANT
    content: str = ""
    reasoning: str = ""
    turn_id: str | None = None
    metrics: Metrics = field(default_factory=Metrics)
    time: datetime = field(default_factory=_now)

    def is_blank(self) -> bool:
        return not self.content.strip() and not self.reasoning.strip()


@dataclass(frozen=True, kw_only=True)
class ToolCallInteraction:
    """A request from the model to run a named tool."""

    id: str
    name: str
    arguments: dict[str, Any] | None = None
    turn_id: str | None = None
    metrics: Metrics = field(default_factory=Metrics)
    time: datetime = field(default_factory=_now)
    agent: Agent = field(default=Agent.TOOL_CALL, init=False)


@dataclass(frozen=True, kw_only=True)
class ToolResultInteraction:
    """The answer to a tool call, correlated by id and name."""

    id: str
    name: str
    result: Any = None
    messages: tuple[RuntimeMessage, ...] = ()
    turn_id: str | None = None
    metrics: Metrics = field(default_factory=Metrics)
    time: datetime = field(default_factory=_now)
    agent: Agent = field(default=Agent.TOOL_RESULT, init=False)

    def answers(self, call: ToolCallInteraction) -> bool:
        return self.id == call.id and (not self.name or self.name == call.name)

    def has_error(self) -> bool:
        return isinstance(self.result, dict) and "error" in self.result


Interaction = Union[TextInteraction, ToolCallInteraction, ToolResultInteraction]


def text(agent: Agent, content: str, turn_id: str | None = None) -> TextInteraction:
    """Shorthand for building a text interaction."""
    return TextInteraction(agent=agent, content=content, turn_id=turn_id)


def ensure_turn_id(interactions: Iterable[Interaction], turn_id: str | None) -> list[Interaction]:
    """Stamp ``turn_id`` on every interaction that has none. Inputs are not modified."""
    stamped: list[Interaction] = []
    for interaction in interactions:
        if turn_id and not interaction.turn_id:
            interaction = dataclasses.replace(interaction, turn_id=turn_id)
        stamped.append(interaction)
    return stamped
