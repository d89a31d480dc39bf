"""
Role filters for history mutation and name filters for tool advertisement.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

from turnloop.models.interactions import Agent, Interaction


@dataclass(frozen=True)
class InteractionFilter:
    """
    Allow/block list over agent roles.

    The block list wins over the allow list. An empty allow list means every
    role not blocked is allowed.
    """

    allowed: frozenset[Agent] = field(default_factory=frozenset)
    blocked: frozenset[Agent] = field(default_factory=frozenset)

    @classmethod
    def allow(cls, *agents: Agent) -> InteractionFilter:
        return cls(allowed=frozenset(agents))

    @classmethod
    def block(cls, *agents: Agent) -> InteractionFilter:
        return cls(blocked=frozenset(agents))

    @classmethod
    def default(cls) -> InteractionFilter:
        """Conversation roles: user, assistant, tool calls and tool results."""
        return cls.allow(Agent.USER, Agent.ASSISTANT, Agent.TOOL_CALL, Agent.TOOL_RESULT)

    @classmethod
    def preserve_system_context(cls) -> InteractionFilter:
        """Everything except system and context, which are kept out of replacement."""
        return cls.block(Agent.SYSTEM, Agent.CONTEXT)

    def allows(self, agent: Agent) -> bool:
        if agent in self.blocked:
            return False
        return not self.allowed or agent in self.allowed

    def includes(self, interaction: Interaction) -> bool:
        return self.allows(interaction.agent)

    def apply(self, interactions: Iterable[Interaction]) -> list[Interaction]:
        return [i for i in interactions if self.includes(i)]


_SPLIT = re.compile(r"[,\s]+")


@dataclass(frozen=True)
class NameFilter:
    """
    Parsed form of a tool or context filter string.

    ``None``, ``""`` and ``"*"`` include everything, ``"-*"`` excludes
    everything, and a list such as ``"read_file, -delete_file"`` includes and
    excludes by name. Matching is case-insensitive.
    """

    include_all: bool = True
    included: frozenset[str] = frozenset()
    excluded: frozenset[str] = frozenset()

    @classmethod
    def parse(cls, spec: str | None) -> NameFilter:
        tokens = [t for t in _SPLIT.split(spec or "") if t]
        if not tokens:
            return cls()

        include_all = False
        exclude_all = False
        included: set[str] = set()
        excluded: set[str] = set()
        for token in tokens:
            token = token.lower()
            if token == "*":
                include_all = True
            elif token == "-*":
                exclude_all = True
            elif token.startswith("-"):
                excluded.add(token[1:])
            else:
                included.add(token)

        if exclude_all:
            return cls(include_all=False, included=frozenset(included - excluded))
        if not included:
            include_all = True
        return cls(include_all=include_all, included=frozenset(included), excluded=frozenset(excluded))

    def should_include(self, name: str) -> bool:
        key = name.lower()
        if key in self.excluded:
            return False
        return self.include_all or key in self.included
