"""
Immutable conversation body.

A Body is an ordered snapshot of interactions plus the markers for the ones
added by the most recent mutation. Every ``with_*`` method returns a new Body
and leaves the receiver untouched, so a snapshot can be held while the live
history moves on.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Iterable

from turnloop.models.interactions import (
    Agent,
    Interaction,
    Metrics,
    TextInteraction,
    ToolCallInteraction,
    ToolResultInteraction,
)
from turnloop.models.messages import RuntimeMessage, merge_messages


@dataclass(frozen=True)
class Body:
    interactions: tuple[Interaction, ...] = ()
    new_indices: frozenset[int] = frozenset()
    tool_filter: str | None = None
    context_filter: str | None = None
    json_output_schema: dict[str, Any] | None = field(default=None, compare=False)

    @classmethod
    def of(cls, interactions: Iterable[Interaction], mark_new: bool = True, **kwargs: Any) -> Body:
        items = tuple(interactions)
        new = frozenset(range(len(items))) if mark_new else frozenset()
        return cls(interactions=items, new_indices=new, **kwargs)

    def __len__(self) -> int:
        return len(self.interactions)

    def __iter__(self):
        return iter(self.interactions)

    # -- mutation (copy-on-write) --

    def with_appended(self, interactions: Iterable[Interaction], mark_new: bool = True) -> Body:
        """Append interactions; prior new markers are cleared."""
        added = tuple(interactions)
        start = len(self.interactions)
        new = frozenset(range(start, start + len(added))) if mark_new else frozenset()
        return dataclasses.replace(self, interactions=self.interactions + added, new_indices=new)

    def with_interactions(self, interactions: Iterable[Interaction], mark_new: bool = False) -> Body:
        """Replace the whole interaction list, keeping filters and schema."""
        items = tuple(interactions)
        new = frozenset(range(len(items))) if mark_new else frozenset()
        return dataclasses.replace(self, interactions=items, new_indices=new)

    def with_filters(self, tool_filter: str | None = None, context_filter: str | None = None) -> Body:
        return dataclasses.replace(
            self,
            tool_filter=self.tool_filter if tool_filter is None else tool_filter,
            context_filter=self.context_filter if context_filter is None else context_filter,
        )

    def cleared_new(self) -> Body:
        return dataclasses.replace(self, new_indices=frozenset())

    # -- queries --

    def get_new_interactions(self) -> list[Interaction]:
        return [item for i, item in enumerate(self.interactions) if i in self.new_indices]

    def pending_tool_calls(self) -> list[ToolCallInteraction]:
        """Tool calls that have no matching result anywhere in the body, in order."""
        results = [i for i in self.interactions if isinstance(i, ToolResultInteraction)]
        pending = []
        for item in self.interactions:
            if isinstance(item, ToolCallInteraction) and not any(r.answers(item) for r in results):
                pending.append(item)
        return pending

    def pending_tool_calls_count(self) -> int:
        return len(self.pending_tool_calls())

    def last_text(self, agent: Agent = Agent.ASSISTANT) -> TextInteraction | None:
        for item in reversed(self.interactions):
            if isinstance(item, TextInteraction) and item.agent == agent and item.content.strip():
                return item
        return None

    @property
    def requires_json_output(self) -> bool:
        return bool(self.json_output_schema)

    @property
    def metrics(self) -> Metrics:
        return Metrics.sum(item.metrics for item in self.interactions)

    @property
    def messages(self) -> tuple[RuntimeMessage, ...]:
        return merge_messages(
            *(i.messages for i in self.interactions if isinstance(i, ToolResultInteraction))
        )
