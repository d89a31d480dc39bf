"""
Tests for streamed text coalescing.
"""

from turnloop.core.coalescer import coalesce_text
from turnloop.models.interactions import Agent, Metrics, TextInteraction


def delta(content, reasoning="", metrics=None):
    return TextInteraction(agent=Agent.ASSISTANT, content=content, reasoning=reasoning, metrics=metrics or Metrics())


class TestCoalesceText:
    """Accumulating deltas."""

    def test_first_delta_starts_accumulator(self):
        acc = coalesce_text(None, delta("Hel"), "turn-1")

        assert acc.content == "Hel"
        assert acc.turn_id == "turn-1"

    def test_cumulative_snapshots(self):
        acc = coalesce_text(None, delta("Hel"), "t")
        acc = coalesce_text(acc, delta("Hello"), "t")

        assert acc.content == "Hello"

    def test_bare_chunks(self):
        acc = coalesce_text(None, delta("Hel"), "t")
        acc = coalesce_text(acc, delta("lo"), "t")

        assert acc.content == "Hello"

    def test_stale_snapshot_ignored(self):
        acc = coalesce_text(None, delta("Hello"), "t")
        acc = coalesce_text(acc, delta("Hel"), "t")

        assert acc.content == "Hello"

    def test_reasoning_is_merged(self):
        acc = coalesce_text(None, delta("", reasoning="think"), "t")
        acc = coalesce_text(acc, delta("answer", reasoning="ing"), "t")

        assert (acc.content, acc.reasoning) == ("answer", "thinking")

    def test_inputs_untouched(self):
        first = delta("a")
        second = delta("b")

        acc = coalesce_text(first, second, "t")

        assert acc is not first
        assert (first.content, second.content) == ("a", "b")

    def test_metrics_preference(self):
        first = delta("a", metrics=Metrics(input_tokens_prompt=1))
        second = delta("ab", metrics=Metrics(input_tokens_prompt=9))

        assert coalesce_text(first, second, "t", preserve_metrics=True).metrics.input_tokens == 1
        assert coalesce_text(first, second, "t", preserve_metrics=False).metrics.input_tokens == 9
