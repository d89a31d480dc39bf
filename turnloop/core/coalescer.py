"""
Merge streamed text deltas into one interaction.
"""

from __future__ import annotations

import dataclasses

from turnloop.models.interactions import Agent, Metrics, TextInteraction


def _merge_text(current: str, incoming: str) -> str:
    # Providers send either cumulative snapshots or bare chunks.
    if not incoming:
        return current
    if incoming.startswith(current):
        return incoming
    if current.startswith(incoming):
        return current
    return current + incoming


def coalesce_text(
    accumulated: TextInteraction | None,
    delta: TextInteraction,
    turn_id: str | None,
    preserve_metrics: bool = False,
) -> TextInteraction:
    """
    Fold ``delta`` into ``accumulated`` and return the new accumulator.

    Neither argument is modified. With ``preserve_metrics`` the accumulator
    keeps its own metrics and timestamp; otherwise it takes the delta's.
    """
    if accumulated is None:
        return TextInteraction(
            agent=delta.agent or Agent.ASSISTANT,
            content=delta.content,
            reasoning=delta.reasoning,
            turn_id=turn_id or delta.turn_id,
            metrics=delta.metrics,
            time=delta.time,
        )

    metrics: Metrics = accumulated.metrics if preserve_metrics else delta.metrics
    return dataclasses.replace(
        accumulated,
        content=_merge_text(accumulated.content, delta.content),
        reasoning=_merge_text(accumulated.reasoning, delta.reasoning),
        turn_id=accumulated.turn_id or turn_id,
        metrics=metrics,
        time=accumulated.time if preserve_metrics else delta.time,
    )
