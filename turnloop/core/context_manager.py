"""
Context window management for conversation sessions.

When the history grows close to the model's context window, or the provider
rejects a request for being too large, the conversation before the latest
user message is replaced by a summary produced in a special turn.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from turnloop.core.capabilities import litellm_model_id
from turnloop.core.special_turns import summarize_turn
from turnloop.core.tokens import get_context_limit
from turnloop.models.call import CallStatus
from turnloop.models.interactions import Agent, TextInteraction

if TYPE_CHECKING:
    from turnloop.core.cancellation import CancellationToken

logger = logging.getLogger(__name__)

CONTEXT_EXCEEDED_MARKERS = (
    "context length",
    "maximum context",
    "too large for model",
    "token limit",
    "tokens, too large",
    "context window",
    "max_tokens",
    "context_length_exceeded",
)


def is_context_exceeded_error(message: str | None) -> bool:
    """Whether a provider error message reports a context window overflow."""
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in CONTEXT_EXCEEDED_MARKERS)


class ContextManagementMixin:
    """
    Summarization support for ConversationSession.

    At most one summarization runs per turn; ``_summarized_this_turn`` is
    reset by the session whenever it allocates a turn.
    """

    _summarized_this_turn: bool = False

    def context_usage(self) -> float | None:
        """Share of the context window used by the last provider call, or None if unknown."""
        used = self.request.body.metrics.last_effective_total_tokens
        if not used:
            return None
        limit = None
        if self.capabilities is not None:
            limit = self.capabilities.context_limit(self.request.provider, self.request.model)
        if not limit:
            limit = get_context_limit(litellm_model_id(self.request.provider, self.request.model))
        return used / limit if limit else None

    async def check_and_summarize_context(self, token: CancellationToken | None = None) -> bool:
        if self._summarized_this_turn:
            return False
        usage = self.context_usage()
        if usage is None or usage < self.settings.summarize_threshold:
            return False
        logger.info("Context usage at %.0f%%; summarizing history", usage * 100)
        return await self.try_summarize_context(token)

    async def try_summarize_context(self, token: CancellationToken | None = None) -> bool:
        """
        Summarize everything before the latest user message.

        The user message and whatever followed it are re-appended after the
        summary. Returns False when there is too little to summarize or the
        summary turn fails, leaving the history as it was.
        """
        self._summarized_this_turn = True
        history = list(self.request.body.interactions)

        last_user = None
        for index in range(len(history) - 1, -1, -1):
            item = history[index]
            if isinstance(item, TextInteraction) and item.agent == Agent.USER:
                last_user = index
                break
        if last_user is None:
            logger.debug("No user message to anchor summarization")
            return False

        earlier = history[:last_user]
        conversational = [i for i in earlier if i.agent not in (Agent.SYSTEM, Agent.CONTEXT)]
        if len(conversational) < 2:
            logger.debug("Not enough history to summarize (%d interactions)", len(conversational))
            return False

        config = summarize_turn(
            self.request.provider,
            self.request.model,
            earlier,
            timeout=self.settings.summarize_timeout,
        )
        tail = history[last_user:]
        self.request.body = self.request.body.with_interactions(earlier)
        result = await self.execute_special_turn(config, prefer_streaming=False, token=token)

        if result.is_error or result.status != CallStatus.FINISHED or not result.body.interactions:
            logger.warning("Context summarization failed: %s", result.error_message or "empty summary")
            self.request.body = self.request.body.with_interactions(history)
            return False

        self.request.body = self.request.body.with_appended(tail)
        logger.info("Summarized %d interactions", len(conversational))
        return True
