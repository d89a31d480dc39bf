"""
Session notification hooks.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any

from turnloop.models.call import Request, Return
from turnloop.models.interactions import Interaction, ToolCallInteraction, ToolResultInteraction

logger = logging.getLogger(__name__)


class ConversationObserver:
    """
    Base class for session observers. Override the hooks you need.

    Hooks may be plain methods or coroutines. The session never waits for
    them and never lets their failures reach the conversation.
    """

    def on_start(self, request: Request) -> Any:
        pass

    def on_delta(self, interaction: Interaction) -> Any:
        pass

    def on_partial(self, ret: Return) -> Any:
        pass

    def on_tool_call(self, call: ToolCallInteraction) -> Any:
        pass

    def on_tool_result(self, result: ToolResultInteraction) -> Any:
        pass

    def on_final(self, ret: Return) -> Any:
        pass

    def on_error(self, error: BaseException) -> Any:
        pass


class ObserverNotifier:
    """Fire-and-forget dispatch to an optional observer."""

    def __init__(self, observer: ConversationObserver | None = None):
        self.observer = observer
        self._pending: set[asyncio.Task] = set()

    def notify(self, hook: str, *args: Any) -> None:
        if self.observer is None:
            return
        try:
            outcome = getattr(self.observer, hook)(*args)
        except Exception:
            logger.exception("Observer hook %s failed", hook)
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._pending.add(task)
            task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Observer hook failed: %s", task.exception())
