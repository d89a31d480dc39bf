"""Core module for turnloop."""

from turnloop.core.cancellation import CancellationToken, OperationCancelledError
from turnloop.core.capabilities import CapabilityRegistry, ModelInfo
from turnloop.core.executor import LiteLLMExecutor, LiteLLMStreamingAdapter
from turnloop.core.filters import InteractionFilter, NameFilter
from turnloop.core.llm import LLMClient, LLMError
from turnloop.core.observer import ConversationObserver
from turnloop.core.session import ConversationSession, PendingToolCallsError
from turnloop.core.special_turns import HistoryPersistenceStrategy, SpecialTurnConfig
from turnloop.core.tokens import count_messages_tokens, count_tokens, get_context_limit
from turnloop.core.tools import Tool, ToolManager, get_tool_manager

__all__ = [
    "CancellationToken",
    "CapabilityRegistry",
    "ConversationObserver",
    "ConversationSession",
    "HistoryPersistenceStrategy",
    "InteractionFilter",
    "LLMClient",
    "LLMError",
    "LiteLLMExecutor",
    "LiteLLMStreamingAdapter",
    "ModelInfo",
    "NameFilter",
    "OperationCancelledError",
    "PendingToolCallsError",
    "SpecialTurnConfig",
    "Tool",
    "ToolManager",
    "count_messages_tokens",
    "count_tokens",
    "get_context_limit",
    "get_tool_manager",
]
