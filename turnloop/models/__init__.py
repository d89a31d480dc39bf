"""Data models for turnloop."""

from turnloop.models.body import Body
from turnloop.models.call import CallStatus, Capability, ErrorKind, Request, Return
from turnloop.models.config import (
    AssistantSettings,
    ConfigError,
    EngineConfig,
    ModelConfig,
    SessionOptions,
    StreamingOptions,
    load_engine_config,
)
from turnloop.models.interactions import (
    Agent,
    Interaction,
    Metrics,
    TextInteraction,
    ToolCallInteraction,
    ToolResultInteraction,
    new_turn_id,
)
from turnloop.models.messages import MessageCode, Origin, RuntimeMessage, Severity
from turnloop.models.tool_result import ToolEnvelope

__all__ = [
    "Agent",
    "AssistantSettings",
    "Body",
    "CallStatus",
    "Capability",
    "ConfigError",
    "EngineConfig",
    "ErrorKind",
    "Interaction",
    "MessageCode",
    "Metrics",
    "ModelConfig",
    "Origin",
    "Request",
    "Return",
    "RuntimeMessage",
    "SessionOptions",
    "Severity",
    "StreamingOptions",
    "TextInteraction",
    "ToolCallInteraction",
    "ToolEnvelope",
    "ToolResultInteraction",
    "load_engine_config",
    "new_turn_id",
]
