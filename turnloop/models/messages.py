"""
Structured diagnostic messages attached to returns and validation results.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum


class Severity(IntEnum):
    """Message severity. Ordered so thresholds can be compared."""

    INFO = 0
    WARNING = 1
    ERROR = 2


class Origin(str, Enum):
    """Where a message was raised."""

    REQUEST = "request"
    RETURN = "return"
    PROVIDER = "provider"
    TOOL = "tool"
    NETWORK = "network"
    VALIDATION = "validation"


class MessageCode(str, Enum):
    """Machine-readable message codes."""

    UNKNOWN = "unknown"
    PROVIDER_MISSING = "provider_missing"
    MODEL_MISSING = "model_missing"
    BODY_INVALID = "body_invalid"
    CAPABILITY_MISMATCH = "capability_mismatch"
    STREAMING_UNSUPPORTED = "streaming_unsupported"
    UNKNOWN_TOOL = "unknown_tool"
    TOOL_VALIDATION_ERROR = "tool_validation_error"
    TOOL_EXECUTION_ERROR = "tool_execution_error"
    TOOL_TIMEOUT = "tool_timeout"
    JSON_SCHEMA_INVALID = "json_schema_invalid"
    JSON_OUTPUT_MISSING = "json_output_missing"
    JSON_OUTPUT_MISMATCH = "json_output_mismatch"
    PROVIDER_ERROR = "provider_error"
    NO_RESPONSE = "no_response"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    MAX_TURNS = "max_turns"
    MAX_TOOL_PASSES = "max_tool_passes"
    PENDING_TOOL_CALLS = "pending_tool_calls"


@dataclass(frozen=True)
class RuntimeMessage:
    """A single diagnostic message."""

    severity: Severity
    origin: Origin
    message: str
    code: MessageCode = MessageCode.UNKNOWN
    surfaceable: bool = True

    @classmethod
    def error(cls, origin: Origin, message: str, code: MessageCode = MessageCode.UNKNOWN) -> RuntimeMessage:
        return cls(Severity.ERROR, origin, message, code)

    @classmethod
    def warning(cls, origin: Origin, message: str, code: MessageCode = MessageCode.UNKNOWN) -> RuntimeMessage:
        return cls(Severity.WARNING, origin, message, code)

    @classmethod
    def info(cls, origin: Origin, message: str, code: MessageCode = MessageCode.UNKNOWN) -> RuntimeMessage:
        return cls(Severity.INFO, origin, message, code)

    def __str__(self) -> str:
        return self.message


def merge_messages(*groups) -> tuple[RuntimeMessage, ...]:
    """
    Combine message groups, dropping duplicates.

    Result is ordered by descending severity; ties keep first-seen order.
    """
    seen: set[tuple[Severity, Origin, str]] = set()
    merged: list[RuntimeMessage] = []
    for group in groups:
        for msg in group or ():
            key = (msg.severity, msg.origin, msg.message)
            if key in seen:
                continue
            seen.add(key)
            merged.append(msg)
    merged.sort(key=lambda m: m.severity, reverse=True)
    return tuple(merged)
