"""
Request and return envelopes for provider and tool calls.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum, Flag
from typing import Any, Iterable

from turnloop.models.body import Body
from turnloop.models.interactions import Interaction, Metrics, ToolResultInteraction
from turnloop.models.messages import MessageCode, Origin, RuntimeMessage, Severity, merge_messages


class Capability(Flag):
    """Model capabilities. Composite members combine the basic flags."""

    NONE = 0
    TEXT_INPUT = 1 << 0
    IMAGE_INPUT = 1 << 1
    AUDIO_INPUT = 1 << 2
    JSON_INPUT = 1 << 3
    TEXT_OUTPUT = 1 << 4
    IMAGE_OUTPUT = 1 << 5
    AUDIO_OUTPUT = 1 << 6
    JSON_OUTPUT = 1 << 7
    FUNCTION_CALLING = 1 << 8
    REASONING = 1 << 9

    TEXT2TEXT = TEXT_INPUT | TEXT_OUTPUT
    TOOL_CHAT = TEXT_INPUT | TEXT_OUTPUT | FUNCTION_CALLING
    REASONING_CHAT = TEXT_INPUT | TEXT_OUTPUT | REASONING
    TOOL_REASONING_CHAT = TEXT_INPUT | TEXT_OUTPUT | REASONING | FUNCTION_CALLING
    TEXT2JSON = TEXT_INPUT | JSON_OUTPUT
    IMAGE2TEXT = IMAGE_INPUT | TEXT_OUTPUT

    def describe(self) -> str:
        return ", ".join(m.name.lower() for m in Capability if m.value and m.value & (m.value - 1) == 0 and m in self)


class CallStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    STREAMING = "streaming"
    CALLING_TOOLS = "calling_tools"
    FINISHED = "finished"
    ERROR = "error"


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    PROVIDER = "provider"
    TOOL = "tool"
    CANCELLATION = "cancellation"
    STABILITY_EXCEEDED = "stability_exceeded"


@dataclass
class Request:
    """Everything needed for one provider call."""

    provider: str
    model: str
    body: Body = field(default_factory=Body)
    capability: Capability = Capability.TEXT2TEXT
    endpoint: str | None = None
    wants_streaming: bool = False
    options: dict[str, Any] = field(default_factory=dict)

    def clone(self, **overrides: Any) -> Request:
        """Independent copy. The body is immutable so sharing it is safe."""
        overrides.setdefault("options", dict(self.options))
        return dataclasses.replace(self, **overrides)


@dataclass
class Return:
    """Outcome of a provider call, a tool call, or a whole run."""

    status: CallStatus = CallStatus.FINISHED
    body: Body = field(default_factory=Body)
    request: Request | None = None
    error_message: str | None = None
    error_kind: ErrorKind | None = None
    messages: tuple[RuntimeMessage, ...] = ()
    last: Return | None = None

    # -- factories --

    @classmethod
    def success(
        cls,
        interactions: Iterable[Interaction],
        request: Request | None = None,
        status: CallStatus = CallStatus.FINISHED,
    ) -> Return:
        return cls(status=status, body=Body.of(interactions), request=request)

    @classmethod
    def from_body(cls, body: Body, request: Request | None = None, status: CallStatus = CallStatus.FINISHED) -> Return:
        return cls(status=status, body=body, request=request)

    @classmethod
    def error(
        cls,
        message: str,
        kind: ErrorKind = ErrorKind.PROVIDER,
        request: Request | None = None,
        origin: Origin = Origin.RETURN,
        code: MessageCode = MessageCode.UNKNOWN,
        messages: Iterable[RuntimeMessage] = (),
        body: Body | None = None,
    ) -> Return:
        return cls(
            status=CallStatus.ERROR,
            body=body if body is not None else Body(),
            request=request,
            error_message=message,
            error_kind=kind,
            messages=merge_messages([RuntimeMessage.error(origin, message, code)], messages),
        )

    @classmethod
    def provider_error(cls, message: str, request: Request | None = None, code: MessageCode = MessageCode.PROVIDER_ERROR) -> Return:
        return cls.error(f"Provider error: {message}", ErrorKind.PROVIDER, request, Origin.PROVIDER, code)

    @classmethod
    def tool_error(
        cls,
        message: str,
        request: Request | None = None,
        messages: Iterable[RuntimeMessage] = (),
        result: ToolResultInteraction | None = None,
        code: MessageCode = MessageCode.TOOL_EXECUTION_ERROR,
    ) -> Return:
        body = Body.of([result]) if result is not None else None
        return cls.error(f"Tool error: {message}", ErrorKind.TOOL, request, Origin.TOOL, code, messages, body)

    @classmethod
    def validation_error(cls, messages: Iterable[RuntimeMessage], request: Request | None = None) -> Return:
        messages = tuple(messages)
        errors = [m.message for m in messages if m.severity == Severity.ERROR]
        summary = "; ".join(errors) if errors else "Validation failed"
        return cls.error(
            f"Validation failed: {summary}", ErrorKind.VALIDATION, request, Origin.VALIDATION,
            MessageCode.BODY_INVALID, messages,
        )

    @classmethod
    def cancelled(cls, message: str = "Operation was cancelled", request: Request | None = None, timed_out: bool = False) -> Return:
        code = MessageCode.TIMEOUT if timed_out else MessageCode.CANCELLED
        return cls.error(message, ErrorKind.CANCELLATION, request, Origin.RETURN, code)

    @classmethod
    def stability_exceeded(
        cls,
        message: str,
        last: Return | None = None,
        request: Request | None = None,
        body: Body | None = None,
        code: MessageCode = MessageCode.MAX_TURNS,
    ) -> Return:
        ret = cls.error(message, ErrorKind.STABILITY_EXCEEDED, request, Origin.RETURN, code, body=body)
        ret.last = last
        return ret

    # -- queries --

    @property
    def is_error(self) -> bool:
        return self.status == CallStatus.ERROR or self.error_kind is not None

    @property
    def succeeded(self) -> bool:
        return not self.is_error and not any(m.severity == Severity.ERROR for m in self.all_messages)

    @property
    def metrics(self) -> Metrics:
        return self.body.metrics

    @property
    def all_messages(self) -> tuple[RuntimeMessage, ...]:
        return merge_messages(self.messages, self.body.messages)

    def with_body(self, body: Body, status: CallStatus | None = None) -> Return:
        return dataclasses.replace(self, body=body, status=status or self.status)
