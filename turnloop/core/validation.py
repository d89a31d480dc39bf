"""
Validation pipeline.

Validators are side-effect free and never touch the network. Each one
reports messages; whether the checked instance is valid depends on the
highest severity reported against the validator's ``fail_on`` threshold.
A driver runs whichever validators apply and aggregates their messages.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, Sequence

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError, best_match

from turnloop.models.body import Body
from turnloop.models.call import Request
from turnloop.models.interactions import Agent, ToolCallInteraction
from turnloop.models.messages import MessageCode, Origin, RuntimeMessage, Severity

if TYPE_CHECKING:
    from turnloop.core.capabilities import CapabilityRegistry
    from turnloop.core.tools import ToolManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    messages: tuple[RuntimeMessage, ...] = ()

    @classmethod
    def from_messages(cls, messages: Iterable[RuntimeMessage], fail_on: Severity = Severity.ERROR) -> ValidationResult:
        messages = tuple(messages)
        return cls(is_valid=not any(m.severity >= fail_on for m in messages), messages=messages)

    @property
    def errors(self) -> list[RuntimeMessage]:
        return [m for m in self.messages if m.severity == Severity.ERROR]

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def warning_count(self) -> int:
        return sum(1 for m in self.messages if m.severity == Severity.WARNING)

    @property
    def info_count(self) -> int:
        return sum(1 for m in self.messages if m.severity == Severity.INFO)

    def summary(self) -> str:
        return "; ".join(m.message for m in self.errors) or "; ".join(m.message for m in self.messages)


@dataclass
class ValidationContext:
    """What validators may consult besides the instance itself."""

    provider: str | None = None
    model: str | None = None
    tools: ToolManager | None = None
    capabilities: CapabilityRegistry | None = None
    body: Body | None = None
    wants_streaming: bool = False


class Validator(ABC):
    fail_on: Severity = Severity.ERROR

    def validate(self, instance: Any, context: ValidationContext) -> ValidationResult:
        return ValidationResult.from_messages(self.check(instance, context), self.fail_on)

    @abstractmethod
    def check(self, instance: Any, context: ValidationContext) -> Iterable[RuntimeMessage]:
        ...


def _lookup_tool(call: ToolCallInteraction, context: ValidationContext):
    if not call.name or context.tools is None:
        return None
    return context.tools.get_tool(call.name)


class ToolExistsValidator(Validator):
    """The only validator that reports unknown tools."""

    def check(self, call: ToolCallInteraction, context: ValidationContext) -> Iterable[RuntimeMessage]:
        if not call.name or not call.name.strip():
            yield RuntimeMessage.error(Origin.VALIDATION, "Tool call has no tool name", MessageCode.UNKNOWN_TOOL)
            return
        if context.tools is not None and context.tools.get_tool(call.name) is None:
            yield RuntimeMessage.error(
                Origin.VALIDATION, f"Tool '{call.name}' is not registered", MessageCode.UNKNOWN_TOOL
            )


class ToolJsonSchemaValidator(Validator):
    """Tool call arguments against the tool's JSON schema."""

    def check(self, call: ToolCallInteraction, context: ValidationContext) -> Iterable[RuntimeMessage]:
        tool = _lookup_tool(call, context)
        if tool is None or not tool.parameters_schema:
            return

        schema = tool.parameters_schema
        arguments = call.arguments
        if arguments is None:
            if schema.get("required"):
                yield RuntimeMessage.error(
                    Origin.VALIDATION,
                    f"Tool '{call.name}' requires arguments matching its parameters schema, but arguments are missing",
                    MessageCode.TOOL_VALIDATION_ERROR,
                )
                return
            arguments = {}

        try:
            error = best_match(Draft7Validator(schema).iter_errors(arguments))
        except SchemaError as e:
            yield RuntimeMessage.error(
                Origin.VALIDATION,
                f"Tool '{call.name}' has an invalid parameters schema: {e.message}",
                MessageCode.JSON_SCHEMA_INVALID,
            )
            return
        if error is not None:
            yield RuntimeMessage.error(
                Origin.VALIDATION,
                f"Arguments for tool '{call.name}' do not match schema: {error.message}",
                MessageCode.TOOL_VALIDATION_ERROR,
            )


class ToolCapabilityValidator(Validator):
    """The active provider/model must offer every capability the tool requires."""

    def check(self, call: ToolCallInteraction, context: ValidationContext) -> Iterable[RuntimeMessage]:
        tool = _lookup_tool(call, context)
        if tool is None or not tool.required_capabilities:
            return
        if not context.provider or not context.model or context.capabilities is None:
            return
        if not context.capabilities.supports(context.provider, context.model, tool.required_capabilities):
            yield RuntimeMessage.error(
                Origin.VALIDATION,
                f"Selected model '{context.model}' on provider '{context.provider}' does not support "
                f"required capabilities ({tool.required_capabilities.describe()}) for tool '{call.name}'",
                MessageCode.CAPABILITY_MISMATCH,
            )


class JsonSchemaResponseValidator(Validator):
    """The last assistant text must be JSON matching the requested output schema."""

    def check(self, body: Body, context: ValidationContext) -> Iterable[RuntimeMessage]:
        schema = body.json_output_schema or (context.body.json_output_schema if context.body else None)
        if not schema:
            return

        last = body.last_text(Agent.ASSISTANT)
        if last is None:
            yield RuntimeMessage.error(
                Origin.VALIDATION,
                "Expected JSON structured output from assistant, but content is missing",
                MessageCode.JSON_OUTPUT_MISSING,
            )
            return

        try:
            payload = json.loads(last.content)
        except json.JSONDecodeError as e:
            yield RuntimeMessage.error(
                Origin.VALIDATION, f"Response is not valid JSON: {e}", MessageCode.JSON_OUTPUT_MISMATCH
            )
            return

        error = best_match(Draft7Validator(schema).iter_errors(payload))
        if error is not None:
            yield RuntimeMessage.error(
                Origin.VALIDATION,
                f"Response JSON does not match schema: {error.message}",
                MessageCode.JSON_OUTPUT_MISMATCH,
            )


class RequestValidator(Validator):
    """Request shape checks run before the first provider call."""

    def check(self, request: Request, context: ValidationContext) -> Iterable[RuntimeMessage]:
        if not request.provider:
            yield RuntimeMessage.error(Origin.REQUEST, "Request has no provider", MessageCode.PROVIDER_MISSING)
        if not request.model:
            yield RuntimeMessage.error(Origin.REQUEST, "Request has no model", MessageCode.MODEL_MISSING)
        if not request.body.interactions:
            yield RuntimeMessage.error(Origin.REQUEST, "Request body has no interactions", MessageCode.BODY_INVALID)

        schema = request.body.json_output_schema
        if schema:
            try:
                Draft7Validator.check_schema(schema)
            except SchemaError as e:
                yield RuntimeMessage.error(
                    Origin.REQUEST, f"JSON output schema is invalid: {e.message}", MessageCode.JSON_SCHEMA_INVALID
                )

        registry = context.capabilities
        if registry is None or not request.provider or not request.model:
            return
        if not registry.supports(request.provider, request.model, request.capability):
            yield RuntimeMessage.error(
                Origin.REQUEST,
                f"Model '{request.model}' on provider '{request.provider}' does not support "
                f"required capabilities ({request.capability.describe()})",
                MessageCode.CAPABILITY_MISMATCH,
            )
        if context.wants_streaming and not registry.supports_streaming(request.provider, request.model):
            yield RuntimeMessage.warning(
                Origin.REQUEST,
                f"Model '{request.model}' does not support streaming; the response will be delivered at once",
                MessageCode.STREAMING_UNSUPPORTED,
            )


TOOL_CALL_VALIDATORS: tuple[Validator, ...] = (
    ToolExistsValidator(),
    ToolJsonSchemaValidator(),
    ToolCapabilityValidator(),
)


def validate_all(instance: Any, context: ValidationContext, validators: Sequence[Validator]) -> ValidationResult:
    """Run ``validators`` and aggregate. Invalid if any single validator says so."""
    messages: list[RuntimeMessage] = []
    valid = True
    for validator in validators:
        result = validator.validate(instance, context)
        messages.extend(result.messages)
        if not result.is_valid:
            valid = False
            logger.debug("%s rejected %r: %s", type(validator).__name__, instance, result.summary())
    return ValidationResult(is_valid=valid, messages=tuple(messages))


def validate_tool_call(call: ToolCallInteraction, context: ValidationContext) -> ValidationResult:
    return validate_all(call, context, TOOL_CALL_VALIDATORS)


def validate_request(request: Request, context: ValidationContext) -> ValidationResult:
    return validate_all(request, context, (RequestValidator(),))
