"""
Default tools bundled with turnloop.

Each tool is a plain function taking a pydantic input model and returning a
pydantic output model with ``ok`` and ``error`` fields. ``DefaultToolProvider``
exposes them to a ToolManager.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

from pydantic import BaseModel, ValidationError

from turnloop.core.tools import Tool
from turnloop.default_tools.basic import CurrentTimeInput, EchoInput, current_time, echo
from turnloop.models.interactions import ToolCallInteraction
from turnloop.models.tool_result import ToolEnvelope

logger = logging.getLogger(__name__)

_FUNCTIONS: list[tuple[Callable[[Any], BaseModel], type[BaseModel]]] = [
    (current_time, CurrentTimeInput),
    (echo, EchoInput),
]


def _first_line(text: str | None) -> str:
    for line in (text or "").strip().splitlines():
        if line.strip():
            return line.strip()
    return ""


def _wrap(func: Callable[[Any], BaseModel], input_model: type[BaseModel]) -> Callable[[ToolCallInteraction], ToolEnvelope]:
    def execute(call: ToolCallInteraction) -> ToolEnvelope:
        try:
            args = input_model(**(call.arguments or {}))
        except ValidationError as e:
            return ToolEnvelope.fail(str(e), error_type="invalid_arguments", tool_name=call.name)

        output = func(args).model_dump()
        if not output.pop("ok", True):
            return ToolEnvelope.fail(output.get("error") or "Tool failed", tool_name=call.name)
        output.pop("error", None)
        return ToolEnvelope.success(output, tool_name=call.name)

    return execute


def make_tool(func: Callable[[Any], BaseModel], input_model: type[BaseModel], category: str = "Basic") -> Tool:
    """Build a Tool from a function taking a pydantic input model."""
    return Tool(
        name=func.__name__,
        description=_first_line(func.__doc__),
        execute=_wrap(func, input_model),
        parameters_schema=input_model.model_json_schema(),
        category=category,
    )


class DefaultToolProvider:
    """Tool provider for the bundled default tools."""

    def get_tools(self) -> Iterable[Tool]:
        tools = [make_tool(func, model) for func, model in _FUNCTIONS]
        logger.debug("Default tools: %s", ", ".join(t.name for t in tools))
        return tools
