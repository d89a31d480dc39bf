"""
Structured payload model for tool execution.

Tool handlers may return anything JSON-able; the tool manager wraps their
output and failures in a ToolEnvelope so the model always sees the same shape.
"""

import time
from contextlib import contextmanager
from typing import Any

from pydantic import BaseModel, Field


class ToolEnvelope(BaseModel):
    """Structured result from any tool execution."""

    ok: bool = Field(..., description="Whether the tool execution succeeded")
    data: Any = Field(None, description="Result data (if ok=True)")
    error: str | None = Field(None, description="Error message (if ok=False)")
    error_type: str | None = Field(None, description="Error classification")

    tool_name: str | None = Field(None, description="Name of the executed tool")
    duration_ms: int | None = Field(None, description="Execution time in milliseconds")

    def to_payload(self) -> Any:
        """Value stored as the ToolResult's result."""
        if self.ok:
            return self.data
        payload = {"error": self.error}
        if self.error_type:
            payload["error_type"] = self.error_type
        return payload

    @classmethod
    def success(cls, data: Any = None, **kwargs: Any) -> "ToolEnvelope":
        return cls(ok=True, data=data, **kwargs)

    @classmethod
    def fail(cls, error: str, error_type: str | None = None, **kwargs: Any) -> "ToolEnvelope":
        return cls(ok=False, error=error, error_type=error_type, **kwargs)


@contextmanager
def timed_execution():
    """Context manager that yields a dict where 'duration_ms' will be set on exit."""
    timing: dict[str, int] = {}
    start = time.monotonic()
    try:
        yield timing
    finally:
        elapsed = time.monotonic() - start
        timing["duration_ms"] = int(elapsed * 1000)
