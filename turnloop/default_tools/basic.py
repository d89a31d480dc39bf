"""
Basic tools.

Small, dependency-free tools that are useful for smoke-testing a model's
tool calling.
"""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

# =============================================================================
# Current Time
# =============================================================================


class CurrentTimeInput(BaseModel):
    """Input for current_time function."""

    timezone: str = Field(default="UTC", description="IANA timezone name, e.g. 'Europe/Paris'")


class CurrentTimeOutput(BaseModel):
    """Output for current_time function."""

    ok: bool
    iso: Optional[str] = None
    timezone: Optional[str] = None
    error: Optional[str] = None


def current_time(input: CurrentTimeInput) -> CurrentTimeOutput:
    """
    Get the current date and time.

    Examples:
        >>> current_time({"timezone": "UTC"})
        >>> current_time({"timezone": "America/New_York"})
    """
    if input.timezone.upper() == "UTC":
        tz = timezone.utc
    else:
        try:
            tz = ZoneInfo(input.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            return CurrentTimeOutput(ok=False, error=f"Unknown timezone: {input.timezone}")

    return CurrentTimeOutput(ok=True, iso=datetime.now(tz).isoformat(), timezone=input.timezone)


# =============================================================================
# Echo
# =============================================================================


class EchoInput(BaseModel):
    """Input for echo function."""

    text: str = Field(description="Text to send back")
    uppercase: bool = Field(default=False, description="Return the text in upper case")


class EchoOutput(BaseModel):
    """Output for echo function."""

    ok: bool
    text: Optional[str] = None
    error: Optional[str] = None


def echo(input: EchoInput) -> EchoOutput:
    """Send the given text back unchanged (or upper-cased)."""
    return EchoOutput(ok=True, text=input.text.upper() if input.uppercase else input.text)
