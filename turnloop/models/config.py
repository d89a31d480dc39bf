"""
Engine configuration models.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class ModelConfig(BaseModel):
    """LLM model configuration."""

    provider: str = Field(..., description="LiteLLM model identifier (e.g., 'openai/gpt-4o')")
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)
    max_retries: int = Field(default=3, ge=0, description="Max retries on transient LLM errors")
    retry_delay: float = Field(default=1.0, gt=0, description="Initial retry delay in seconds")
    retry_backoff: float = Field(default=2.0, gt=1, description="Exponential backoff multiplier")
    fallback: list[str] = Field(default_factory=list, description="Fallback model identifiers")
    endpoint: str | None = Field(default=None, description="Custom API base URL")

    @property
    def provider_name(self) -> str:
        """Provider prefix of the LiteLLM identifier ('openai' for 'openai/gpt-4o')."""
        return self.provider.split("/", 1)[0] if "/" in self.provider else "openai"


class SessionOptions(BaseModel):
    """Bounds for one run of the turn loop."""

    max_turns: int = Field(default=10, ge=1, description="Maximum provider calls per run")
    max_tool_passes: int = Field(default=10, ge=1, description="Maximum tool execution passes per run")
    process_tools: bool = Field(default=True, description="Execute pending tool calls automatically")
    generate_greeting: bool = Field(default=False, description="Produce a greeting before the first turn")


class StreamingOptions(BaseModel):
    """Preferences passed to streaming adapters."""

    include_reasoning: bool = Field(default=True)
    include_usage: bool = Field(default=True, description="Ask the provider for a final usage chunk")


class AssistantSettings(BaseModel):
    """Built-in special turn settings."""

    enable_greeting: bool = Field(default=True)
    greeting_timeout: float = Field(default=30, gt=0)
    summarize_timeout: float = Field(default=60, gt=0)
    summarize_threshold: float = Field(
        default=0.80, gt=0, le=1,
        description="Summarize history when context usage reaches this share of the window",
    )
    tool_timeout: float = Field(default=120, ge=1, le=600, description="Default tool timeout in seconds")


class EngineConfig(BaseModel):
    """
    Engine configuration loaded from YAML.
    """

    model: ModelConfig
    system_prompt: str | None = Field(default=None)
    tool_filter: str | None = Field(default=None, description="Tool filter ('*', '-*', 'a, -b')")
    session: SessionOptions = Field(default_factory=SessionOptions)
    streaming: StreamingOptions = Field(default_factory=StreamingOptions)
    assistant: AssistantSettings = Field(default_factory=AssistantSettings)


class ConfigError(Exception):
    """Raised when a configuration file is invalid, with a user-friendly message."""

    def __init__(self, path: Path | str, issues: list[str]):
        self.path = str(path)
        self.issues = issues
        msg = f"Invalid configuration in '{path}':\n" + "\n".join(f"  - {issue}" for issue in issues)
        super().__init__(msg)


def _friendly_validation_errors(path: Path, exc: ValidationError) -> ConfigError:
    """Convert Pydantic ValidationError to a user-friendly ConfigError."""
    issues: list[str] = []
    for error in exc.errors():
        loc = ".".join(str(x) for x in error["loc"])
        if error["type"] == "missing":
            hint = " (e.g., 'openai/gpt-4o')" if loc == "model.provider" else ""
            issues.append(f"{loc} is required{hint}")
        else:
            issues.append(f"{loc}: {error['msg']}")
    return ConfigError(path, issues)


def load_engine_config(path: Path | str) -> EngineConfig:
    """
    Load and validate an engine configuration from YAML.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ConfigError: If YAML is empty or invalid (with friendly messages)
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        data = yaml.safe_load(f)

    if data is None:
        raise ConfigError(config_path, ["YAML file is empty"])

    try:
        config = EngineConfig(**data)
    except ValidationError as e:
        raise _friendly_validation_errors(config_path, e) from e

    logger.debug("Loaded engine config from %s (model %s)", config_path, config.model.provider)
    return config
