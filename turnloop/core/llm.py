"""
Async LiteLLM access with retries, model fallback and readable errors.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

import litellm
from litellm import acompletion
from litellm.exceptions import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    BadRequestError,
    BudgetExceededError,
    ContextWindowExceededError,
    NotFoundError,
    RateLimitError,
    ServiceUnavailableError,
)
from litellm.types.utils import ModelResponse

# Keep LiteLLM's provider banners out of the session logs
litellm.suppress_debug_info = True

logger = logging.getLogger(__name__)

# API key variables of the providers used in the CLI help and config examples
_API_KEY_VARS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "gemini": "GEMINI_API_KEY",
}

_JSON_MESSAGE = re.compile(r'"message"\s*:\s*"([^"]+)"')

_CREDIT_KEYWORDS = ("402", "credits", "insufficient", "budget")


class LLMError(Exception):
    """A provider failure, worded for whoever runs the conversation."""

    def __init__(self, message: str, original: Exception | None = None):
        self.original = original
        super().__init__(message)


def _provider_detail(error: Exception, limit: int = 200) -> str:
    """The provider's own message when the error embeds a JSON body, else the error text."""
    text = str(error)
    match = _JSON_MESSAGE.search(text)
    if match:
        return match.group(1)
    return text if len(text) <= limit else text[:limit] + "..."


def _is_credit_error(error: Exception) -> bool:
    text = str(error).lower()
    return any(kw in text for kw in _CREDIT_KEYWORDS)


def _to_llm_error(model: str, error: Exception) -> LLMError:
    """Wrap a LiteLLM exception in an LLMError that names the model and the next step."""
    provider = model.split("/", 1)[0].lower()

    if isinstance(error, AuthenticationError):
        key = _API_KEY_VARS.get(provider, f"{provider.upper()}_API_KEY")
        message = f"{provider} refused the credentials for '{model}'. Set {key} and retry."
    elif isinstance(error, NotFoundError):
        message = (
            f"Unknown model '{model}'. Models are named provider/model, "
            f"e.g. openai/gpt-4o-mini or anthropic/claude-3-5-haiku-20241022."
        )
    elif isinstance(error, RateLimitError):
        message = f"Rate limit exceeded for '{model}' after all retries."
    elif isinstance(error, ContextWindowExceededError):
        message = f"Context too large for '{model}': the history no longer fits its context window."
    elif isinstance(error, BadRequestError):
        message = f"'{model}' rejected the request: {_provider_detail(error)}"
    elif isinstance(error, (APIConnectionError, ServiceUnavailableError)):
        message = f"{provider} is unreachable for '{model}': {_provider_detail(error)}"
    elif isinstance(error, BudgetExceededError) or (isinstance(error, APIError) and _is_credit_error(error)):
        message = f"No credits left for '{model}': {_provider_detail(error)}"
    elif isinstance(error, APIError):
        message = f"{provider} failed on '{model}': {_provider_detail(error)}"
    else:
        message = f"{type(error).__name__} from '{model}': {error}"
    return LLMError(message, original=error)


class LLMClient:
    """
    One configured model, plus the fallbacks tried after it, behind ``acompletion``.

    Model ids use LiteLLM's provider/model form, e.g. ``openai/gpt-4o-mini``
    or ``anthropic/claude-3-5-haiku-20241022``.
    """

    def __init__(
        self,
        model: str,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        retry_backoff: float = 2.0,
        fallback_models: list[str] | None = None,
        api_base: str | None = None,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.retry_backoff = retry_backoff
        self.fallback_models = fallback_models or []
        self.api_base = api_base

    @classmethod
    def from_config(cls, config) -> LLMClient:
        """Build a client from a ``ModelConfig``."""
        return cls(
            model=config.provider,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            retry_backoff=config.retry_backoff,
            fallback_models=list(config.fallback),
            api_base=config.endpoint,
        )

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        stream: bool = False,
        model: str | None = None,
        **extra: Any,
    ) -> ModelResponse:
        """
        Run one chat completion.

        ``model`` overrides the configured model for this call. ``extra`` goes
        to LiteLLM unchanged (``response_format``, ``stream_options``). Each
        model gets its own retries; once they run out the next fallback is
        tried. Errors a retry cannot fix raise LLMError at once.

        Returns:
            The LiteLLM response, or its async chunk stream when ``stream`` is set.
        """
        primary = model or self.model
        candidates = [primary] + [m for m in self.fallback_models if m != primary]

        last_error: Exception | None = None
        for i, candidate in enumerate(candidates):
            if i > 0:
                logger.warning("Switching to fallback model %s", candidate)
            kwargs = self._request_kwargs(candidate, messages, tools, stream, extra)
            result, last_error = await self._try_model(candidate, kwargs)
            if result is not None:
                return result

        raise _to_llm_error(primary, last_error)

    def _request_kwargs(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        stream: bool,
        extra: dict[str, Any],
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": self.temperature,
            "stream": stream,
            **extra,
        }
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens
        if self.api_base:
            kwargs.setdefault("api_base", self.api_base)
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        return kwargs

    async def _try_model(
        self, model: str, kwargs: dict[str, Any]
    ) -> tuple[ModelResponse | None, Exception | None]:
        """
        Call one model with exponential backoff.

        Returns ``(response, None)``, or ``(None, error)`` once transient
        failures used up the retries.
        """
        last_error: Exception | None = None
        delay = self.retry_delay

        for attempt in range(self.max_retries + 1):
            try:
                return await acompletion(**kwargs), None
            except (
                AuthenticationError,
                NotFoundError,
                BudgetExceededError,
                BadRequestError,
                ContextWindowExceededError,
            ) as e:
                raise _to_llm_error(model, e) from e
            except (RateLimitError, ServiceUnavailableError, APIConnectionError, APIError) as e:
                if not isinstance(e, (RateLimitError, ServiceUnavailableError)) and _is_credit_error(e):
                    raise _to_llm_error(model, e) from e
                last_error = e

            if attempt < self.max_retries:
                logger.warning(
                    "%s failed on attempt %d of %d: %s; retrying in %.1fs",
                    model,
                    attempt + 1,
                    self.max_retries + 1,
                    last_error,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= self.retry_backoff

        return None, last_error
