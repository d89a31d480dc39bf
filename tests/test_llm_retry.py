"""
Tests for LLM retry and failover logic.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from litellm.exceptions import (
    APIConnectionError,
    AuthenticationError,
    ContextWindowExceededError,
    RateLimitError,
    ServiceUnavailableError,
)

from turnloop.core.context_manager import is_context_exceeded_error
from turnloop.core.llm import LLMClient, LLMError

MESSAGES = [{"role": "user", "content": "test"}]


class TestLLMRetry:
    """Tests for LLMClient retry logic."""

    @pytest.mark.asyncio
    @patch("turnloop.core.llm.acompletion", new_callable=AsyncMock)
    async def test_success_no_retry(self, mock_completion):
        """Successful call should not retry."""
        mock_response = MagicMock()
        mock_completion.return_value = mock_response

        client = LLMClient("test-model", max_retries=3, retry_delay=0.01)
        result = await client.chat(MESSAGES)

        assert result == mock_response
        assert mock_completion.call_count == 1

    @pytest.mark.asyncio
    @patch("turnloop.core.llm.acompletion", new_callable=AsyncMock)
    async def test_retry_on_rate_limit(self, mock_completion):
        """Should retry on RateLimitError."""
        mock_response = MagicMock()
        mock_completion.side_effect = [
            RateLimitError("Rate limited", "model", "provider"),
            RateLimitError("Rate limited", "model", "provider"),
            mock_response,
        ]

        client = LLMClient("test-model", max_retries=3, retry_delay=0.01)
        result = await client.chat(MESSAGES)

        assert result == mock_response
        assert mock_completion.call_count == 3

    @pytest.mark.asyncio
    @patch("turnloop.core.llm.acompletion", new_callable=AsyncMock)
    async def test_retry_on_service_unavailable(self, mock_completion):
        """Should retry on ServiceUnavailableError."""
        mock_response = MagicMock()
        mock_completion.side_effect = [
            ServiceUnavailableError("Unavailable", "model", "provider"),
            mock_response,
        ]

        client = LLMClient("test-model", max_retries=3, retry_delay=0.01)
        result = await client.chat(MESSAGES)

        assert result == mock_response
        assert mock_completion.call_count == 2

    @pytest.mark.asyncio
    @patch("turnloop.core.llm.acompletion", new_callable=AsyncMock)
    async def test_retry_on_connection_error(self, mock_completion):
        """Should retry on APIConnectionError."""
        mock_response = MagicMock()
        mock_completion.side_effect = [
            APIConnectionError("Connection failed", "model", "provider"),
            mock_response,
        ]

        client = LLMClient("test-model", max_retries=3, retry_delay=0.01)
        result = await client.chat(MESSAGES)

        assert result == mock_response
        assert mock_completion.call_count == 2

    @pytest.mark.asyncio
    @patch("turnloop.core.llm.acompletion", new_callable=AsyncMock)
    async def test_raises_after_max_retries(self, mock_completion):
        """Should raise a friendly error after exhausting retries."""
        mock_completion.side_effect = RateLimitError("Rate limited", "model", "provider")

        client = LLMClient("test-model", max_retries=2, retry_delay=0.01)

        with pytest.raises(LLMError, match="Rate limit exceeded"):
            await client.chat(MESSAGES)

        # 1 initial + 2 retries = 3 attempts
        assert mock_completion.call_count == 3

    @pytest.mark.asyncio
    @patch("turnloop.core.llm.acompletion", new_callable=AsyncMock)
    async def test_no_retry_on_non_transient_error(self, mock_completion):
        """Should not retry on errors it does not recognize."""
        mock_completion.side_effect = ValueError("Invalid model")

        client = LLMClient("test-model", max_retries=3, retry_delay=0.01)

        with pytest.raises(ValueError, match="Invalid model"):
            await client.chat(MESSAGES)

        assert mock_completion.call_count == 1

    @pytest.mark.asyncio
    @patch("turnloop.core.llm.acompletion", new_callable=AsyncMock)
    async def test_auth_error_is_not_retried(self, mock_completion):
        """Authentication failures raise immediately with a key hint."""
        mock_completion.side_effect = AuthenticationError("bad key", "openai", "openai/gpt-4o")

        client = LLMClient("openai/gpt-4o", max_retries=3, retry_delay=0.01, fallback_models=["openai/gpt-4o-mini"])

        with pytest.raises(LLMError, match="OPENAI_API_KEY"):
            await client.chat(MESSAGES)

        assert mock_completion.call_count == 1

    @pytest.mark.asyncio
    @patch("turnloop.core.llm.acompletion", new_callable=AsyncMock)
    async def test_zero_retries(self, mock_completion):
        """With max_retries=0, should only try once."""
        mock_completion.side_effect = RateLimitError("Rate limited", "model", "provider")

        client = LLMClient("test-model", max_retries=0, retry_delay=0.01)

        with pytest.raises(LLMError):
            await client.chat(MESSAGES)

        assert mock_completion.call_count == 1

    @pytest.mark.asyncio
    @patch("turnloop.core.llm.acompletion", new_callable=AsyncMock)
    async def test_fallback_model(self, mock_completion):
        """Fallback models are tried once the primary exhausts its retries."""
        mock_response = MagicMock()
        mock_completion.side_effect = [
            ServiceUnavailableError("Unavailable", "model", "provider"),
            mock_response,
        ]

        client = LLMClient("primary", max_retries=0, retry_delay=0.01, fallback_models=["primary", "backup"])
        result = await client.chat(MESSAGES)

        assert result == mock_response
        models = [c.kwargs["model"] for c in mock_completion.call_args_list]
        assert models == ["primary", "backup"]

    @pytest.mark.asyncio
    @patch("turnloop.core.llm.acompletion", new_callable=AsyncMock)
    async def test_passes_tools_and_stream(self, mock_completion):
        """Should pass tools and stream kwargs correctly."""
        mock_completion.return_value = MagicMock()

        client = LLMClient("test-model", api_base="http://localhost:8000")
        tools = [{"type": "function", "function": {"name": "test"}}]
        await client.chat(MESSAGES, tools=tools, stream=True, response_format={"type": "json_object"})

        call_kwargs = mock_completion.call_args[1]
        assert call_kwargs["tools"] == tools
        assert call_kwargs["tool_choice"] == "auto"
        assert call_kwargs["stream"] is True
        assert call_kwargs["api_base"] == "http://localhost:8000"
        assert call_kwargs["response_format"] == {"type": "json_object"}
        assert "max_tokens" not in call_kwargs

    @pytest.mark.asyncio
    @patch("turnloop.core.llm.acompletion", new_callable=AsyncMock)
    async def test_model_override(self, mock_completion):
        """A per-call model replaces the configured one."""
        mock_completion.return_value = MagicMock()

        client = LLMClient("test-model", max_tokens=100)
        await client.chat(MESSAGES, model="other-model")

        call_kwargs = mock_completion.call_args[1]
        assert call_kwargs["model"] == "other-model"
        assert call_kwargs["max_tokens"] == 100

    @pytest.mark.asyncio
    @patch("turnloop.core.llm.acompletion", new_callable=AsyncMock)
    async def test_context_window_error_is_recognizable(self, mock_completion):
        """Overflow errors keep wording the context manager detects."""
        mock_completion.side_effect = ContextWindowExceededError("too long", "gpt-4o", "openai")

        client = LLMClient("openai/gpt-4o", max_retries=3, retry_delay=0.01)

        with pytest.raises(LLMError) as exc_info:
            await client.chat(MESSAGES)

        assert is_context_exceeded_error(str(exc_info.value))
        assert isinstance(exc_info.value.original, ContextWindowExceededError)
        assert mock_completion.call_count == 1
