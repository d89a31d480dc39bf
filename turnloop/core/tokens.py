"""
Token estimation and context window limits.

Uses tiktoken for estimates when a provider does not report usage. For
non-OpenAI models cl100k_base is used as an approximation.
"""

import json
import logging
from typing import Any

import litellm
import tiktoken

logger = logging.getLogger(__name__)

MODEL_ENCODINGS = {
    "gpt-4o": "o200k_base",
    "gpt-4": "cl100k_base",
    "gpt-3.5": "cl100k_base",
    "default": "cl100k_base",
}


def get_encoding(model: str) -> tiktoken.Encoding:
    """Get the tiktoken encoding for a model."""
    model_lower = model.lower()
    for prefix, encoding in MODEL_ENCODINGS.items():
        if prefix in model_lower:
            return tiktoken.get_encoding(encoding)
    return tiktoken.get_encoding(MODEL_ENCODINGS["default"])


def count_tokens(text: str, model: str = "default") -> int:
    """Count tokens in a text string."""
    if not text:
        return 0
    return len(get_encoding(model).encode(text))


def count_messages_tokens(messages: list[dict[str, Any]], model: str = "default") -> int:
    """
    Estimate the prompt size of chat messages.

    Adds the usual per-message and per-conversation overhead. Tool call
    payloads are counted by their JSON text.
    """
    encoding = get_encoding(model)
    total = 3
    for message in messages:
        total += 4
        for key, value in message.items():
            if isinstance(value, str):
                total += len(encoding.encode(value))
            elif value is not None and key != "role":
                total += len(encoding.encode(json.dumps(value, default=str)))
    return total


CONTEXT_LIMITS = {
    "gpt-4o": 128000,
    "gpt-4.1": 1047576,
    "gpt-4-turbo": 128000,
    "gpt-4": 8192,
    "gpt-3.5-turbo": 16384,
    "o3": 200000,
    "o4": 200000,
    "claude": 200000,
    "gemini": 1048576,
    "llama": 128000,
    "mistral": 128000,
    "qwen": 128000,
    "deepseek": 64000,
    "default": 128000,
}


def get_context_limit(model: str) -> int:
    """
    Get the context window limit for a model.

    Strategy:
    1. Try LiteLLM's model cost data (most up-to-date)
    2. Fall back to the prefix map above
    3. Fall back to a conservative default
    """
    try:
        model_info = litellm.get_model_info(model)
        if model_info and model_info.get("max_input_tokens"):
            return model_info["max_input_tokens"]
    except Exception:
        logger.debug("LiteLLM has no model info for '%s'", model)

    model_lower = model.lower()
    for prefix, limit in CONTEXT_LIMITS.items():
        if prefix in model_lower:
            return limit

    logger.warning(
        "Unknown model '%s' for context limit. Using default %d.",
        model,
        CONTEXT_LIMITS["default"],
    )
    return CONTEXT_LIMITS["default"]
