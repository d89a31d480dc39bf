"""turnloop: multi-turn conversation orchestration over LiteLLM."""

__version__ = "0.3.0"
