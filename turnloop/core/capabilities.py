"""
Model capability registry.

Hosts register the models they use with their capabilities; models that were
never registered are looked up in LiteLLM's model data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import litellm

from turnloop.models.call import Capability

logger = logging.getLogger(__name__)


def litellm_model_id(provider: str, model: str) -> str:
    """LiteLLM identifier for a provider/model pair ('openai', 'gpt-4o' -> 'openai/gpt-4o')."""
    if not provider or model.startswith(f"{provider}/"):
        return model
    return f"{provider}/{model}"


@dataclass(frozen=True)
class ModelInfo:
    provider: str
    model: str
    capabilities: Capability = Capability.TEXT2TEXT
    context_limit: int | None = None
    default_for: Capability = Capability.NONE
    supports_streaming: bool = True


class CapabilityRegistry:
    """
    Registered models keyed by (provider, model), case-insensitive.

    Lookups never raise: an unknown model is reported as ``None`` and
    ``supports`` treats it as capable, since nothing proves otherwise.
    """

    def __init__(self) -> None:
        self._models: dict[tuple[str, str], ModelInfo] = {}

    def register(self, info: ModelInfo) -> None:
        self._models[(info.provider.lower(), info.model.lower())] = info
        logger.debug("Registered model %s/%s (%s)", info.provider, info.model, info.capabilities)

    def get(self, provider: str, model: str) -> ModelInfo | None:
        return self._models.get((provider.lower(), model.lower()))

    def capabilities_of(self, provider: str, model: str) -> Capability | None:
        info = self.get(provider, model)
        if info is not None:
            return info.capabilities
        return self._from_litellm(litellm_model_id(provider, model))

    def supports(self, provider: str, model: str, required: Capability) -> bool:
        if not required:
            return True
        capabilities = self.capabilities_of(provider, model)
        if capabilities is None:
            return True
        return (capabilities & required) == required

    def supports_streaming(self, provider: str, model: str) -> bool:
        info = self.get(provider, model)
        return True if info is None else info.supports_streaming

    def context_limit(self, provider: str, model: str) -> int | None:
        info = self.get(provider, model)
        return info.context_limit if info is not None else None

    def get_default_model(self, provider: str, capability: Capability = Capability.TEXT2TEXT) -> str | None:
        """First registered model of ``provider`` marked as default for ``capability``."""
        for info in self._models.values():
            if info.provider.lower() != provider.lower():
                continue
            if info.default_for and (info.default_for & capability) == capability:
                return info.model
        return None

    @staticmethod
    def _from_litellm(model_id: str) -> Capability | None:
        try:
            litellm.get_model_info(model_id)
        except Exception:
            logger.debug("No capability data for '%s'", model_id)
            return None

        capabilities = Capability.TEXT2TEXT
        if litellm.supports_function_calling(model=model_id):
            capabilities |= Capability.FUNCTION_CALLING
        if litellm.supports_vision(model=model_id):
            capabilities |= Capability.IMAGE_INPUT
        if litellm.supports_response_schema(model=model_id):
            capabilities |= Capability.JSON_OUTPUT
        if litellm.supports_reasoning(model=model_id):
            capabilities |= Capability.REASONING
        return capabilities
