"""
Provider registry -- builds adapter instances from a ``ModelConfig``.

Adapters are never shared: every ``create`` call returns a fresh instance
owned by the caller (one per session, rebuilt on every model switch).
Adding a backend means registering one more factory; nothing downstream of
the ``Provider`` interface changes.
"""

from __future__ import annotations

import logging
from typing import Callable

from assistcore.llm.providers.anthropic import AnthropicProvider
from assistcore.llm.providers.base import Provider
from assistcore.llm.providers.gemini import GeminiProvider
from assistcore.llm.providers.ollama import OllamaProvider
from assistcore.llm.providers.openai_compat import OpenAICompatProvider
from assistcore.llm.types import ModelConfig

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[ModelConfig, str], Provider]


class ProviderRegistry:
    def __init__(self) -> None:
        self._factories: dict[str, ProviderFactory] = {}

    def register(self, provider_id: str, factory: ProviderFactory, *, overwrite: bool = False) -> None:
        if provider_id in self._factories and not overwrite:
            raise ValueError(f"Provider already registered: {provider_id}")
        self._factories[provider_id] = factory

    def create(self, config: ModelConfig, system_prompt: str = "") -> Provider:
        """
        Build a new adapter for *config*.

        Raises ``KeyError`` if the provider id has not been registered.
        """
        factory = self._factories.get(config.provider)
        if factory is None:
            raise KeyError(
                f"Unknown provider {config.provider!r}. "
                f"Registered: {sorted(self._factories)}"
            )
        logger.debug("Creating %s adapter for %s", config.provider, config.model)
        return factory(config, system_prompt)

    @property
    def provider_ids(self) -> list[str]:
        return sorted(self._factories)


def default_registry() -> ProviderRegistry:
    """Registry wired with the four built-in backends."""
    registry = ProviderRegistry()
    registry.register("openai", OpenAICompatProvider)
    registry.register("anthropic", AnthropicProvider)
    registry.register("google", GeminiProvider)
    registry.register("local", OllamaProvider)
    return registry
