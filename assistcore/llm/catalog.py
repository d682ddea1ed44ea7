"""Model catalog -- the models offered by the model picker."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class CatalogModel:
    """One selectable model, identified as ``provider:model``."""

    id: str
    name: str
    provider: str
    max_context_tokens: int = 128_000

    @property
    def model(self) -> str:
        return self.id.split(":", 1)[1]


@dataclass
class CatalogProvider:
    id: str
    name: str
    models: list[CatalogModel] = field(default_factory=list)
    # Providers that accept any model name (local servers).
    open_ended: bool = False


class ModelCatalog:
    """Registry of providers and their known models."""

    def __init__(self, providers: list[CatalogProvider] | None = None) -> None:
        self._providers: dict[str, CatalogProvider] = {}
        for p in providers or []:
            self.register(p)

    def register(self, provider: CatalogProvider) -> None:
        self._providers[provider.id] = provider

    def providers(self) -> list[CatalogProvider]:
        return list(self._providers.values())

    def get_provider(self, provider_id: str) -> CatalogProvider | None:
        return self._providers.get(provider_id)

    def get(self, model_id: str) -> CatalogModel | None:
        provider_id, _, _ = model_id.partition(":")
        provider = self._providers.get(provider_id)
        if provider is None:
            return None
        for m in provider.models:
            if m.id == model_id:
                return m
        return None

    def list_all(self) -> list[CatalogModel]:
        return [m for p in self._providers.values() for m in p.models]

    def validate(self, model_id: str) -> tuple[str, str]:
        """
        Check *model_id* and return ``(provider, model)``.

        Unknown providers are rejected.  Unknown models are accepted: the
        catalog is a menu, not an allow-list, and local servers serve
        whatever has been pulled.
        """
        provider_id, model = parse_model_id(model_id)
        if provider_id not in self._providers:
            known = ", ".join(sorted(self._providers))
            raise ValueError(f"Unknown provider {provider_id!r} (known: {known})")
        return provider_id, model


def parse_model_id(model_id: str) -> tuple[str, str]:
    """Split ``"provider:model"``.  Raises ``ValueError`` when malformed."""
    provider, sep, model = model_id.partition(":")
    if not sep or not provider or not model:
        raise ValueError(f"Model id must look like 'provider:model', got {model_id!r}")
    return provider, model


def default_catalog() -> ModelCatalog:
    return ModelCatalog([
        CatalogProvider("openai", "OpenAI", [
            CatalogModel("openai:gpt-4o", "GPT-4o", "openai"),
            CatalogModel("openai:gpt-4o-mini", "GPT-4o Mini", "openai"),
            CatalogModel("openai:gpt-3.5-turbo", "GPT-3.5 Turbo", "openai", 16_385),
        ]),
        CatalogProvider("anthropic", "Anthropic", [
            CatalogModel(
                "anthropic:claude-sonnet-4-20250514", "Claude 4 Sonnet", "anthropic", 200_000
            ),
            CatalogModel(
                "anthropic:claude-3-7-sonnet-latest", "Claude 3.7 Sonnet", "anthropic", 200_000
            ),
            CatalogModel(
                "anthropic:claude-3-5-haiku-latest", "Claude 3.5 Haiku", "anthropic", 200_000
            ),
        ]),
        CatalogProvider("google", "Google", [
            CatalogModel("google:gemini-2.0-flash", "Gemini 2.0 Flash", "google", 1_048_576),
            CatalogModel(
                "google:gemini-2.5-flash-preview-06-05",
                "Gemini 2.5 Flash (Thinking)",
                "google",
                1_048_576,
            ),
            CatalogModel(
                "google:gemini-2.5-pro-preview-06-05",
                "Gemini 2.5 Pro (Thinking)",
                "google",
                1_048_576,
            ),
        ]),
        CatalogProvider("local", "Local Models", open_ended=True),
    ])


DEFAULT_MODEL_ID = "openai:gpt-4o"
