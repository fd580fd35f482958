"""
Provider Registry: model-id dispatch across providers.

Exact model ids live in a lookup table; a model id may be claimed by
exactly one provider, and a second claim is rejected when it is
registered. Pattern claims (e.g. "gpt-4o-*") are only consulted when no
exact id matches, in registration order.
"""

from __future__ import annotations

import logging

from chatrelay.errors import ProviderConflictError, UnsupportedModelError
from chatrelay.providers.base import BaseProvider
from chatrelay.providers.anthropic import AnthropicProvider
from chatrelay.providers.deepseek import DeepSeekProvider
from chatrelay.providers.openai_compat import (
    GeminiProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    PerplexityProvider,
)

logger = logging.getLogger(__name__)

# Provider type → provider class
PROVIDERS: dict[str, type[BaseProvider]] = {
    "openai": OpenAIProvider,
    "perplexity": PerplexityProvider,
    "gemini": GeminiProvider,
    "anthropic": AnthropicProvider,
    "deepseek": DeepSeekProvider,
    "openai_compat": OpenAICompatibleProvider,
}


class ProviderRegistry:
    """Holds long-lived provider instances and resolves model ids to them."""

    def __init__(self, providers: list[BaseProvider] | None = None):
        self.providers: list[BaseProvider] = []
        self._exact: dict[str, BaseProvider] = {}
        for provider in providers or []:
            self.register(provider)

    @classmethod
    def from_config(cls, providers_config: list[dict]) -> "ProviderRegistry":
        registry = cls()
        for cfg in providers_config:
            provider = cls._create_provider(cfg)
            if provider:
                registry.register(provider)
        names = [p.name for p in registry.providers]
        logger.info("Provider registry initialized: %s", ", ".join(names) or "(empty)")
        return registry

    @staticmethod
    def _create_provider(cfg: dict) -> BaseProvider | None:
        """Instantiate a provider from a config dict."""
        provider_type = cfg.get("provider", "openai_compat")
        cls = PROVIDERS.get(provider_type)
        if not cls:
            logger.warning("Unknown provider type '%s', skipping", provider_type)
            return None

        name = cfg.get("name", provider_type)
        if cls is OpenAICompatibleProvider and not cfg.get("url"):
            logger.warning("Provider '%s' has no url, skipping", name)
            return None

        kwargs = {
            "name": name,
            "url": cfg.get("url", ""),
            "api_key": cfg.get("api_key", ""),
            "models": cfg.get("models"),
            "patterns": cfg.get("patterns"),
            "timeout": cfg.get("timeout", 120),
        }
        if cls is AnthropicProvider:
            kwargs["model_aliases"] = cfg.get("model_aliases")
        return cls(**kwargs)

    def register(self, provider: BaseProvider) -> None:
        """Add a provider. Raises ProviderConflictError on a duplicate exact claim."""
        clashes = sorted(m for m in provider.models if m in self._exact)
        if clashes:
            owner = self._exact[clashes[0]].name
            raise ProviderConflictError(
                f"Provider '{provider.name}' claims {clashes} already served by '{owner}'"
            )
        for model in provider.models:
            self._exact[model] = provider
        self.providers.append(provider)

    def resolve(self, model: str) -> BaseProvider:
        """Return the provider serving model, or raise UnsupportedModelError."""
        provider = self._exact.get(model)
        if provider:
            return provider
        for provider in self.providers:
            if provider.can_handle(model):
                logger.debug("Model '%s' resolved by pattern to '%s'", model, provider.name)
                return provider
        raise UnsupportedModelError(model)

    def get_provider(self, name: str) -> BaseProvider | None:
        """Get a specific provider by name."""
        for p in self.providers:
            if p.name == name:
                return p
        return None

    def list_models(self) -> dict:
        """All exact model ids in an OpenAI-style /v1/models listing."""
        return {
            "object": "list",
            "data": [
                {"id": model, "object": "model", "owned_by": provider.name}
                for model, provider in sorted(self._exact.items())
            ],
        }
