"""
Multi-provider support for chatrelay.
Model-id dispatch across OpenAI, Perplexity, Gemini, Anthropic and DeepSeek.
"""
from chatrelay.providers.registry import ProviderRegistry
from chatrelay.providers.base import BaseProvider
from chatrelay.providers.openai_compat import (
    OpenAICompatibleProvider,
    OpenAIProvider,
    PerplexityProvider,
    GeminiProvider,
)
from chatrelay.providers.anthropic import AnthropicProvider
from chatrelay.providers.deepseek import DeepSeekProvider

__all__ = [
    "ProviderRegistry",
    "BaseProvider",
    "OpenAICompatibleProvider",
    "OpenAIProvider",
    "PerplexityProvider",
    "GeminiProvider",
    "AnthropicProvider",
    "DeepSeekProvider",
]
