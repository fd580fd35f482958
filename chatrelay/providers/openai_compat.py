"""
OpenAI-compatible providers.

Any endpoint that speaks the OpenAI chat completions API streams the same
way: SSE `data: {json}` lines, text at choices[0].delta.content, and a
final `data: [DONE]`. OpenAI, Perplexity and Gemini's compatibility
endpoint differ only in base URL and model set.
"""

from __future__ import annotations

import json
import logging

from chatrelay.errors import ProviderError
from chatrelay.providers.base import BaseProvider
from chatrelay.providers.stream import delta_content, parse_sse_data

logger = logging.getLogger(__name__)


class OpenAICompatibleProvider(BaseProvider):
    """
    Generic provider for OpenAI-compatible endpoints.

    Works with any service that implements POST {url}/chat/completions.
    """

    def _build_body(self, messages: list[dict], model: str, max_tokens: int | None) -> dict:
        body = {
            "model": model,
            "messages": self.format_messages(messages),
            "temperature": self.temperature,
            "stream": True,
        }
        if max_tokens:
            body["max_tokens"] = max_tokens
        return body

    async def stream_tokens(self, messages, model, max_tokens=None):
        body = self._build_body(messages, model, max_tokens)
        async with self._open_stream("/chat/completions", body) as resp:
            async for line in resp.aiter_lines():
                data = parse_sse_data(line)
                if data is None or not data:
                    continue
                if data == "[DONE]":
                    return
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError as e:
                    raise ProviderError(self.name, f"Malformed stream chunk: {data[:200]}") from e
                if isinstance(chunk, dict) and "error" in chunk:
                    raise ProviderError(self.name, f"Upstream error: {chunk['error']}")
                try:
                    token = delta_content(chunk)
                except ValueError as e:
                    raise ProviderError(self.name, f"Malformed stream chunk: {e}") from e
                if token:
                    yield token


class OpenAIProvider(OpenAICompatibleProvider):
    default_url = "https://api.openai.com/v1"
    default_models = ("gpt-4o", "gpt-3.5-turbo", "gpt-4o-mini")


class PerplexityProvider(OpenAICompatibleProvider):
    default_url = "https://api.perplexity.ai"
    default_models = ("sonar-reasoning-pro", "pplx-70b-chat", "mixtral-8x7b-instruct")


class GeminiProvider(OpenAICompatibleProvider):
    default_url = "https://generativelanguage.googleapis.com/v1beta/openai"
    default_models = ("gemini-pro",)
