"""
Anthropic provider: Claude via the Messages API.

Differences from the OpenAI shape:
  - auth is `x-api-key` plus an `anthropic-version` header
  - only "user" and "assistant" roles are accepted, so every other role
    (system included) is sent as "assistant"
  - public model names map to dated upstream ids
  - the stream is typed SSE events; text arrives in content_block_delta
"""

from __future__ import annotations

import json
import logging

from chatrelay.errors import ProviderError
from chatrelay.providers.base import BaseProvider
from chatrelay.providers.stream import parse_sse_data, parse_sse_event

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

DEFAULT_MODEL_ALIASES = {
    "claude-3-sonnet": "claude-3-sonnet-20240229",
    "claude-3-haiku": "claude-3-haiku-20240307",
}


class AnthropicProvider(BaseProvider):
    """Provider for the Anthropic Messages API."""

    default_url = "https://api.anthropic.com/v1"
    max_tokens = 4096

    def __init__(
        self,
        name: str,
        url: str = "",
        api_key: str = "",
        models=None,
        patterns=None,
        timeout: int = 120,
        transport=None,
        model_aliases: dict[str, str] | None = None,
    ):
        self.model_aliases = dict(model_aliases or DEFAULT_MODEL_ALIASES)
        if models is None:
            models = list(self.model_aliases)
        super().__init__(
            name, url=url, api_key=api_key, models=models,
            patterns=patterns, timeout=timeout, transport=transport,
        )

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def format_messages(self, messages: list[dict]) -> list[dict]:
        return [
            {"role": "user" if m["role"] == "user" else "assistant", "content": m["content"]}
            for m in messages
        ]

    def upstream_model(self, model: str) -> str:
        return self.model_aliases.get(model, model)

    async def stream_tokens(self, messages, model, max_tokens=None):
        body = {
            "model": self.upstream_model(model),
            "messages": self.format_messages(messages),
            "max_tokens": max_tokens or self.max_tokens,
            "stream": True,
        }
        event = None
        async with self._open_stream("/messages", body) as resp:
            async for line in resp.aiter_lines():
                name = parse_sse_event(line)
                if name is not None:
                    event = name
                    continue
                data = parse_sse_data(line)
                if not data:
                    continue
                try:
                    payload = json.loads(data)
                except json.JSONDecodeError as e:
                    raise ProviderError(self.name, f"Malformed stream chunk: {data[:200]}") from e

                if not isinstance(payload, dict):
                    raise ProviderError(self.name, f"Malformed stream chunk: {data[:200]}")

                kind = payload.get("type") or event
                if kind == "error":
                    err = payload.get("error")
                    message = err.get("message", err) if isinstance(err, dict) else err
                    raise ProviderError(self.name, f"Upstream error: {message}")
                if kind == "message_stop":
                    return
                if kind == "content_block_delta":
                    text = self._delta_text(payload, data)
                    if text:
                        yield text

    def _delta_text(self, payload: dict, raw: str) -> str:
        delta = payload.get("delta")
        text = delta.get("text", "") if isinstance(delta, dict) else None
        if not isinstance(text, str):
            raise ProviderError(self.name, f"Malformed stream chunk: {raw[:200]}")
        return text
