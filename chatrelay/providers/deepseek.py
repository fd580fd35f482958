"""
DeepSeek provider.

The response body is consumed as raw byte chunks and reassembled into
newline-delimited JSON by NDJSONDecoder, so a chunk boundary falling in
the middle of a JSON object (or a UTF-8 character) is harmless.
"""

from __future__ import annotations

import logging

from chatrelay.errors import ProviderError
from chatrelay.providers.openai_compat import OpenAICompatibleProvider
from chatrelay.providers.stream import NDJSONDecoder, delta_content

logger = logging.getLogger(__name__)


class DeepSeekProvider(OpenAICompatibleProvider):
    default_url = "https://api.deepseek.com/v1"
    default_models = ("deepseek-v3", "deepseek-v3.5")

    async def stream_tokens(self, messages, model, max_tokens=None):
        body = self._build_body(messages, model, max_tokens)
        decoder = NDJSONDecoder()
        async with self._open_stream("/chat/completions", body) as resp:
            async for chunk in resp.aiter_bytes():
                for token in self._decode(decoder, chunk):
                    yield token
            for token in self._decode(decoder, None):
                yield token

    def _decode(self, decoder: NDJSONDecoder, chunk: bytes | None) -> list[str]:
        """Tokens completed by chunk; None flushes the tail at end of stream."""
        try:
            objects = decoder.flush() if chunk is None else decoder.feed(chunk)
        except ValueError as e:
            raise ProviderError(self.name, str(e)) from e
        tokens = []
        for obj in objects:
            if "error" in obj:
                raise ProviderError(self.name, f"Upstream error: {obj['error']}")
            try:
                token = delta_content(obj)
            except ValueError as e:
                raise ProviderError(self.name, f"Malformed stream chunk: {e}") from e
            if token:
                tokens.append(token)
        return tokens
