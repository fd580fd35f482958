"""
Base provider abstraction.
All providers implement this interface so the registry and the chat
pipeline can treat them uniformly.
"""

from __future__ import annotations

import abc
import fnmatch
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Iterable

import httpx

from chatrelay.errors import ProviderError

logger = logging.getLogger(__name__)

TokenSink = Callable[[str], None]


class BaseProvider(abc.ABC):
    """
    Abstract base for upstream model providers.

    Each provider owns a fixed set of model ids (plus optional glob
    patterns) and knows how to stream a completion from its backend.
    Subclasses implement stream_tokens(); stream_completion() drains it.
    """

    default_url = ""
    default_models: tuple[str, ...] = ()
    temperature = 0.7

    def __init__(
        self,
        name: str,
        url: str = "",
        api_key: str = "",
        models: Iterable[str] | None = None,
        patterns: Iterable[str] | None = None,
        timeout: int = 120,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.name = name
        self.url = (url or self.default_url).rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._models = frozenset(models if models is not None else self.default_models)
        self._patterns = tuple(patterns or ())
        self._transport = transport
        if not api_key:
            logger.warning("Provider '%s' has no API key configured", name)

    @property
    def models(self) -> frozenset[str]:
        """Exact model ids this provider serves."""
        return self._models

    @property
    def patterns(self) -> tuple[str, ...]:
        return self._patterns

    def can_handle(self, model: str) -> bool:
        """Static capability test: exact id, then pattern claims."""
        if model in self._models:
            return True
        return any(fnmatch.fnmatchcase(model, p) for p in self._patterns)

    def format_messages(self, messages: list[dict]) -> list[dict]:
        """Translate history into the backend's message shape."""
        return [{"role": m["role"], "content": m["content"]} for m in messages]

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @asynccontextmanager
    async def _open_stream(self, path: str, body: dict):
        """
        POST body and yield the streaming response once its status is known good.
        Transport failures anywhere inside the block surface as ProviderError.
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                async with client.stream(
                    "POST",
                    f"{self.url}{path}",
                    json=body,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        detail = (await resp.aread()).decode("utf-8", errors="replace")
                        raise ProviderError(self.name, f"HTTP {resp.status_code}: {detail[:200]}")
                    yield resp
        except httpx.TimeoutException as e:
            logger.warning("Provider '%s' stream timed out", self.name)
            raise ProviderError(self.name, f"Timeout after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning("Provider '%s' stream failed: %s", self.name, e)
            raise ProviderError(self.name, str(e)) from e

    @abc.abstractmethod
    def stream_tokens(
        self, messages: list[dict], model: str, max_tokens: int | None = None
    ) -> AsyncIterator[str]:
        """
        Stream a completion as a lazy sequence of text fragments.
        Finite and single-pass; raises ProviderError on upstream failure.
        """
        ...

    async def stream_completion(
        self,
        messages: list[dict],
        model: str,
        on_token: TokenSink,
        max_tokens: int | None = None,
    ) -> int:
        """
        Stream a completion, calling on_token once per fragment in arrival order.

        Returns the number of fragments seen. This is an approximation of the
        token count (one upstream chunk ~ one token), not a tokenizer count;
        usage billing is computed from it.
        """
        total = 0
        async for token in self.stream_tokens(messages, model, max_tokens=max_tokens):
            on_token(token)
            total += 1
        logger.debug("Provider '%s' streamed %d fragments for '%s'", self.name, total, model)
        return total

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"
