"""
Shared fixtures: a temp SQLite store and a scripted in-process provider.
"""

import asyncio

import pytest

from chatrelay.errors import ProviderError
from chatrelay.providers.base import BaseProvider
from chatrelay.storage.sqlite_store import SQLiteStore


class StubProvider(BaseProvider):
    """
    Yields a fixed token script.

    fail_after raises before that token number; block_after hangs there
    until cancelled, setting `closed` on the way out.
    """

    def __init__(self, name="stub", models=("stub-model",), tokens=("Hi", " there"),
                 fail_after=None, patterns=None, block_after=None):
        super().__init__(name, url="http://stub.invalid", api_key="test-key",
                         models=models, patterns=patterns)
        self.tokens = list(tokens)
        self.fail_after = fail_after
        self.block_after = block_after
        self.closed = False
        self.calls = []

    async def stream_tokens(self, messages, model, max_tokens=None):
        self.calls.append({"messages": messages, "model": model, "max_tokens": max_tokens})
        try:
            for i, token in enumerate(self.tokens):
                if self.fail_after is not None and i >= self.fail_after:
                    raise ProviderError(self.name, "connection reset")
                if i == self.block_after:
                    await asyncio.Event().wait()
                yield token
        finally:
            self.closed = True


@pytest.fixture
def store(tmp_path):
    """Create a fresh SQLite store for each test."""
    return SQLiteStore(str(tmp_path / "test.db"))


@pytest.fixture
def make_provider():
    """Factory for StubProvider instances."""
    return StubProvider
