"""
Chat service: conversations plus the streaming completion pipeline.

stream_chat_completion() is the core flow:
  resolve provider → stream tokens to the caller's sink while buffering
  → after the stream is fully drained, store the assistant message and
  record usage.

Nothing is persisted for a stream that raises or is cancelled part way;
the caller has already seen whatever tokens arrived before the failure.
"""

from __future__ import annotations

import logging
import time

from chatrelay.costs import CostTracker
from chatrelay.errors import ConversationNotFoundError, PricingError
from chatrelay.providers.base import BaseProvider, TokenSink
from chatrelay.providers.registry import ProviderRegistry
from chatrelay.storage.models import Conversation, Message
from chatrelay.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)


class ChatService:
    """Conversation CRUD and streamed completions for authenticated users."""

    def __init__(
        self,
        sqlite: SQLiteStore,
        registry: ProviderRegistry,
        cost_tracker: CostTracker | None = None,
        default_model: str = "gpt-4o",
    ):
        self.sqlite = sqlite
        self.registry = registry
        self.cost_tracker = cost_tracker
        self.default_model = default_model

    # ─ Conversations ──────────────────────────────────────────────────────

    def get_or_create_conversation(self, conversation_id: str | None, user_id: str) -> Conversation:
        return self.sqlite.get_or_create_conversation(conversation_id, user_id)

    def get_conversation(self, conversation_id: str, user_id: str | None = None) -> Conversation:
        """Fetch a conversation (owned by user_id, if given) or raise."""
        conversation = self.sqlite.get_conversation(conversation_id, user_id=user_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def list_conversations(self, user_id: str | None = None) -> list[Conversation]:
        return self.sqlite.list_conversations(user_id)

    def add_user_message(self, conversation_id: str, content: str) -> Message:
        return self.sqlite.add_message(conversation_id, "user", content)

    def get_messages(self, conversation_id: str) -> list[Message]:
        return self.sqlite.get_messages(conversation_id)

    def reset_conversation(self, conversation_id: str) -> None:
        if not self.sqlite.reset_conversation(conversation_id):
            raise ConversationNotFoundError(conversation_id)

    # ─ Streaming ──────────────────────────────────────────────────────────

    def resolve_provider(self, model: str) -> BaseProvider:
        return self.registry.resolve(model)

    async def stream_completion(
        self,
        history: list[dict],
        model: str,
        on_token: TokenSink,
        *,
        conversation_id: str | None = None,
        user_id: str | None = None,
        max_tokens: int | None = None,
    ) -> int:
        """
        Stream a completion for history, forwarding tokens to on_token.

        When conversation_id is given the full reply is appended to that
        conversation after the stream drains. Returns the provider's token
        count.
        """
        provider = self.resolve_provider(model)
        logger.info("Streaming '%s' via provider '%s' (conv=%s)", model, provider.name, conversation_id)

        parts: list[str] = []

        def relay(token: str) -> None:
            parts.append(token)
            on_token(token)

        t0 = time.monotonic()
        total_tokens = await provider.stream_completion(history, model, relay, max_tokens=max_tokens)
        latency_ms = int((time.monotonic() - t0) * 1000)

        content = "".join(parts)
        if not content.strip():
            logger.info("Provider '%s' returned empty content for '%s'", provider.name, model)
            return total_tokens

        if conversation_id:
            try:
                self.sqlite.add_message(conversation_id, "assistant", content)
            except Exception:
                logger.exception("Failed to store assistant message for %s", conversation_id)
                raise
            logger.info("Assistant message saved (conv=%s, tokens=%d)", conversation_id, total_tokens)

        if user_id:
            prompt = history[-1]["content"] if history else None
            self._record_usage(user_id, model, total_tokens, prompt, latency_ms)

        return total_tokens

    async def stream_chat_completion(
        self,
        conversation_id: str,
        model: str,
        on_token: TokenSink,
        user_id: str | None = None,
        max_tokens: int | None = None,
    ) -> int:
        """Stream a reply to a stored conversation's history."""
        history = [m.to_chat_format() for m in self.get_messages(conversation_id)]
        if not history:
            logger.info("No previous messages in conversation %s", conversation_id)
        return await self.stream_completion(
            history,
            model,
            on_token,
            conversation_id=conversation_id,
            user_id=user_id,
            max_tokens=max_tokens,
        )

    def _record_usage(
        self, user_id: str, model: str, tokens: int, prompt: str | None, latency_ms: int
    ) -> None:
        """
        A missing price only gets logged: the user already has the text.
        Store failures are logged and re-raised.
        """
        if not self.cost_tracker:
            return
        try:
            self.cost_tracker.record_usage(
                user_id, model, tokens, prompt=prompt, response_time_ms=latency_ms
            )
        except PricingError as e:
            logger.error("Usage accounting skipped for user=%s: %s", user_id, e)
        except Exception:
            logger.exception("Failed to store usage for user=%s model=%s", user_id, model)
            raise
