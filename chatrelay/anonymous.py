"""
Anonymous chat: conversations without an account, with hard limits.

Conversations are owned by the ANONYMOUS sentinel. Limits:
  - message cap per conversation (all roles count, including the seed)
  - max characters per user message
  - a short allow-list of models, with completions capped by max_tokens
No usage accounting happens here: there is no user to bill.
"""

from __future__ import annotations

import logging

from chatrelay.chat import ChatService
from chatrelay.errors import (
    ConversationLimitError,
    ConversationNotFoundError,
    MessageTooLongError,
    ModelNotAllowedError,
)
from chatrelay.providers.base import TokenSink
from chatrelay.storage.models import ANONYMOUS_USER_ID, Conversation, Message

logger = logging.getLogger(__name__)

SEED_MESSAGE = "New anonymous conversation started."

DEFAULTS = {
    "allowed_models": ["gpt-3.5-turbo", "sonar-reasoning-pro"],
    "default_model": "gpt-3.5-turbo",
    "max_messages_per_conversation": 10,
    "max_content_length": 500,
    "max_tokens": 150,
    "max_age_hours": 24,
    "blocked_user_agents": ["bot", "crawler", "spider", "scraper"],
}


class AnonymousChatService:
    """Limited chat for visitors who are not signed in."""

    def __init__(self, chat: ChatService, settings: dict | None = None):
        self.chat = chat
        self.sqlite = chat.sqlite
        cfg = {**DEFAULTS, **(settings or {})}
        self.allowed_models = tuple(cfg["allowed_models"])
        self.default_model = cfg["default_model"]
        self.max_messages = int(cfg["max_messages_per_conversation"])
        self.max_content_length = int(cfg["max_content_length"])
        self.max_tokens = int(cfg["max_tokens"])
        self.max_age_hours = int(cfg["max_age_hours"])
        self.blocked_user_agents = tuple(cfg["blocked_user_agents"])

    def is_blocked(self, user_agent: str | None) -> bool:
        return is_bot_user_agent(user_agent, self.blocked_user_agents)

    def create_conversation(self) -> Conversation:
        conversation = self.sqlite.create_conversation(Conversation(user_id=ANONYMOUS_USER_ID))
        self.sqlite.add_message(conversation.id, "system", SEED_MESSAGE)
        logger.info("Anonymous conversation created: %s", conversation.id)
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation:
        """Fetch a conversation only if it exists and is anonymous."""
        conversation = self.sqlite.get_conversation(conversation_id, user_id=ANONYMOUS_USER_ID)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def get_messages(self, conversation_id: str) -> list[Message]:
        self.get_conversation(conversation_id)
        return self.sqlite.get_messages(conversation_id)

    def add_user_message(self, conversation_id: str, content: str) -> Message:
        self.get_conversation(conversation_id)
        if len(content) > self.max_content_length:
            raise MessageTooLongError(
                f"Message too long. Maximum {self.max_content_length} characters allowed."
            )
        if self.sqlite.count_messages(conversation_id) >= self.max_messages:
            raise ConversationLimitError(
                "Maximum messages reached for this conversation. Please start a new one."
            )
        return self.sqlite.add_message(conversation_id, "user", content.strip())

    def reset_conversation(self, conversation_id: str) -> None:
        self.get_conversation(conversation_id)
        self.sqlite.reset_conversation(conversation_id)

    def check_model(self, model: str) -> None:
        if model not in self.allowed_models:
            raise ModelNotAllowedError(f"Invalid model for anonymous chat: {model}")

    async def stream_completion(
        self, conversation_id: str, model: str, on_token: TokenSink
    ) -> int:
        """Stream a capped reply; the conversation must already have messages."""
        self.check_model(model)
        self.get_conversation(conversation_id)
        if self.sqlite.count_messages(conversation_id) == 0:
            raise ConversationNotFoundError(conversation_id)
        return await self.chat.stream_chat_completion(
            conversation_id, model, on_token, user_id=None, max_tokens=self.max_tokens,
        )

    def cleanup_old_conversations(self, max_age_hours: int | None = None) -> int:
        hours = max_age_hours if max_age_hours is not None else self.max_age_hours
        return self.sqlite.cleanup_conversations(ANONYMOUS_USER_ID, hours)


def is_bot_user_agent(user_agent: str | None, blocked: list[str] | tuple[str, ...]) -> bool:
    """True for a missing user agent or one containing a blocked marker."""
    if not user_agent:
        return True
    ua = user_agent.lower()
    return any(marker.lower() in ua for marker in blocked)
