"""
Data models for conversation and usage storage.
These define the shape of data flowing between the pipeline and the store.
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from uuid import uuid4

ROLES = ("user", "assistant", "system")

# Owner sentinel for conversations created without a user
ANONYMOUS_USER_ID = "ANONYMOUS"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Message:
    """A single message in a conversation. Immutable once created."""
    conversation_id: str = ""
    role: str = ""           # "user", "assistant", "system"
    content: str = ""
    id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: str = field(default_factory=_now)

    def to_chat_format(self) -> dict:
        """Role + content pair, the shape providers are fed."""
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Conversation:
    """A conversation is an ordered list of messages owned by a user."""
    id: str = field(default_factory=lambda: uuid4().hex)
    user_id: str = ""
    created_at: str = field(default_factory=_now)

    @property
    def is_anonymous(self) -> bool:
        return self.user_id == ANONYMOUS_USER_ID

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class UsageRecord:
    """One completed streamed generation, as billed."""
    model: str
    tokens_used: int
    cost_usd: float
    user_id: str | None = None
    prompt: str | None = None
    status: str = "completed"
    response_time_ms: int = 0
    id: str = field(default_factory=lambda: f"usage_{uuid4().hex}")
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        return asdict(self)
