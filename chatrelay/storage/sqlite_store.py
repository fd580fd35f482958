"""
SQLite storage for conversations, messages and usage accounting.
Single portable file. Every write is one short transaction; running totals
and rate-limit counters are bumped with single UPDATE statements so
concurrent completions for the same user never lose an increment.
"""

import sqlite3
import logging
from pathlib import Path
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from chatrelay.storage.models import Conversation, Message, UsageRecord

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    seq INTEGER NOT NULL,
    conversation_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
);

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    total_tokens_used INTEGER NOT NULL DEFAULT 0,
    total_cost_usd REAL NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS usage_logs (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    model TEXT NOT NULL,
    prompt TEXT,
    tokens_used INTEGER NOT NULL,
    cost_usd REAL NOT NULL,
    response_time_ms INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS request_counters (
    key TEXT PRIMARY KEY,
    count INTEGER NOT NULL DEFAULT 0,
    window_start TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, seq);
CREATE INDEX IF NOT EXISTS idx_conversations_user
    ON conversations(user_id);
CREATE INDEX IF NOT EXISTS idx_usage_user
    ON usage_logs(user_id);
"""


class SQLiteStore:
    """Thread-safe SQLite conversation and usage store."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ─ Conversations ──────────────────────────────────────────────────────

    @staticmethod
    def _row_to_conversation(row) -> Conversation:
        return Conversation(id=row["id"], user_id=row["user_id"], created_at=row["created_at"])

    def create_conversation(self, conversation: Conversation) -> Conversation:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO conversations (id, user_id, created_at) VALUES (?, ?, ?)",
                (conversation.id, conversation.user_id, conversation.created_at),
            )
        logger.debug("Created conversation %s (user=%s)", conversation.id, conversation.user_id)
        return conversation

    def get_conversation(self, conversation_id: str, user_id: str | None = None) -> Conversation | None:
        """Fetch a conversation, optionally only if owned by user_id."""
        query = "SELECT * FROM conversations WHERE id = ?"
        params: tuple = (conversation_id,)
        if user_id is not None:
            query += " AND user_id = ?"
            params += (user_id,)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_conversation(row) if row else None

    def get_or_create_conversation(self, conversation_id: str | None, user_id: str) -> Conversation:
        """Return the conversation with this id, creating it if absent."""
        if conversation_id:
            existing = self.get_conversation(conversation_id)
            if existing:
                return existing
            conversation = Conversation(id=conversation_id, user_id=user_id)
        else:
            conversation = Conversation(user_id=user_id)
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO conversations (id, user_id, created_at) VALUES (?, ?, ?)",
                (conversation.id, conversation.user_id, conversation.created_at),
            )
        return self.get_conversation(conversation.id)

    def list_conversations(self, user_id: str | None = None) -> list[Conversation]:
        """Newest first. All conversations when user_id is None."""
        with self._connect() as conn:
            if user_id is None:
                rows = conn.execute(
                    "SELECT * FROM conversations ORDER BY created_at DESC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM conversations WHERE user_id = ? ORDER BY created_at DESC",
                    (user_id,),
                ).fetchall()
        return [self._row_to_conversation(r) for r in rows]

    def reset_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation and its messages. Returns False if absent."""
        with self._connect() as conn:
            conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            cur = conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        logger.info("Reset conversation %s", conversation_id)
        return cur.rowcount > 0

    def cleanup_conversations(self, user_id: str, max_age_hours: int) -> int:
        """Delete this owner's conversations older than max_age_hours."""
        cutoff = (datetime.now(timezone.utc) - timedelta(hours=max_age_hours)).isoformat()
        with self._connect() as conn:
            conn.execute(
                """DELETE FROM messages WHERE conversation_id IN
                   (SELECT id FROM conversations WHERE user_id = ? AND created_at < ?)""",
                (user_id, cutoff),
            )
            cur = conn.execute(
                "DELETE FROM conversations WHERE user_id = ? AND created_at < ?",
                (user_id, cutoff),
            )
        logger.info("Cleaned up %d conversations for %s older than %dh", cur.rowcount, user_id, max_age_hours)
        return cur.rowcount

    # ─ Messages ───────────────────────────────────────────────────────────

    def add_message(self, conversation_id: str, role: str, content: str) -> Message:
        """Append a message. seq is assigned inside the insert, so order is append order."""
        msg = Message(conversation_id=conversation_id, role=role, content=content)
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO messages (id, seq, conversation_id, role, content, timestamp)
                   VALUES (?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM messages WHERE conversation_id = ?),
                           ?, ?, ?, ?)""",
                (msg.id, conversation_id, conversation_id, role, content, msg.timestamp),
            )
        logger.debug("Stored message %s (role=%s, conv=%s)", msg.id, role, conversation_id)
        return msg

    def get_messages(self, conversation_id: str) -> list[Message]:
        """Retrieve all messages for a conversation in append order."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY seq",
                (conversation_id,),
            ).fetchall()
        return [
            Message(
                id=r["id"],
                conversation_id=r["conversation_id"],
                role=r["role"],
                content=r["content"],
                timestamp=r["timestamp"],
            )
            for r in rows
        ]

    def count_messages(self, conversation_id: str) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM messages WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()[0]

    # ─ Usage accounting ───────────────────────────────────────────────────

    def insert_usage(self, record: UsageRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO usage_logs
                   (id, user_id, model, prompt, tokens_used, cost_usd,
                    response_time_ms, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (record.id, record.user_id, record.model, record.prompt,
                 record.tokens_used, record.cost_usd, record.response_time_ms,
                 record.status, record.created_at),
            )

    def increment_user_totals(self, user_id: str, tokens: int, cost_usd: float) -> None:
        """Atomic add to the user's running totals (no read-modify-write)."""
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO users (id, total_tokens_used, total_cost_usd)
                   VALUES (?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                     total_tokens_used = total_tokens_used + excluded.total_tokens_used,
                     total_cost_usd = total_cost_usd + excluded.total_cost_usd""",
                (user_id, tokens, cost_usd),
            )

    def get_user_totals(self, user_id: str) -> dict:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT total_tokens_used, total_cost_usd FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
        if not row:
            return {"total_tokens_used": 0, "total_cost_usd": 0.0}
        return dict(row)

    def get_usage_records(self, user_id: str) -> list[UsageRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM usage_logs WHERE user_id = ? ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [UsageRecord(**dict(r)) for r in rows]

    # ─ Rate limiting ──────────────────────────────────────────────────────

    def hit_counter(self, key: str, window_minutes: int) -> int:
        """
        Count one request against key's fixed window and return the new count.
        A window older than window_minutes is restarted at 1.
        """
        now = datetime.now(timezone.utc)
        cutoff = (now - timedelta(minutes=window_minutes)).isoformat()
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO request_counters (key, count, window_start) VALUES (?, 0, ?)",
                (key, now.isoformat()),
            )
            conn.execute(
                """UPDATE request_counters
                   SET count = CASE WHEN window_start < ? THEN 1 ELSE count + 1 END,
                       window_start = CASE WHEN window_start < ? THEN ? ELSE window_start END
                   WHERE key = ?""",
                (cutoff, cutoff, now.isoformat(), key),
            )
            return conn.execute(
                "SELECT count FROM request_counters WHERE key = ?", (key,)
            ).fetchone()[0]
