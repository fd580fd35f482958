"""
Tests for SQLite storage.
Uses a temp database for each test.
"""

from datetime import datetime, timedelta, timezone

from chatrelay.storage.models import ANONYMOUS_USER_ID, Conversation, UsageRecord


def _hours_ago(hours):
    return (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat()


def test_messages_come_back_in_append_order(store):
    conv = store.get_or_create_conversation("conv1", "u1")
    store.add_message(conv.id, "user", "hi")
    store.add_message(conv.id, "assistant", "hello!")
    store.add_message(conv.id, "user", "how are you?")

    messages = store.get_messages("conv1")
    assert [m.content for m in messages] == ["hi", "hello!", "how are you?"]
    assert messages[1].role == "assistant"
    assert store.count_messages("conv1") == 3


def test_separate_conversations(store):
    store.get_or_create_conversation("conv1", "u1")
    store.get_or_create_conversation("conv2", "u1")
    store.add_message("conv1", "user", "msg1")
    store.add_message("conv2", "user", "msg2")

    assert len(store.get_messages("conv1")) == 1
    assert len(store.get_messages("conv2")) == 1


def test_get_or_create_is_idempotent(store):
    first = store.get_or_create_conversation("conv1", "u1")
    again = store.get_or_create_conversation("conv1", "u1")
    assert first.id == again.id
    assert first.created_at == again.created_at
    assert len(store.list_conversations("u1")) == 1


def test_get_or_create_without_id_mints_one(store):
    conv = store.get_or_create_conversation(None, "u1")
    assert conv.id
    assert conv.user_id == "u1"


def test_get_conversation_owner_filter(store):
    store.get_or_create_conversation("conv1", "u1")
    assert store.get_conversation("conv1").user_id == "u1"
    assert store.get_conversation("conv1", user_id="u1") is not None
    assert store.get_conversation("conv1", user_id="u2") is None
    assert store.get_conversation("missing") is None


def test_list_conversations_newest_first(store):
    store.create_conversation(Conversation(id="old", user_id="u1", created_at=_hours_ago(5)))
    store.create_conversation(Conversation(id="new", user_id="u1", created_at=_hours_ago(1)))
    store.create_conversation(Conversation(id="other", user_id="u2"))

    assert [c.id for c in store.list_conversations("u1")] == ["new", "old"]
    assert len(store.list_conversations()) == 3


def test_reset_conversation(store):
    store.get_or_create_conversation("conv1", "u1")
    store.add_message("conv1", "user", "hi")
    assert store.reset_conversation("conv1") is True
    assert store.get_conversation("conv1") is None
    assert store.get_messages("conv1") == []
    assert store.reset_conversation("conv1") is False


def test_cleanup_only_touches_old_conversations_of_owner(store):
    store.create_conversation(Conversation(id="stale", user_id=ANONYMOUS_USER_ID, created_at=_hours_ago(48)))
    store.create_conversation(Conversation(id="fresh", user_id=ANONYMOUS_USER_ID))
    store.create_conversation(Conversation(id="mine", user_id="u1", created_at=_hours_ago(48)))
    store.add_message("stale", "user", "bye")

    deleted = store.cleanup_conversations(ANONYMOUS_USER_ID, 24)

    assert deleted == 1
    assert store.get_conversation("stale") is None
    assert store.get_messages("stale") == []
    assert store.get_conversation("fresh") is not None
    assert store.get_conversation("mine") is not None


def test_usage_records_round_trip(store):
    record = UsageRecord(model="gpt-4o", tokens_used=10, cost_usd=0.001, user_id="u1", prompt="p")
    store.insert_usage(record)
    assert store.get_usage_records("u1") == [record]
    assert store.get_usage_records("u2") == []


def test_user_totals_default_to_zero(store):
    assert store.get_user_totals("nobody") == {"total_tokens_used": 0, "total_cost_usd": 0.0}


def test_increment_user_totals_adds(store):
    store.increment_user_totals("u1", 10, 0.5)
    store.increment_user_totals("u1", 5, 0.25)
    totals = store.get_user_totals("u1")
    assert totals["total_tokens_used"] == 15
    assert totals["total_cost_usd"] == 0.75


def test_hit_counter_counts_and_restarts_stale_window(store):
    assert store.hit_counter("user:u1", 30) == 1
    assert store.hit_counter("user:u1", 30) == 2
    assert store.hit_counter("user:u2", 30) == 1

    with store._connect() as conn:
        conn.execute(
            "UPDATE request_counters SET window_start = ? WHERE key = ?",
            (_hours_ago(2), "user:u1"),
        )
    assert store.hit_counter("user:u1", 30) == 1
    assert store.hit_counter("user:u1", 30) == 2
