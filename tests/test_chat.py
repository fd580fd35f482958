"""
Tests for the streaming completion pipeline.
Real SQLite store per test; providers are scripted stubs.
"""

import asyncio
import sqlite3
from unittest.mock import MagicMock, patch

import pytest

from chatrelay.chat import ChatService
from chatrelay.costs import CostTracker
from chatrelay.errors import ConversationNotFoundError, ProviderError, UnsupportedModelError
from chatrelay.providers.registry import ProviderRegistry


@pytest.fixture
def service(store, make_provider):
    stub = make_provider(tokens=["Hi", " there"])
    registry = ProviderRegistry([stub])
    tracker = CostTracker(store, pricing={"stub-model": 1.0})
    svc = ChatService(store, registry, cost_tracker=tracker, default_model="stub-model")
    svc.stub = stub
    return svc


def _assistant_messages(store, conv_id):
    return [m for m in store.get_messages(conv_id) if m.role == "assistant"]


@pytest.mark.asyncio
async def test_tokens_reach_sink_in_order(store, make_provider):
    stub = make_provider(tokens=["Hel", "lo"])
    svc = ChatService(store, ProviderRegistry([stub]))
    conv = svc.get_or_create_conversation(None, "u1")
    svc.add_user_message(conv.id, "hello?")

    seen = []
    count = await svc.stream_chat_completion(conv.id, "stub-model", seen.append)

    assert seen == ["Hel", "lo"]
    assert count == 2
    assert _assistant_messages(store, conv.id)[0].content == "Hello"


@pytest.mark.asyncio
async def test_end_to_end_persists_reply_and_usage(service, store):
    conv = service.get_or_create_conversation("c1", "u1")
    service.add_user_message(conv.id, "greet me")

    seen = []
    count = await service.stream_chat_completion(conv.id, "stub-model", seen.append, user_id="u1")

    assert "".join(seen) == "Hi there"
    assert count == 2
    messages = store.get_messages("c1")
    assert [(m.role, m.content) for m in messages] == [("user", "greet me"), ("assistant", "Hi there")]

    records = store.get_usage_records("u1")
    assert len(records) == 1
    assert records[0].model == "stub-model"
    assert records[0].tokens_used == 2
    assert records[0].cost_usd == pytest.approx(2 / 1_000_000)
    assert records[0].prompt == "greet me"
    assert store.get_user_totals("u1")["total_tokens_used"] == 2


@pytest.mark.asyncio
async def test_provider_receives_history(service):
    conv = service.get_or_create_conversation("c1", "u1")
    service.add_user_message(conv.id, "first")
    await service.stream_chat_completion(conv.id, "stub-model", lambda t: None, max_tokens=42)

    call = service.stub.calls[0]
    assert call["messages"] == [{"role": "user", "content": "first"}]
    assert call["model"] == "stub-model"
    assert call["max_tokens"] == 42


@pytest.mark.asyncio
async def test_mid_stream_failure_persists_nothing(store, make_provider):
    stub = make_provider(tokens=["Hel", "lo"], fail_after=1)
    tracker = CostTracker(store, pricing={"stub-model": 1.0})
    svc = ChatService(store, ProviderRegistry([stub]), cost_tracker=tracker)
    conv = svc.get_or_create_conversation("c1", "u1")
    svc.add_user_message(conv.id, "hi")

    seen = []
    with pytest.raises(ProviderError):
        await svc.stream_chat_completion(conv.id, "stub-model", seen.append, user_id="u1")

    assert seen == ["Hel"]
    assert _assistant_messages(store, "c1") == []
    assert store.get_usage_records("u1") == []
    assert store.get_user_totals("u1")["total_tokens_used"] == 0


@pytest.mark.asyncio
async def test_cancelled_stream_persists_nothing(store, make_provider):
    stub = make_provider(tokens=["Hel", "lo"], block_after=1)
    tracker = CostTracker(store, pricing={"stub-model": 1.0})
    svc = ChatService(store, ProviderRegistry([stub]), cost_tracker=tracker)
    conv = svc.get_or_create_conversation("c1", "u1")
    svc.add_user_message(conv.id, "hi")

    seen = []
    task = asyncio.create_task(
        svc.stream_chat_completion(conv.id, "stub-model", seen.append, user_id="u1")
    )
    while not seen:
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert seen == ["Hel"]
    assert stub.closed
    assert _assistant_messages(store, "c1") == []
    assert store.get_usage_records("u1") == []
    assert store.get_user_totals("u1")["total_tokens_used"] == 0


@pytest.mark.asyncio
async def test_unknown_model_never_calls_provider(service):
    conv = service.get_or_create_conversation("c1", "u1")
    seen = []
    with pytest.raises(UnsupportedModelError):
        await service.stream_chat_completion(conv.id, "no-such-model", seen.append, user_id="u1")
    assert seen == []
    assert service.stub.calls == []


@pytest.mark.asyncio
async def test_missing_price_does_not_fail_chat(store, make_provider):
    stub = make_provider(tokens=["ok"])
    svc = ChatService(store, ProviderRegistry([stub]), cost_tracker=CostTracker(store))
    conv = svc.get_or_create_conversation("c1", "u1")
    svc.add_user_message(conv.id, "hi")

    count = await svc.stream_chat_completion(conv.id, "stub-model", lambda t: None, user_id="u1")

    assert count == 1
    assert _assistant_messages(store, "c1")[0].content == "ok"
    assert store.get_usage_records("u1") == []


@pytest.mark.asyncio
async def test_empty_reply_is_not_stored(store, make_provider):
    stub = make_provider(tokens=["  "])
    svc = ChatService(store, ProviderRegistry([stub]), cost_tracker=MagicMock())
    conv = svc.get_or_create_conversation("c1", "u1")

    await svc.stream_chat_completion(conv.id, "stub-model", lambda t: None, user_id="u1")

    assert _assistant_messages(store, "c1") == []
    svc.cost_tracker.record_usage.assert_not_called()


@pytest.mark.asyncio
async def test_store_failure_is_reraised(service, store):
    conv = service.get_or_create_conversation("c1", "u1")
    service.add_user_message(conv.id, "hi")
    with patch.object(store, "add_message", side_effect=sqlite3.OperationalError("database is locked")):
        with pytest.raises(sqlite3.OperationalError):
            await service.stream_chat_completion(conv.id, "stub-model", lambda t: None, user_id="u1")
    assert store.get_usage_records("u1") == []


@pytest.mark.asyncio
async def test_stream_completion_without_conversation(service, store):
    """Raw history in, tokens out, usage billed, nothing stored as a message."""
    seen = []
    count = await service.stream_completion(
        [{"role": "user", "content": "hey"}], "stub-model", seen.append, user_id="u2",
    )
    assert count == 2
    assert seen == ["Hi", " there"]
    assert store.list_conversations("u2") == []
    assert len(store.get_usage_records("u2")) == 1


@pytest.mark.asyncio
async def test_usage_calls_accumulate(service, store):
    conv = service.get_or_create_conversation("c1", "u1")
    service.add_user_message(conv.id, "one")
    await service.stream_chat_completion(conv.id, "stub-model", lambda t: None, user_id="u1")
    await service.stream_chat_completion(conv.id, "stub-model", lambda t: None, user_id="u1")
    assert len(store.get_usage_records("u1")) == 2
    assert store.get_user_totals("u1")["total_tokens_used"] == 4


def test_get_conversation_enforces_owner(service):
    service.get_or_create_conversation("c1", "u1")
    assert service.get_conversation("c1", user_id="u1").id == "c1"
    with pytest.raises(ConversationNotFoundError):
        service.get_conversation("c1", user_id="u2")


def test_reset_conversation(service, store):
    service.get_or_create_conversation("c1", "u1")
    service.add_user_message("c1", "hi")
    service.reset_conversation("c1")
    assert store.get_conversation("c1") is None
    assert store.get_messages("c1") == []
    with pytest.raises(ConversationNotFoundError):
        service.reset_conversation("c1")
