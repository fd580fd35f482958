"""
Tests for usage and cost accounting.
"""

import pytest

from chatrelay.costs import DEFAULT_PRICING, PROMPT_EXCERPT_CHARS, CostTracker, compute_cost
from chatrelay.errors import PricingError


@pytest.fixture
def tracker(store):
    return CostTracker(store, pricing={"test-model": 2.5})


def test_compute_cost():
    assert compute_cost(1_000_000, 2.5) == pytest.approx(2.5)
    assert compute_cost(0, 2.5) == 0
    assert compute_cost(500, 8.0) == pytest.approx(0.004)


def test_price_lookup_and_overrides(store):
    tracker = CostTracker(store, pricing={"gpt-4o": 3.0, "custom": 1})
    assert tracker.price_for("gpt-4o") == 3.0
    assert tracker.price_for("custom") == 1.0
    assert tracker.price_for("claude-3-haiku") == DEFAULT_PRICING["claude-3-haiku"]
    with pytest.raises(PricingError, match="no-price-model"):
        tracker.price_for("no-price-model")


def test_pricing_table_is_read_only(tracker):
    with pytest.raises(TypeError):
        tracker.pricing["test-model"] = 0.0


def test_record_usage_stores_record_and_totals(tracker, store):
    record = tracker.record_usage("u1", "test-model", 1_000_000, prompt="hi", response_time_ms=120)
    assert record.cost_usd == pytest.approx(2.5)
    assert record.status == "completed"

    stored = store.get_usage_records("u1")
    assert len(stored) == 1
    assert stored[0].id == record.id
    assert stored[0].prompt == "hi"
    assert stored[0].response_time_ms == 120

    totals = store.get_user_totals("u1")
    assert totals["total_tokens_used"] == 1_000_000
    assert totals["total_cost_usd"] == pytest.approx(2.5)


def test_record_usage_twice_is_additive(tracker, store):
    tracker.record_usage("u1", "test-model", 100)
    tracker.record_usage("u1", "test-model", 300)

    assert len(store.get_usage_records("u1")) == 2
    totals = store.get_user_totals("u1")
    assert totals["total_tokens_used"] == 400
    assert totals["total_cost_usd"] == pytest.approx(compute_cost(400, 2.5))


def test_zero_tokens_costs_nothing(tracker, store):
    record = tracker.record_usage("u1", "test-model", 0)
    assert record.cost_usd == 0
    assert store.get_user_totals("u1")["total_tokens_used"] == 0


def test_unpriced_model_records_nothing(tracker, store):
    with pytest.raises(PricingError):
        tracker.record_usage("u1", "mystery", 10)
    assert store.get_usage_records("u1") == []


def test_prompt_excerpt_is_truncated(tracker, store):
    tracker.record_usage("u1", "test-model", 1, prompt="x" * (PROMPT_EXCERPT_CHARS + 50))
    assert len(store.get_usage_records("u1")[0].prompt) == PROMPT_EXCERPT_CHARS


def test_user_summary(tracker):
    tracker.record_usage("u1", "test-model", 1000)
    tracker.record_usage("u1", "test-model", 1000)
    tracker.record_usage("u1", "gpt-4o", 400)
    tracker.record_usage("u2", "gpt-4o", 999)

    summary = tracker.get_user_summary("u1")
    assert summary["user_id"] == "u1"
    assert summary["requests"] == 3
    assert summary["total_tokens"] == 2400
    assert summary["by_model"]["test-model"] == {
        "tokens": 2000, "cost_usd": round(compute_cost(2000, 2.5), 6), "requests": 2,
    }
    assert summary["by_model"]["gpt-4o"]["requests"] == 1
    assert summary["total_cost_usd"] == pytest.approx(
        compute_cost(2000, 2.5) + compute_cost(400, DEFAULT_PRICING["gpt-4o"]), abs=1e-6
    )


def test_user_summary_empty(tracker):
    summary = tracker.get_user_summary("nobody")
    assert summary["requests"] == 0
    assert summary["total_tokens"] == 0
    assert summary["by_model"] == {}
