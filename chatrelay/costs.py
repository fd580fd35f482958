"""
Cost Tracking: know what each user is spending.

Token counts come from the streaming pipeline (one upstream chunk ~ one
token). Each completed stream becomes one usage record plus an atomic
increment of the user's running totals.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Mapping

from chatrelay.errors import PricingError
from chatrelay.storage.models import UsageRecord
from chatrelay.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

# USD per million tokens
DEFAULT_PRICING: dict[str, float] = {
    "gpt-4o": 2.5,
    "gpt-4o-mini": 0.6,
    "gpt-3.5-turbo": 0.5,
    "sonar-reasoning": 8.0,
    "sonar-reasoning-pro": 8.0,
    "pplx-70b-chat": 7.0,
    "mixtral-8x7b-instruct": 4.0,
    "claude-3-sonnet": 3.0,
    "claude-3-haiku": 0.25,
    "gemini-pro": 0.002,
    "deepseek-v3": 2.0,
    "deepseek-v3.5": 2.0,
}

PROMPT_EXCERPT_CHARS = 1000


def compute_cost(tokens_used: int, price_per_million: float) -> float:
    return tokens_used / 1_000_000 * price_per_million


class CostTracker:
    """Price lookup, usage recording and per-user summaries."""

    def __init__(self, sqlite: SQLiteStore, pricing: Mapping[str, float] | None = None):
        self.sqlite = sqlite
        table = dict(DEFAULT_PRICING)
        table.update({k: float(v) for k, v in (pricing or {}).items()})
        self.pricing = MappingProxyType(table)

    def price_for(self, model: str) -> float:
        try:
            return self.pricing[model]
        except KeyError:
            raise PricingError(model) from None

    def record_usage(
        self,
        user_id: str,
        model: str,
        tokens_used: int,
        prompt: str | None = None,
        response_time_ms: int = 0,
    ) -> UsageRecord:
        """
        Price one completion, store its usage record and add it to the
        user's totals. Calling twice records two completions.
        """
        cost = compute_cost(tokens_used, self.price_for(model))
        record = UsageRecord(
            user_id=user_id,
            model=model,
            tokens_used=tokens_used,
            cost_usd=cost,
            prompt=prompt[:PROMPT_EXCERPT_CHARS] if prompt else prompt,
            response_time_ms=response_time_ms,
        )
        self.sqlite.insert_usage(record)
        self.sqlite.increment_user_totals(user_id, tokens_used, cost)
        logger.info(
            "Usage recorded: user=%s model=%s tokens=%d cost=$%.6f",
            user_id, model, tokens_used, cost,
        )
        return record

    def get_user_summary(self, user_id: str) -> dict:
        """
        Fold a user's usage records into per-model and grand totals.

        Returns:
            {
                "user_id": "u1",
                "total_tokens": 1200,
                "total_cost_usd": 0.003,
                "requests": 4,
                "by_model": {"gpt-4o": {"tokens": 1000, "cost_usd": 0.0025, "requests": 3}, ...},
            }
        """
        by_model: dict[str, dict] = {}
        total_tokens = 0
        total_cost = 0.0
        records = self.sqlite.get_usage_records(user_id)
        for rec in records:
            entry = by_model.setdefault(rec.model, {"tokens": 0, "cost_usd": 0.0, "requests": 0})
            entry["tokens"] += rec.tokens_used
            entry["cost_usd"] += rec.cost_usd
            entry["requests"] += 1
            total_tokens += rec.tokens_used
            total_cost += rec.cost_usd

        for entry in by_model.values():
            entry["cost_usd"] = round(entry["cost_usd"], 6)

        return {
            "user_id": user_id,
            "total_tokens": total_tokens,
            "total_cost_usd": round(total_cost, 6),
            "requests": len(records),
            "by_model": by_model,
        }
