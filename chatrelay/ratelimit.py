"""
Fixed-window request counters, one per user or client IP.

This is coarse throttling only. Two overlapping completions in the same
conversation are not prevented.
"""

from __future__ import annotations

import logging

from chatrelay.errors import RateLimitError
from chatrelay.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)


class RateLimiter:
    """max_requests per window_minutes per key; max_requests=0 counts without limiting."""

    def __init__(self, sqlite: SQLiteStore, max_requests: int = 0, window_minutes: int = 30):
        self.sqlite = sqlite
        self.max_requests = max_requests
        self.window_minutes = window_minutes

    def hit(self, key: str) -> int:
        """Count a request for key. Raises RateLimitError when over the limit."""
        count = self.sqlite.hit_counter(key, self.window_minutes)
        if self.max_requests and count > self.max_requests:
            logger.warning("Rate limit exceeded for %s (%d/%d)", key, count, self.max_requests)
            raise RateLimitError(
                f"Rate limit exceeded. Please wait {self.window_minutes} minutes."
            )
        return count
