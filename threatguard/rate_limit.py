"""
rate_limit.py — Fixed-window per-(caller, endpoint) quotas
==========================================================
Window boundaries are ``floor(now / window) * window``, so every instance
computes the same key for the same moment. The read-check-increment is a
single conditional upsert in the store; the limiter itself holds no state.

When the store is unreachable the result is *degraded*: allowed in
fail-open mode, denied in fail-closed mode, and always carrying a warning.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from .clock import seconds_until, utcnow, window_start
from .detection.rules import RuleSet
from .store import SecurityStore, StoreError

logger = logging.getLogger("threatguard.ratelimit")


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in_seconds: int
    limit: int
    degraded: bool = False
    warning: Optional[str] = None


class RateLimiter:

    def __init__(
        self,
        rules: RuleSet,
        store: SecurityStore,
        clock: Callable[[], datetime] = utcnow,
        fail_open: bool = True,
    ) -> None:
        self.rules = rules
        self._store = store
        self._clock = clock
        self._fail_open = fail_open

    def check_and_consume(self, caller: str, endpoint: str) -> RateLimitResult:
        quota = self.rules.quota_for(endpoint)
        now = self._clock()
        start = window_start(now, quota.window_seconds)
        reset_in = seconds_until(now, start + timedelta(seconds=quota.window_seconds))

        try:
            count = self._store.increment_window(caller, endpoint, start, quota.requests)
        except StoreError as exc:
            logger.warning("Rate limit check failed for %s on %s: %s", caller, endpoint, exc)
            return RateLimitResult(
                allowed=self._fail_open,
                remaining=quota.requests if self._fail_open else 0,
                reset_in_seconds=quota.window_seconds,
                limit=quota.requests,
                degraded=True,
                warning=f"rate limit store unavailable: {exc}",
            )

        if count is None:
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_in_seconds=reset_in,
                limit=quota.requests,
            )
        return RateLimitResult(
            allowed=True,
            remaining=max(0, quota.requests - count),
            reset_in_seconds=reset_in,
            limit=quota.requests,
        )
