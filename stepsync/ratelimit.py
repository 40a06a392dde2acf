"""
Rate limiter — cap how many turns may reach the LLM provider.

Three limits, all over a one-hour window:
  global     calls from every user together (sliding window)
  per user   calls from one user (sliding window)
  cost       estimated spend in USD (fixed window, resets hourly)

The orchestrator asks acquire() once per non-template turn, before the
provider path. A refused turn gets the intent's canned reply and costs
nothing. A granted call is counted at once, so concurrent turns cannot
overshoot a limit between the check and the record.

Example:
    limiter = RateLimiter(max_calls_per_hour=100, max_calls_per_user_per_hour=20)
    refusal = limiter.acquire("session-1")
    if refusal:
        ...  # template fallback
    else:
        ...  # call the provider, then:
        limiter.record_cost(0.0002)
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable

from stepsync.config import get_section

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 3600.0


class RateLimiter:
    """Sliding-window call caps plus an hourly cost budget."""

    def __init__(
        self,
        max_calls_per_hour: int = 100,
        max_calls_per_user_per_hour: int = 50,
        max_hourly_cost: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_calls_per_hour = max_calls_per_hour
        self.max_calls_per_user_per_hour = max_calls_per_user_per_hour
        self.max_hourly_cost = max_hourly_cost
        self._clock = clock
        self._lock = threading.Lock()
        self._reset_state()

    @classmethod
    def from_config(cls) -> "RateLimiter | None":
        """Create the limiter if rate_limit is enabled in config.yaml, else None."""
        r_cfg = get_section("rate_limit")
        if not r_cfg.get("enabled", False):
            return None
        return cls(
            max_calls_per_hour=int(r_cfg.get("max_calls_per_hour", 100)),
            max_calls_per_user_per_hour=int(r_cfg.get("max_calls_per_user_per_hour", 50)),
            max_hourly_cost=float(r_cfg.get("max_hourly_cost", 10.0)),
        )

    def _reset_state(self):
        self._global_calls: deque[float] = deque()
        self._user_calls: dict[str, deque[float]] = {}
        self._cost = 0.0
        self._cost_window_start = self._clock()
        self._refused = 0

    def _prune(self, now: float):
        """Caller must hold self._lock."""
        cutoff = now - WINDOW_SECONDS
        while self._global_calls and self._global_calls[0] <= cutoff:
            self._global_calls.popleft()
        for user_id in list(self._user_calls):
            calls = self._user_calls[user_id]
            while calls and calls[0] <= cutoff:
                calls.popleft()
            if not calls:
                del self._user_calls[user_id]
        if now - self._cost_window_start >= WINDOW_SECONDS:
            self._cost = 0.0
            self._cost_window_start = now

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def acquire(self, user_id: str) -> str | None:
        """
        Claim one call for user_id.

        Returns None if the call may go ahead (and counts it), otherwise a
        short reason naming the limit that was hit.
        """
        with self._lock:
            now = self._clock()
            self._prune(now)
            user_calls = self._user_calls.get(user_id, ())

            if len(self._global_calls) >= self.max_calls_per_hour:
                reason = "global hourly call limit"
            elif len(user_calls) >= self.max_calls_per_user_per_hour:
                reason = "per-user hourly call limit"
            elif self._cost >= self.max_hourly_cost:
                reason = "hourly cost limit"
            else:
                self._global_calls.append(now)
                self._user_calls.setdefault(user_id, deque()).append(now)
                return None
            self._refused += 1

        logger.warning("Rate limit hit for %s: %s", user_id[:16], reason)
        return reason

    def record_cost(self, cost: float):
        """Add the estimated cost of a completed call."""
        with self._lock:
            self._prune(self._clock())
            self._cost += cost
            total = self._cost
        if total >= self.max_hourly_cost:
            logger.warning(
                "Hourly LLM budget used up: $%.4f of $%.2f", total, self.max_hourly_cost
            )

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> dict:
        with self._lock:
            now = self._clock()
            self._prune(now)
            return {
                "calls_in_last_hour": len(self._global_calls),
                "max_calls_per_hour": self.max_calls_per_hour,
                "active_users": len(self._user_calls),
                "refused_calls": self._refused,
                "total_cost_usd": round(self._cost, 6),
                "remaining_budget_usd": round(max(self.max_hourly_cost - self._cost, 0.0), 6),
                "cost_resets_in": round(WINDOW_SECONDS - (now - self._cost_window_start), 1),
            }

    def get_user_stats(self, user_id: str) -> dict:
        with self._lock:
            self._prune(self._clock())
            used = len(self._user_calls.get(user_id, ()))
        return {
            "user_id": user_id,
            "calls_in_last_hour": used,
            "remaining_calls_this_hour": max(self.max_calls_per_user_per_hour - used, 0),
        }

    def reset(self):
        logger.info("Rate limiter reset")
        with self._lock:
            self._reset_state()
