"""
Circuit breaker — stop hammering a provider that keeps failing.

States:
  CLOSED     normal operation; consecutive failures are counted
  OPEN       every call is rejected without running the operation
  HALF_OPEN  trial calls; successes close, any failure reopens

One breaker instance is owned per provider and shared by every in-flight
turn. State and counters change under a lock that is never held across an
await, so concurrent failures trip the breaker exactly once and metrics stay
exact.

Example:
    breaker = CircuitBreaker(name="groq", failure_threshold=5)
    try:
        text = await breaker.execute(lambda: provider_call())
    except CircuitOpenError as e:
        # fast fail, nothing was sent; e.retry_after seconds to wait
        ...
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Awaitable, Callable

from stepsync.config import get_section

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised instead of calling the operation while the breaker is open."""

    def __init__(self, name: str, next_attempt_time: float, retry_after: float):
        self.name = name
        self.next_attempt_time = next_attempt_time
        self.retry_after = retry_after
        super().__init__(
            f"Circuit '{name}' is open (retry after {retry_after:.1f}s)"
        )


@dataclass
class BreakerMetrics:
    """Cumulative counts; only reset() clears them."""
    state: str
    total_calls: int
    successful_calls: int
    failed_calls: int
    rejected_calls: int
    cancelled_calls: int
    failure_rate: float
    window_failure_rate: float
    consecutive_failures: int
    consecutive_successes: int
    last_failure_time: float | None
    last_state_change: float | None

    def to_dict(self) -> dict:
        return asdict(self)


class CircuitBreaker:
    """Three-state breaker around an arbitrary async operation."""

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,
        success_threshold: int = 2,
        timeout: float = 60.0,
        window_size: int = 10,
        timeout_failure_weight: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1 or success_threshold < 1:
            raise ValueError("thresholds must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout = timeout
        self.window_size = window_size
        self.timeout_failure_weight = timeout_failure_weight
        self._clock = clock
        self._lock = threading.Lock()
        self._reset_state()

    @classmethod
    def from_config(cls, name: str = "default") -> "CircuitBreaker":
        """Create a CircuitBreaker from config.yaml settings."""
        b_cfg = get_section("breaker")
        return cls(
            name=name,
            failure_threshold=int(b_cfg.get("failure_threshold", 5)),
            success_threshold=int(b_cfg.get("success_threshold", 2)),
            timeout=float(b_cfg.get("timeout", 60)),
            window_size=int(b_cfg.get("window_size", 10)),
            timeout_failure_weight=float(b_cfg.get("timeout_failure_weight", 1.0)),
        )

    def _reset_state(self):
        self._state = CircuitState.CLOSED
        self._opened_at: float | None = None
        self._last_state_change: float | None = self._clock()
        self._last_failure_time: float | None = None
        self._consecutive_failures = 0.0
        self._consecutive_successes = 0
        self._total_calls = 0
        self._successful_calls = 0
        self._failed_calls = 0
        self._rejected_calls = 0
        self._cancelled_calls = 0
        self._window: deque[bool] = deque(maxlen=self.window_size)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run operation() under the breaker.

        Raises CircuitOpenError without calling operation while open.
        Any exception from operation counts as a failure and is re-raised.
        """
        self._before_call()
        try:
            result = await operation()
        except asyncio.CancelledError:
            # Caller went away; the provider's health is unknown
            with self._lock:
                self._cancelled_calls += 1
            raise
        except asyncio.TimeoutError as e:
            self._on_failure(e, weight=self.timeout_failure_weight)
            raise
        except Exception as e:
            self._on_failure(e)
            raise
        self._on_success()
        return result

    def _before_call(self):
        with self._lock:
            self._total_calls += 1
            if self._state is not CircuitState.OPEN:
                return

            now = self._clock()
            next_attempt = self._next_attempt_time()
            if now >= next_attempt:
                self._transition(CircuitState.HALF_OPEN)
                return

            self._rejected_calls += 1
            retry_after = next_attempt - now
        logger.warning(
            "Circuit '%s' open, rejecting call (retry in %.1fs)", self.name, retry_after
        )
        raise CircuitOpenError(self.name, next_attempt, retry_after)

    def _next_attempt_time(self) -> float:
        opened = self._opened_at if self._opened_at is not None else self._clock()
        return opened + self.timeout

    def _on_success(self):
        with self._lock:
            self._successful_calls += 1
            self._window.append(True)
            self._consecutive_failures = 0

            if self._state is CircuitState.HALF_OPEN:
                self._consecutive_successes += 1
                logger.debug(
                    "Circuit '%s' half-open: success %d/%d",
                    self.name, self._consecutive_successes, self.success_threshold,
                )
                if self._consecutive_successes >= self.success_threshold:
                    self._transition(CircuitState.CLOSED)

    def _on_failure(self, error: BaseException, weight: float = 1.0):
        with self._lock:
            self._failed_calls += 1
            self._window.append(False)
            self._last_failure_time = self._clock()
            self._consecutive_successes = 0

            if self._state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif self._state is CircuitState.CLOSED:
                self._consecutive_failures += weight
                logger.warning(
                    "Circuit '%s' failure %g/%d: %s",
                    self.name, self._consecutive_failures, self.failure_threshold,
                    type(error).__name__,
                )
                if self._consecutive_failures >= self.failure_threshold:
                    self._transition(CircuitState.OPEN)

    def _transition(self, state: CircuitState):
        """Caller must hold self._lock."""
        previous = self._state
        self._state = state
        self._last_state_change = self._clock()
        self._consecutive_successes = 0
        if state is CircuitState.OPEN:
            self._opened_at = self._last_state_change
            logger.error(
                "Circuit '%s': %s → OPEN (next attempt in %.0fs)",
                self.name, previous.value.upper(), self.timeout,
            )
        elif state is CircuitState.CLOSED:
            self._opened_at = None
            self._consecutive_failures = 0
            logger.info("Circuit '%s': %s → CLOSED", self.name, previous.value.upper())
        else:
            self._consecutive_failures = 0
            logger.info("Circuit '%s': OPEN → HALF_OPEN (testing recovery)", self.name)

    # ------------------------------------------------------------------
    # Inspection and manual overrides
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def next_attempt_time(self) -> float | None:
        with self._lock:
            if self._state is not CircuitState.OPEN:
                return None
            return self._next_attempt_time()

    @property
    def consecutive_failures(self) -> float:
        with self._lock:
            return self._consecutive_failures

    def get_metrics(self) -> BreakerMetrics:
        with self._lock:
            total = self._total_calls
            # Cancelled calls have no outcome, so they stay out of the rate
            decided = total - self._cancelled_calls
            window = list(self._window)
            return BreakerMetrics(
                state=self._state.value,
                total_calls=total,
                successful_calls=self._successful_calls,
                failed_calls=self._failed_calls,
                rejected_calls=self._rejected_calls,
                cancelled_calls=self._cancelled_calls,
                failure_rate=self._failed_calls / decided if decided else 0.0,
                window_failure_rate=(
                    window.count(False) / len(window) if window else 0.0
                ),
                consecutive_failures=int(self._consecutive_failures),
                consecutive_successes=self._consecutive_successes,
                last_failure_time=self._last_failure_time,
                last_state_change=self._last_state_change,
            )

    def force_open(self):
        """Manual override: reject calls for the next `timeout` seconds."""
        logger.warning("Circuit '%s': FORCED OPEN", self.name)
        with self._lock:
            self._transition(CircuitState.OPEN)

    def force_closed(self):
        logger.info("Circuit '%s': FORCED CLOSED", self.name)
        with self._lock:
            self._transition(CircuitState.CLOSED)

    def reset(self):
        """Back to CLOSED with all counters and metrics cleared."""
        logger.info("Circuit '%s': RESET", self.name)
        with self._lock:
            self._reset_state()

    def to_dict(self) -> dict:
        data = self.get_metrics().to_dict()
        data["name"] = self.name
        data["next_attempt_time"] = self.next_attempt_time
        return data
