"""Rolling-window circuit breaker for remote rate limiting.

Tracks the share of rate-limited (429) responses over the last uploads
and moves through CLOSED -> OPEN -> HALF_OPEN. While the breaker is OPEN
the sync engine skips its ticks instead of hammering the remote.
"""

from __future__ import annotations

import collections
import logging
import time
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class RollingWindowCircuitBreaker:
    """Circuit breaker over a rolling window of recent upload outcomes.

    Trips to OPEN when the 429 rate in the last *window_size* outcomes
    exceeds *error_threshold*, or after *consecutive_threshold* 429s in a
    row. After *cooldown_seconds* it turns HALF_OPEN and lets one trial
    request through: success closes it, another 429 re-opens it.
    """

    def __init__(
        self,
        window_size: int = 20,
        error_threshold: float = 0.25,
        consecutive_threshold: int = 3,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window: collections.deque[bool] = collections.deque(maxlen=window_size)
        self._error_threshold = error_threshold
        self._consecutive_threshold = consecutive_threshold
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._opened_at: float | None = None
        self._consecutive_429s = 0

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_success(self) -> None:
        self._window.append(True)
        self._consecutive_429s = 0
        if self.state == CircuitState.HALF_OPEN:
            logger.info("Circuit breaker HALF_OPEN -> CLOSED after successful trial request")
            self._state = CircuitState.CLOSED
            self._window.clear()

    def record_429(self) -> None:
        self._window.append(False)
        self._consecutive_429s += 1
        if self.state == CircuitState.HALF_OPEN or self._should_trip():
            self._trip()

    def record_error(self) -> None:
        """Record a non-429 failure. Does not move the breaker."""
        self._consecutive_429s = 0
        logger.debug("Circuit breaker recorded non-429 error (state=%s)", self._state.value)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        """Current state, turning OPEN into HALF_OPEN once the cooldown elapsed."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            elapsed = self._clock() - self._opened_at
            if elapsed >= self._cooldown_seconds:
                logger.info("Circuit breaker OPEN -> HALF_OPEN after %.1fs cooldown", elapsed)
                self._state = CircuitState.HALF_OPEN
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def error_rate(self) -> float:
        """Fraction of 429s in the current window."""
        if not self._window:
            return 0.0
        return sum(1 for ok in self._window if not ok) / len(self._window)

    def _should_trip(self) -> bool:
        return (
            self.error_rate > self._error_threshold
            or self._consecutive_429s >= self._consecutive_threshold
        )

    def _trip(self) -> None:
        prev = self._state
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        logger.warning(
            "Circuit breaker %s -> OPEN (error_rate=%.2f, consecutive_429s=%d)",
            prev.value,
            self.error_rate,
            self._consecutive_429s,
        )
