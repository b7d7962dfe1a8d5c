"""Request pacing for remote uploads.

Named tiers set the sustained request rate. The limiter stretches the
interval while the circuit breaker is not closed and honours a
``Retry-After`` hint from the last response.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping

from memorybook.remote.circuit_breaker import CircuitState, RollingWindowCircuitBreaker

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tier definitions
# ---------------------------------------------------------------------------

RATE_LIMIT_TIERS: dict[str, int] = {
    "conservative": 6,
    "standard": 60,
    "burst": 600,
}


@dataclass
class RateLimiterConfig:
    """Pacing settings derived from a named tier.

    Attributes:
        tier: One of ``conservative``, ``standard``, ``burst``.
        rpm: Requests per minute for the tier.
    """

    tier: str = "standard"
    rpm: int = field(init=False)

    def __post_init__(self) -> None:
        rpm = RATE_LIMIT_TIERS.get(self.tier)
        if rpm is None:
            raise ValueError(
                f"Unknown rate limit tier {self.tier!r}. "
                f"Choose from: {', '.join(RATE_LIMIT_TIERS)}"
            )
        self.rpm = rpm

    @property
    def min_request_interval(self) -> float:
        return 60.0 / self.rpm


class AdaptiveRateLimiter:
    """Spaces requests according to the tier and the breaker state.

    * CLOSED -- the tier's ``min_request_interval``.
    * OPEN -- three times the interval.
    * HALF_OPEN -- one and a half times the interval.

    Only the time still missing since the previous request is slept.
    """

    def __init__(
        self,
        config: RateLimiterConfig,
        circuit_breaker: RollingWindowCircuitBreaker,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._circuit_breaker = circuit_breaker
        self._clock = clock
        self._last_request_at: float | None = None
        self._retry_after: float = 0.0

    def current_interval(self) -> float:
        base = self._config.min_request_interval
        state = self._circuit_breaker.state
        if state == CircuitState.OPEN:
            base *= 3.0
        elif state == CircuitState.HALF_OPEN:
            base *= 1.5
        return max(base, self._retry_after)

    async def wait_if_needed(self) -> None:
        """Sleep until the next request is allowed, then mark it sent."""
        interval = self.current_interval()
        if self._last_request_at is not None:
            delay = interval - (self._clock() - self._last_request_at)
            if delay > 0:
                logger.debug(
                    "Rate limiter: sleeping %.2fs (state=%s)",
                    delay,
                    self._circuit_breaker.state.value,
                )
                await asyncio.sleep(delay)
        self._retry_after = 0.0
        self._last_request_at = self._clock()

    def observe_headers(self, headers: Mapping[str, str] | None) -> None:
        """Record a ``Retry-After`` hint (seconds) from a response."""
        if headers is None:
            return
        value = headers.get("retry-after")
        if value is None:
            return
        try:
            self._retry_after = max(0.0, float(value))
            logger.debug("Observed Retry-After: %.1fs", self._retry_after)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-numeric Retry-After header %r", value)
