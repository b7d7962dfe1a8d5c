"""Remote stores for exported bundles."""

from memorybook.remote.base import RemoteStore, SupportsDelete
from memorybook.remote.circuit_breaker import CircuitState, RollingWindowCircuitBreaker
from memorybook.remote.drive import DriveRemoteStore
from memorybook.remote.local import LocalFolderStore
from memorybook.remote.rate_limiter import AdaptiveRateLimiter, RateLimiterConfig

__all__ = [
    "AdaptiveRateLimiter",
    "CircuitState",
    "DriveRemoteStore",
    "LocalFolderStore",
    "RateLimiterConfig",
    "RemoteStore",
    "RollingWindowCircuitBreaker",
    "SupportsDelete",
]
