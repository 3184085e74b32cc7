# === NAVMAP v1 ===
# {
#   "module": "GlobalGuard.__init__",
#   "purpose": "Distributed rate limiting and circuit breaking over a shared state store.",
#   "sections": []
# }
# === /NAVMAP ===

"""Distributed rate limiting and circuit breaking over a shared state store.

Independent replicas enforce ONE global limit and ONE global trip decision by
keeping every counter in an external key-value store (Redis across hosts,
SQLite across processes on one host, memory for a single process).

Architecture:
- Admission drivers (sliding window counter, leaky bucket) answer "may this
  call proceed?"
- A multi-window failure sampler feeds a Closed/Open/HalfOpen circuit breaker
- Policies run caller actions under a limiter and/or breaker
- Every decision is one atomic store transaction; nothing is cached in-process

Modules:
- store, sqlite_state_store, redis_state_store: shared state backends
- windows: pure window arithmetic
- drivers: admission drivers
- sampler, breakers: failure sampling and the circuit state machine
- policy: execute() wrappers and error filters
- bootstrap: build everything from a GuardConfig
- cli: operator commands

Example:
    >>> from GlobalGuard import GuardRegistry, load_config
    >>> guards = GuardRegistry.from_config(load_config("globalguard.yaml"))
    >>> await guards.guarded(limiter="api", breaker="payments").execute(call)
"""

from GlobalGuard.bootstrap import GuardRegistry
from GlobalGuard.breakers import CircuitBreaker, CircuitSnapshot, LoggingBreakerListener
from GlobalGuard.config import GuardConfig, load_config
from GlobalGuard.drivers import (
    AdmissionDecision,
    AdmissionDriver,
    LeakyBucketDriver,
    SlidingWindowCounterDriver,
    build_driver,
)
from GlobalGuard.errors import (
    CircuitOpenError,
    GuardError,
    RateLimitExceeded,
    StoreContentionError,
    StoreUnavailableError,
    ThresholdRangeError,
)
from GlobalGuard.policy import (
    CircuitBreakerPolicy,
    RateLimiterPolicy,
    handle_all,
    handle_type,
    handle_when,
    wrap,
)
from GlobalGuard.sampler import SamplingBreaker
from GlobalGuard.store import InMemoryStateStore, StateStore, build_store
from GlobalGuard.types import CircuitState

__all__ = [
    # Store
    "StateStore",
    "InMemoryStateStore",
    "build_store",
    # Drivers
    "AdmissionDecision",
    "AdmissionDriver",
    "SlidingWindowCounterDriver",
    "LeakyBucketDriver",
    "build_driver",
    # Breakers
    "CircuitState",
    "CircuitBreaker",
    "CircuitSnapshot",
    "LoggingBreakerListener",
    "SamplingBreaker",
    # Policies
    "RateLimiterPolicy",
    "CircuitBreakerPolicy",
    "handle_all",
    "handle_type",
    "handle_when",
    "wrap",
    # Bootstrap & config
    "GuardRegistry",
    "GuardConfig",
    "load_config",
    # Errors
    "GuardError",
    "ThresholdRangeError",
    "RateLimitExceeded",
    "CircuitOpenError",
    "StoreUnavailableError",
    "StoreContentionError",
]
