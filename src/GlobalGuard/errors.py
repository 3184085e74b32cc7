"""Error taxonomy for distributed admission control.

Responsibilities
----------------
- Define the distinguished conditions a guarded call can end in before the
  guarded action runs: :class:`RateLimitExceeded` and :class:`CircuitOpenError`.
- Separate infrastructure faults (:class:`StoreUnavailableError`) from business
  rejections so callers never confuse "the store is down" with "you are over
  the limit".
- Carry enough diagnostic state (limiter identity, window snapshot, remaining
  cool-down) for log records and operator tooling.

Design Notes
------------
- Errors raised by the guarded action itself are never wrapped; policies
  re-raise them unchanged.
- ``ThresholdRangeError`` also subclasses :class:`ValueError` so generic
  configuration validation catches it.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

__all__ = (
    "GuardError",
    "ThresholdRangeError",
    "RateLimitExceeded",
    "CircuitOpenError",
    "StoreUnavailableError",
    "StoreContentionError",
)


class GuardError(Exception):
    """Base class for every condition raised by GlobalGuard itself."""


class ThresholdRangeError(GuardError, ValueError):
    """Raised at construction when a failure threshold is outside ``(0, 1)``."""

    def __init__(self, threshold: float) -> None:
        super().__init__(f"SamplingBreaker threshold should be between (0, 1), got {threshold}")
        self.threshold = threshold


class RateLimitExceeded(GuardError):
    """Raised when an admission driver rejects a call.

    Attributes:
        hash: Identity of the limiter that rejected the call.
        state: Snapshot of the limiter state at decision time.
    """

    def __init__(
        self,
        hash: str,
        *,
        state: Optional[Mapping[str, Any]] = None,
        driver: Optional[str] = None,
    ) -> None:
        super().__init__("Rate Limit Exceeded")
        self.hash = hash
        self.state = dict(state or {})
        self.driver = driver


class CircuitOpenError(GuardError):
    """Raised when a breaker is open (or its half-open probe is taken)."""

    def __init__(self, name: str, *, state: str, remaining_ms: int = 0) -> None:
        super().__init__(f"breaker={name} state={state} remaining_ms={remaining_ms}")
        self.name = name
        self.state = state
        self.remaining_ms = remaining_ms


class StoreUnavailableError(GuardError):
    """Raised when the shared state store cannot answer in time.

    This is an infrastructure fault, distinct from a rejection.
    """

    def __init__(
        self,
        message: str,
        *,
        backend: Optional[str] = None,
        operation: Optional[str] = None,
        key: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.operation = operation
        self.key = key


class StoreContentionError(StoreUnavailableError):
    """Raised when optimistic compare-and-swap keeps losing to other writers."""
