"""Shared enums for GlobalGuard."""

from __future__ import annotations

from enum import Enum


class CircuitState(str, Enum):
    """Externally observable breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


__all__ = ["CircuitState"]
