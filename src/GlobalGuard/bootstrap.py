"""
Bootstrap Orchestrator for GlobalGuard

Builds every runtime object named in a :class:`GuardConfig` (one shared store,
one admission driver per limiter, one circuit breaker per breaker) and hands
out ready-to-use policies.

Example:
    from GlobalGuard.bootstrap import GuardRegistry
    from GlobalGuard.config import load_config

    config = load_config("globalguard.yaml")
    async with GuardRegistry.from_config(config) as guards:
        policy = guards.guarded(limiter="api", breaker="payments")
        result = await policy.execute(call_payments)
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional, Sequence

from GlobalGuard.breakers import BreakerListener, CircuitBreaker
from GlobalGuard.config.models import BreakerSettings, GuardConfig, LimiterConfig
from GlobalGuard.drivers import AdmissionDriver, build_driver
from GlobalGuard.policy import (
    CircuitBreakerPolicy,
    ErrorFilter,
    Policy,
    PolicyWrap,
    RateLimiterPolicy,
    wrap,
)
from GlobalGuard.store import StateStore, build_store

LOGGER = logging.getLogger(__name__)


class GuardRegistry:
    """Named limiters and breakers over one shared store."""

    def __init__(
        self,
        config: GuardConfig,
        store: StateStore,
        *,
        clock: Callable[[], float] = time.time,
        listeners: Optional[Sequence[BreakerListener]] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.drivers: Dict[str, AdmissionDriver] = {
            name: build_driver(cfg, clock=clock) for name, cfg in config.limiters.items()
        }
        self.circuits: Dict[str, CircuitBreaker] = {
            name: CircuitBreaker.from_settings(
                name, store, settings, clock=clock, listeners=listeners
            )
            for name, settings in config.breakers.items()
        }

    @classmethod
    def from_config(
        cls,
        config: GuardConfig,
        *,
        store: Optional[StateStore] = None,
        clock: Callable[[], float] = time.time,
        listeners: Optional[Sequence[BreakerListener]] = None,
    ) -> "GuardRegistry":
        """Build the registry; the store comes from ``config.store`` unless given."""
        if store is None:
            store = build_store(config.store)
        registry = cls(config, store, clock=clock, listeners=listeners)
        LOGGER.info(
            "GlobalGuard registry ready",
            extra={
                "backend": store.backend,
                "limiters": sorted(registry.drivers),
                "breakers": sorted(registry.circuits),
                "config_hash": config.config_hash()[:8],
            },
        )
        return registry

    # ── Lookups ───────────────────────────────────────────────────────────────

    def _limiter_config(self, name: str) -> LimiterConfig:
        try:
            return self.config.limiters[name]
        except KeyError:
            raise KeyError(f"Unknown limiter: {name}") from None

    def _breaker_config(self, name: str) -> BreakerSettings:
        try:
            return self.config.breakers[name]
        except KeyError:
            raise KeyError(f"Unknown breaker: {name}") from None

    def driver(self, name: str) -> AdmissionDriver:
        self._limiter_config(name)
        return self.drivers[name]

    def circuit(self, name: str) -> CircuitBreaker:
        self._breaker_config(name)
        return self.circuits[name]

    # ── Policies ──────────────────────────────────────────────────────────────

    def limiter(self, name: str) -> RateLimiterPolicy:
        cfg = self._limiter_config(name)
        return RateLimiterPolicy(self.drivers[name], self.store, fail_mode=cfg.fail_mode)

    def breaker(self, name: str, *, handle: Optional[ErrorFilter] = None) -> CircuitBreakerPolicy:
        settings = self._breaker_config(name)
        return CircuitBreakerPolicy(
            self.circuits[name], handle=handle, fail_mode=settings.fail_mode
        )

    def guarded(
        self,
        *,
        limiter: Optional[str] = None,
        breaker: Optional[str] = None,
        handle: Optional[ErrorFilter] = None,
    ) -> PolicyWrap:
        """Limiter (outer) then breaker (inner); a rejected call never reaches the breaker."""
        policies: List[Policy] = []
        if limiter is not None:
            policies.append(self.limiter(limiter))
        if breaker is not None:
            policies.append(self.breaker(breaker, handle=handle))
        if not policies:
            raise ValueError("guarded() needs a limiter, a breaker, or both")
        return wrap(*policies)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Create every breaker's sampler document that does not exist yet."""
        for circuit in self.circuits.values():
            await circuit.sampler.initialize()

    async def close(self) -> None:
        await self.store.close()

    async def __aenter__(self) -> "GuardRegistry":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


__all__ = ["GuardRegistry"]
