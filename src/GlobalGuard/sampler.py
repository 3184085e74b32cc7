# === NAVMAP v1 ===
# {
#   "module": "GlobalGuard.sampler",
#   "purpose": "Multi-window failure-rate sampler persisted in the shared store",
#   "sections": [
#     {"id": "samplingbreaker", "name": "SamplingBreaker", "anchor": "class-samplingbreaker", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Failure-rate sampler deciding when a circuit should trip.

The sampler keeps a ring of fixed-size time windows with success/failure
counts plus running totals across the ring, all in ONE store document per
breaker. Every outcome is recorded by a single ``transact`` call that rotates
stale windows, adjusts slot and totals together, and (for failures) evaluates
the trip condition on the state it just wrote. No replica can observe a ring
whose totals disagree with its slots.

Trip rule (closed circuit only):
- fewer than ``duration_ms × minimum_rpms`` samples in the ring → never trip
- otherwise trip when ``failures > threshold × total``

Any failure while the circuit is not closed asks to (re)open.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple

from GlobalGuard.config.models import SamplingConfig
from GlobalGuard.errors import ThresholdRangeError
from GlobalGuard.store import Document, StateStore
from GlobalGuard.types import CircuitState
from GlobalGuard.windows import (
    SamplerState,
    failure_ratio_exceeded,
    has_minimum_throughput,
    new_sampler_state,
    push_outcome,
    reset_windows,
    sampler_layout,
)

LOGGER = logging.getLogger(__name__)


class SamplingBreaker:
    """Breaks if more than ``threshold`` of calls over the last ``duration_ms``
    failed, so long as there's at least ``minimum_rps`` (to avoid opening
    unnecessarily under low load).

    Args:
        name: Breaker identity shared by every replica.
        store: Shared state store.
        threshold: Failure ratio in ``(0, 1)``.
        duration_ms: Requested sampling horizon. The ring uses
            ``max(5, ceil(duration_ms / 1000))`` windows of
            ``round(duration_ms / window_count)`` ms each, so the effective
            horizon (:attr:`duration_ms`) may differ slightly from the request.
        minimum_rps: Throughput floor. Defaults to enough volume for five
            failures per second at ``threshold``.
        clock: Wall-clock provider in seconds.

    Raises:
        ThresholdRangeError: If ``threshold`` is not strictly between 0 and 1.
    """

    def __init__(
        self,
        *,
        name: str,
        store: StateStore,
        threshold: float,
        duration_ms: float,
        minimum_rps: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if threshold <= 0 or threshold >= 1:
            raise ThresholdRangeError(threshold)
        if duration_ms <= 0:
            raise ValueError("duration_ms must be > 0")

        self.name = name
        self.store = store
        self.threshold = threshold
        self.window_count, self.window_size_ms, self.duration_ms = sampler_layout(duration_ms)
        if minimum_rps:
            self.minimum_rpms = minimum_rps / 1000
        else:
            # at least 5 failures per second are needed to open the circuit
            self.minimum_rpms = 5 / (threshold * 1000)
        self._clock = clock

    @classmethod
    def from_config(
        cls, name: str, store: StateStore, cfg: SamplingConfig, **kwargs
    ) -> "SamplingBreaker":
        return cls(
            name=name,
            store=store,
            threshold=cfg.threshold,
            duration_ms=cfg.duration_ms,
            minimum_rps=cfg.minimum_rps,
            **kwargs,
        )

    @property
    def key(self) -> str:
        return f"breaker:{self.name}:sampler"

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _fresh(self) -> SamplerState:
        return new_sampler_state(self.duration_ms, self.minimum_rpms)

    def _load(self, doc: Optional[Document]) -> SamplerState:
        if doc is None:
            return self._fresh()
        state = SamplerState.from_doc(doc)
        if len(state.windows) != self.window_count or state.window_size_ms != self.window_size_ms:
            LOGGER.warning(
                "Sampler layout changed; discarding stored windows",
                extra={
                    "breaker": self.name,
                    "stored_windows": len(state.windows),
                    "configured_windows": self.window_count,
                },
            )
            return self._fresh()
        state.minimum_rpms = self.minimum_rpms
        return state

    # ── Public API ────────────────────────────────────────────────────────────

    async def initialize(self) -> bool:
        """Create the sampler document if no replica has yet. Returns True if created."""

        def update(doc: Optional[Document]) -> Tuple[Optional[Document], bool]:
            if doc is not None:
                return None, False
            return self._fresh().to_doc(), True

        return await self.store.transact(self.key, update)

    async def success(self, state: CircuitState) -> None:
        """Record a success; a successful half-open probe wipes the history first."""
        now_ms = self._now_ms()

        def update(doc: Optional[Document]) -> Tuple[Document, None]:
            sampler = self._load(doc)
            if state == CircuitState.HALF_OPEN:
                reset_windows(sampler)
            push_outcome(sampler, now_ms, success=True)
            return sampler.to_doc(), None

        await self.store.transact(self.key, update)

    async def failure(self, state: CircuitState) -> bool:
        """Record a failure. Returns True if the circuit should open."""
        now_ms = self._now_ms()

        def update(doc: Optional[Document]) -> Tuple[Document, Tuple[bool, int, int]]:
            sampler = self._load(doc)
            push_outcome(sampler, now_ms, success=False)
            if state != CircuitState.CLOSED:
                verdict = True
            elif not has_minimum_throughput(sampler):
                verdict = False
            else:
                verdict = failure_ratio_exceeded(sampler, self.threshold)
            return sampler.to_doc(), (verdict, sampler.current_failures, sampler.total)

        verdict, failures, total = await self.store.transact(self.key, update)
        if verdict and state == CircuitState.CLOSED:
            LOGGER.info(
                "Failure threshold reached",
                extra={
                    "breaker": self.name,
                    "failures": failures,
                    "total": total,
                    "threshold": self.threshold,
                },
            )
        return verdict

    async def snapshot(self) -> Optional[SamplerState]:
        """Return the stored ring (no rotation applied), or None if never written."""
        doc = await self.store.get(self.key)
        return SamplerState.from_doc(doc) if doc is not None else None

    async def reset(self) -> None:
        """Zero every window and total."""

        def update(doc: Optional[Document]) -> Tuple[Document, None]:
            sampler = self._load(doc)
            reset_windows(sampler)
            return sampler.to_doc(), None

        await self.store.transact(self.key, update)


__all__ = ["SamplingBreaker"]
