# === NAVMAP v1 ===
# {
#   "module": "GlobalGuard.drivers",
#   "purpose": "Admission drivers deciding admit/reject against shared store state",
#   "sections": [
#     {"id": "admissiondecision", "name": "AdmissionDecision", "anchor": "class-admissiondecision", "kind": "class"},
#     {"id": "admissiondriver", "name": "AdmissionDriver", "anchor": "class-admissiondriver", "kind": "class"},
#     {"id": "slidingwindowcounterdriver", "name": "SlidingWindowCounterDriver", "anchor": "class-slidingwindowcounterdriver", "kind": "class"},
#     {"id": "leakybucketdriver", "name": "LeakyBucketDriver", "anchor": "class-leakybucketdriver", "kind": "class"},
#     {"id": "build-driver", "name": "build_driver", "anchor": "function-build-driver", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Admission drivers: "may this call proceed?" for one named limiter.

Provides:
- :class:`SlidingWindowCounterDriver`: weighted blend of the current and
  previous fixed windows, at most ``max_window_request_count`` per interval
- :class:`LeakyBucketDriver`: bounded burst of ``bucket_size`` draining at
  ``fill_rate`` units per second
- :class:`AdmissionDriver`: the protocol both satisfy, so policies never care
  which strategy backs a limiter

Each ``admit()`` is one store transaction: read the limiter document, rotate or
drain it for ``now``, decide, increment on admission, write back. Concurrent
callers on other replicas therefore cannot both observe the last free slot.
No counts are cached in process memory between calls.

Example:
    driver = SlidingWindowCounterDriver(hash="abc", max_window_request_count=5, interval_s=60)
    decision = await driver.admit(store)
    if not decision:
        ...
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, ClassVar, Dict, Mapping, Optional, Protocol, Tuple

from GlobalGuard.config.models import LeakyBucketConfig, LimiterConfig, SlidingWindowConfig
from GlobalGuard.store import Document, StateStore
from GlobalGuard.windows import (
    LeakyBucketState,
    SlidingWindowState,
    advance_sliding_window,
    bucket_has_room,
    leak,
    sliding_window_estimate,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionDecision:
    """Result of one admission attempt.

    ``load`` is the estimated occupancy (sliding window) or bucket level
    (leaky bucket) observed before this call was counted.
    """

    admitted: bool
    hash: str
    driver: str
    load: float
    limit: float
    state: Mapping[str, Any] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.admitted


class AdmissionDriver(Protocol):
    """Decide admit/reject for one limiter identity."""

    kind: ClassVar[str]
    hash: str

    @property
    def key(self) -> str: ...

    async def admit(self, store: StateStore) -> AdmissionDecision: ...
    async def load(self, store: StateStore) -> float: ...
    async def reset(self, store: StateStore) -> None: ...


# ────────────────────────────────────────────────────────────────────────────────
# Sliding window counter
# ────────────────────────────────────────────────────────────────────────────────


class SlidingWindowCounterDriver:
    """At most ``max_window_request_count`` calls per rolling ``interval_s``.

    Estimated occupancy is ``current + previous × overlap`` where ``overlap``
    is the share of the previous fixed window still inside the rolling
    interval. Documents expire after two intervals, by which point both
    windows would count as zero anyway.
    """

    kind: ClassVar[str] = "sliding_window"

    def __init__(
        self,
        *,
        hash: str,
        max_window_request_count: int,
        interval_s: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_window_request_count <= 0:
            raise ValueError("max_window_request_count must be > 0")
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.hash = hash
        self.max_window_request_count = max_window_request_count
        self.interval_s = float(interval_s)
        self._clock = clock

    @classmethod
    def from_config(cls, cfg: SlidingWindowConfig, **kwargs: Any) -> "SlidingWindowCounterDriver":
        return cls(
            hash=cfg.hash,
            max_window_request_count=cfg.max_window_request_count,
            interval_s=cfg.interval_s,
            **kwargs,
        )

    @property
    def key(self) -> str:
        return f"limiter:sliding:{self.hash}"

    async def admit(self, store: StateStore) -> AdmissionDecision:
        now = self._clock()

        def update(doc: Optional[Document]) -> Tuple[Document, Tuple[bool, float, SlidingWindowState]]:
            state = advance_sliding_window(SlidingWindowState.from_doc(doc), now, self.interval_s)
            estimated = sliding_window_estimate(state, now, self.interval_s)
            admitted = estimated < self.max_window_request_count
            if admitted:
                state = replace(state, current_count=state.current_count + 1)
            return state.to_doc(), (admitted, estimated, state)

        admitted, estimated, state = await store.transact(
            self.key, update, ttl_s=2 * self.interval_s
        )
        LOGGER.debug(
            "sliding window decision",
            extra={"hash": self.hash, "admitted": admitted, "estimated": estimated},
        )
        return AdmissionDecision(
            admitted=admitted,
            hash=self.hash,
            driver=self.kind,
            load=estimated,
            limit=self.max_window_request_count,
            state=state.to_doc(),
        )

    async def load(self, store: StateStore) -> float:
        """Current estimated occupancy; reads only."""
        now = self._clock()
        state = advance_sliding_window(
            SlidingWindowState.from_doc(await store.get(self.key)), now, self.interval_s
        )
        return sliding_window_estimate(state, now, self.interval_s)

    async def reset(self, store: StateStore) -> None:
        await store.delete(self.key)


# ────────────────────────────────────────────────────────────────────────────────
# Leaky bucket
# ────────────────────────────────────────────────────────────────────────────────


class LeakyBucketDriver:
    """Admit while ``level + 1 <= bucket_size``; the level drains at ``fill_rate``/s.

    Rejected calls leave the level untouched. A ``bucket_size`` of zero
    rejects everything. Documents expire once the bucket would have drained
    completely.
    """

    kind: ClassVar[str] = "leaky_bucket"

    def __init__(
        self,
        *,
        hash: str,
        bucket_size: float,
        fill_rate: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if bucket_size < 0:
            raise ValueError("bucket_size must be >= 0")
        if fill_rate < 0:
            raise ValueError("fill_rate must be >= 0")
        self.hash = hash
        self.bucket_size = float(bucket_size)
        self.fill_rate = float(fill_rate)
        self._clock = clock

    @classmethod
    def from_config(cls, cfg: LeakyBucketConfig, **kwargs: Any) -> "LeakyBucketDriver":
        return cls(hash=cfg.hash, bucket_size=cfg.bucket_size, fill_rate=cfg.fill_rate, **kwargs)

    @property
    def key(self) -> str:
        return f"limiter:leaky:{self.hash}"

    @property
    def _ttl_s(self) -> Optional[float]:
        if self.fill_rate <= 0:
            return None
        return self.bucket_size / self.fill_rate + 1.0

    async def admit(self, store: StateStore) -> AdmissionDecision:
        now = self._clock()

        def update(doc: Optional[Document]) -> Tuple[Document, Tuple[bool, float, LeakyBucketState]]:
            state = leak(LeakyBucketState.from_doc(doc), now, self.fill_rate)
            level = state.level
            admitted = bucket_has_room(state, self.bucket_size)
            if admitted:
                state = replace(state, level=state.level + 1)
            return state.to_doc(), (admitted, level, state)

        admitted, level, state = await store.transact(self.key, update, ttl_s=self._ttl_s)
        LOGGER.debug(
            "leaky bucket decision",
            extra={"hash": self.hash, "admitted": admitted, "level": level},
        )
        return AdmissionDecision(
            admitted=admitted,
            hash=self.hash,
            driver=self.kind,
            load=level,
            limit=self.bucket_size,
            state=state.to_doc(),
        )

    async def load(self, store: StateStore) -> float:
        """Current bucket level after draining; reads only."""
        state = leak(
            LeakyBucketState.from_doc(await store.get(self.key)), self._clock(), self.fill_rate
        )
        return state.level

    async def reset(self, store: StateStore) -> None:
        await store.delete(self.key)


# ────────────────────────────────────────────────────────────────────────────────
# Factory
# ────────────────────────────────────────────────────────────────────────────────

_DRIVERS: Dict[str, type] = {
    SlidingWindowCounterDriver.kind: SlidingWindowCounterDriver,
    LeakyBucketDriver.kind: LeakyBucketDriver,
}


def build_driver(cfg: LimiterConfig, **kwargs: Any) -> AdmissionDriver:
    """Instantiate the driver matching ``cfg.kind``."""
    try:
        driver_cls = _DRIVERS[cfg.kind]
    except KeyError:
        raise ValueError(f"Unknown limiter kind: {cfg.kind}") from None
    return driver_cls.from_config(cfg, **kwargs)


__all__ = [
    "AdmissionDecision",
    "AdmissionDriver",
    "SlidingWindowCounterDriver",
    "LeakyBucketDriver",
    "build_driver",
]
