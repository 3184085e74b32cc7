# === NAVMAP v1 ===
# {
#   "module": "GlobalGuard.windows",
#   "purpose": "Pure window arithmetic for sliding-window, leaky-bucket and sampler state",
#   "sections": [
#     {"id": "slidingwindowstate", "name": "SlidingWindowState", "anchor": "class-slidingwindowstate", "kind": "class"},
#     {"id": "leakybucketstate", "name": "LeakyBucketState", "anchor": "class-leakybucketstate", "kind": "class"},
#     {"id": "window", "name": "Window", "anchor": "class-window", "kind": "class"},
#     {"id": "samplerstate", "name": "SamplerState", "anchor": "class-samplerstate", "kind": "class"},
#     {"id": "advance-sliding-window", "name": "advance_sliding_window", "anchor": "function-advance-sliding-window", "kind": "function"},
#     {"id": "leak", "name": "leak", "anchor": "function-leak", "kind": "function"},
#     {"id": "rotate-window", "name": "rotate_window", "anchor": "function-rotate-window", "kind": "function"},
#     {"id": "push-outcome", "name": "push_outcome", "anchor": "function-push-outcome", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Window arithmetic shared by the admission drivers and the failure sampler.

Everything here is pure: functions take a state record plus ``now`` and either
return a new record (sliding window, leaky bucket) or mutate the sampler
record they were handed. No I/O happens in this module; the store layer loads
a document, the caller applies one of these functions inside a single
transaction, and the store writes the result back.

Time units
----------
- Sliding window and leaky bucket: seconds (``time.time()``).
- Sampler: milliseconds, matching ``duration_ms`` / ``window_size_ms``.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

MIN_WINDOW_COUNT = 5
MAX_WINDOW_SPAN_MS = 1000
LEVEL_TOLERANCE = 1e-6

# ────────────────────────────────────────────────────────────────────────────────
# Sliding window counter
# ────────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SlidingWindowState:
    """Two adjacent fixed windows for one limiter identity."""

    previous_count: int = 0
    current_count: int = 0
    current_window_start: float = 0.0

    @classmethod
    def from_doc(cls, doc: Optional[Mapping[str, Any]]) -> Optional["SlidingWindowState"]:
        if not doc:
            return None
        return cls(
            previous_count=int(doc.get("previous_count") or 0),
            current_count=int(doc.get("current_count") or 0),
            current_window_start=float(doc.get("current_window_start") or 0.0),
        )

    def to_doc(self) -> Dict[str, Any]:
        return asdict(self)


def window_start_for(now: float, interval_s: float) -> float:
    """Return the start of the fixed interval containing ``now``."""
    return math.floor(now / interval_s) * interval_s


def advance_sliding_window(
    state: Optional[SlidingWindowState], now: float, interval_s: float
) -> SlidingWindowState:
    """Move the window pair forward so that it contains ``now``.

    Crossing exactly one boundary shifts the current count into the previous
    slot; crossing more than one means the skipped windows saw no traffic,
    so both counts restart at zero. A clock behind the stored window never
    moves the window backwards.
    """
    start = window_start_for(now, interval_s)
    if state is None:
        return SlidingWindowState(current_window_start=start)
    if start <= state.current_window_start:
        return state
    skipped = round((start - state.current_window_start) / interval_s)
    if skipped == 1:
        return SlidingWindowState(
            previous_count=state.current_count,
            current_count=0,
            current_window_start=start,
        )
    return SlidingWindowState(current_window_start=start)


def sliding_window_estimate(state: SlidingWindowState, now: float, interval_s: float) -> float:
    """Estimated requests in the rolling interval ending at ``now``."""
    overlap = 1.0 - (now - state.current_window_start) / interval_s
    overlap = min(1.0, max(0.0, overlap))
    return state.current_count + state.previous_count * overlap


# ────────────────────────────────────────────────────────────────────────────────
# Leaky bucket
# ────────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LeakyBucketState:
    """Queued units and the time they were last drained."""

    level: float = 0.0
    last_leak_at: float = 0.0

    @classmethod
    def from_doc(cls, doc: Optional[Mapping[str, Any]]) -> Optional["LeakyBucketState"]:
        if not doc:
            return None
        return cls(
            level=float(doc.get("level") or 0.0),
            last_leak_at=float(doc.get("last_leak_at") or 0.0),
        )

    def to_doc(self) -> Dict[str, Any]:
        return asdict(self)


def leak(state: Optional[LeakyBucketState], now: float, fill_rate: float) -> LeakyBucketState:
    """Drain the bucket for the time elapsed since the last leak.

    Elapsed time is rounded to the microsecond to absorb epoch float noise.
    """
    if state is None:
        return LeakyBucketState(level=0.0, last_leak_at=now)
    elapsed = max(0.0, round(now - state.last_leak_at, 6))
    level = max(0.0, state.level - elapsed * fill_rate)
    return LeakyBucketState(level=level, last_leak_at=max(now, state.last_leak_at))


def bucket_has_room(state: LeakyBucketState, bucket_size: float) -> bool:
    return state.level + 1 <= bucket_size + LEVEL_TOLERANCE


# ────────────────────────────────────────────────────────────────────────────────
# Failure sampler ring
# ────────────────────────────────────────────────────────────────────────────────


@dataclass
class Window:
    """One time slice of the sampler ring."""

    started_at: float = 0.0
    failures: int = 0
    successes: int = 0


@dataclass
class SamplerState:
    """Ring of windows plus running totals, persisted as a single document.

    ``current_failures`` / ``current_successes`` always equal the sums over
    ``windows``; every mutation below adjusts slot and total together.
    """

    windows: List[Window]
    window_size_ms: int
    duration_ms: int
    minimum_rpms: float
    current_window: int = 0
    current_failures: int = 0
    current_successes: int = 0

    @classmethod
    def from_doc(cls, doc: Mapping[str, Any]) -> "SamplerState":
        return cls(
            windows=[
                Window(
                    started_at=float(w.get("started_at") or 0.0),
                    failures=int(w.get("failures") or 0),
                    successes=int(w.get("successes") or 0),
                )
                for w in doc["windows"]
            ],
            window_size_ms=int(doc["window_size_ms"]),
            duration_ms=int(doc["duration_ms"]),
            minimum_rpms=float(doc["minimum_rpms"]),
            current_window=int(doc.get("current_window") or 0),
            current_failures=int(doc.get("current_failures") or 0),
            current_successes=int(doc.get("current_successes") or 0),
        )

    def to_doc(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def total(self) -> int:
        return self.current_successes + self.current_failures


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def sampler_layout(duration_ms: float) -> Tuple[int, int, int]:
    """Return ``(window_count, window_size_ms, effective_duration_ms)``.

    At least five windows, each at most about a second. Because the window
    size is rounded to whole milliseconds the effective duration can differ
    slightly from the requested one; the effective value is what gets stored
    and used by the throughput guard.
    """
    window_count = max(MIN_WINDOW_COUNT, math.ceil(duration_ms / MAX_WINDOW_SPAN_MS))
    window_size = max(1, _round_half_up(duration_ms / window_count))
    return window_count, window_size, window_size * window_count


def new_sampler_state(duration_ms: float, minimum_rpms: float) -> SamplerState:
    window_count, window_size, effective = sampler_layout(duration_ms)
    return SamplerState(
        windows=[Window() for _ in range(window_count)],
        window_size_ms=window_size,
        duration_ms=effective,
        minimum_rpms=minimum_rpms,
    )


def rotate_window(state: SamplerState, now_ms: float) -> int:
    """Advance the ring past every window that has expired by ``now_ms``.

    Each slot being overwritten has its old counts subtracted from the running
    totals before it is zeroed and stamped. Returns the number of slots
    advanced; zero when the current window has not expired.
    """
    current = state.windows[state.current_window]
    elapsed = now_ms - current.started_at
    if elapsed < state.window_size_ms:
        return 0
    steps = min(len(state.windows), int(elapsed // state.window_size_ms))
    for _ in range(steps):
        nxt = (state.current_window + 1) % len(state.windows)
        old = state.windows[nxt]
        state.current_failures -= old.failures
        state.current_successes -= old.successes
        state.windows[nxt] = Window(started_at=now_ms)
        state.current_window = nxt
    return steps


def push_outcome(state: SamplerState, now_ms: float, success: bool) -> Window:
    """Record one outcome in the current window, rotating first if stale."""
    rotate_window(state, now_ms)
    window = state.windows[state.current_window]
    if success:
        window.successes += 1
        state.current_successes += 1
    else:
        window.failures += 1
        state.current_failures += 1
    return window


def reset_windows(state: SamplerState) -> None:
    """Zero every slot and both running totals."""
    state.windows = [Window() for _ in state.windows]
    state.current_failures = 0
    state.current_successes = 0


def has_minimum_throughput(state: SamplerState) -> bool:
    # rps < minimum  <=>  total / duration < minimum_rpms  <=>  total < duration * minimum_rpms
    return state.total >= state.duration_ms * state.minimum_rpms


def failure_ratio_exceeded(state: SamplerState, threshold: float) -> bool:
    # failures / total > threshold  <=>  failures > threshold * total
    return state.current_failures > threshold * state.total


__all__ = [
    "SlidingWindowState",
    "LeakyBucketState",
    "Window",
    "SamplerState",
    "window_start_for",
    "advance_sliding_window",
    "sliding_window_estimate",
    "leak",
    "bucket_has_room",
    "sampler_layout",
    "new_sampler_state",
    "rotate_window",
    "push_outcome",
    "reset_windows",
    "has_minimum_throughput",
    "failure_ratio_exceeded",
]
