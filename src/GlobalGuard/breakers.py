# === NAVMAP v1 ===
# {
#   "module": "GlobalGuard.breakers",
#   "purpose": "Closed/Open/HalfOpen circuit state machine shared through the state store",
#   "sections": [
#     {"id": "circuitsnapshot", "name": "CircuitSnapshot", "anchor": "class-circuitsnapshot", "kind": "class"},
#     {"id": "breakerlistener", "name": "BreakerListener", "anchor": "class-breakerlistener", "kind": "class"},
#     {"id": "loggingbreakerlistener", "name": "LoggingBreakerListener", "anchor": "class-loggingbreakerlistener", "kind": "class"},
#     {"id": "circuitbreaker", "name": "CircuitBreaker", "anchor": "class-circuitbreaker", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Circuit breaker state machine with state shared across replicas.

Implements the classic state machine (Closed → Open → Half-Open → Closed):

- **Pre-flight checking**: ``allow()`` raises :class:`CircuitOpenError` while
  open, and lets exactly one probe through once the cool-down has elapsed
- **Post-call updates**: ``record_success()`` / ``record_failure()`` feed the
  :class:`~GlobalGuard.sampler.SamplingBreaker` and apply its verdict
- **No background timer**: the Open → Half-Open move is a stored ``opened_at``
  plus ``cooldown_s``, checked lazily by the next ``allow()``
- **Cross-process state**: the ``{state, opened_at, ...}`` record lives in the
  shared store; every transition is one ``transact`` call guarded on the state
  it expects, so two replicas cannot both claim the half-open probe
- **Listeners**: transitions are reported to pluggable listeners

Example:
    breaker = CircuitBreaker(name="payments", store=store, sampler=sampler, cooldown_s=10)

    ran_in = await breaker.allow()          # raises CircuitOpenError when open
    try:
        result = await call_payments()
    except Exception:
        await breaker.record_failure(ran_in)
        raise
    await breaker.record_success(ran_in)

Transitions: Closed→Open when the sampler says so; Open→HalfOpen on the first
``allow()`` after the cool-down; HalfOpen→Closed on the probe's success;
HalfOpen→Open on any failure. A probe that never reports back is re-claimable
after another cool-down.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, replace
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

from GlobalGuard.config.models import BreakerSettings
from GlobalGuard.errors import CircuitOpenError
from GlobalGuard.sampler import SamplingBreaker
from GlobalGuard.store import Document, StateStore
from GlobalGuard.types import CircuitState

LOGGER = logging.getLogger(__name__)

# ────────────────────────────────────────────────────────────────────────────────
# Stored record & snapshot
# ────────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class _CircuitRecord:
    state: CircuitState = CircuitState.CLOSED
    opened_at: Optional[float] = None
    cooldown_s: Optional[float] = None
    probe_started_at: Optional[float] = None
    reason: Optional[str] = None

    @classmethod
    def from_doc(cls, doc: Optional[Document]) -> "_CircuitRecord":
        if not doc:
            return cls()
        return cls(
            state=CircuitState(doc.get("state", CircuitState.CLOSED.value)),
            opened_at=doc.get("opened_at"),
            cooldown_s=doc.get("cooldown_s"),
            probe_started_at=doc.get("probe_started_at"),
            reason=doc.get("reason"),
        )

    def to_doc(self) -> Document:
        doc = asdict(self)
        doc["state"] = self.state.value
        return doc

    def open_remaining(self, now: float) -> float:
        if self.opened_at is None or self.cooldown_s is None:
            return 0.0
        return max(0.0, self.opened_at + self.cooldown_s - now)


@dataclass(frozen=True)
class CircuitSnapshot:
    """Read-only view of a breaker for telemetry and the CLI."""

    name: str
    state: CircuitState
    opened_at: Optional[float]
    remaining_ms: int
    probe_in_flight: bool
    reason: Optional[str]


# ────────────────────────────────────────────────────────────────────────────────
# Listeners
# ────────────────────────────────────────────────────────────────────────────────


class BreakerListener(Protocol):
    """Receives state transitions observed by this replica."""

    def state_change(self, name: str, old: CircuitState, new: CircuitState) -> None: ...


class LoggingBreakerListener:
    """Default listener: one WARNING record per transition."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or LOGGER

    def state_change(self, name: str, old: CircuitState, new: CircuitState) -> None:
        self.logger.warning(
            "breaker state change",
            extra={"breaker": name, "old_state": old.value, "new_state": new.value},
        )


# ────────────────────────────────────────────────────────────────────────────────
# State machine
# ────────────────────────────────────────────────────────────────────────────────


class CircuitBreaker:
    """Three-state breaker whose state is shared through ``store``.

    Args:
        name: Breaker identity shared by every replica.
        store: Shared state store.
        sampler: Failure sampler consulted on every outcome.
        cooldown_s: Time spent open before a half-open probe is allowed.
        clock: Wall-clock provider in seconds.
        listeners: Transition listeners; defaults to :class:`LoggingBreakerListener`.
    """

    def __init__(
        self,
        *,
        name: str,
        store: StateStore,
        sampler: SamplingBreaker,
        cooldown_s: float,
        clock: Callable[[], float] = time.time,
        listeners: Optional[Sequence[BreakerListener]] = None,
    ) -> None:
        if cooldown_s <= 0:
            raise ValueError("cooldown_s must be > 0")
        self.name = name
        self.store = store
        self.sampler = sampler
        self.cooldown_s = float(cooldown_s)
        self._clock = clock
        self.listeners: List[BreakerListener] = (
            list(listeners) if listeners is not None else [LoggingBreakerListener()]
        )

    @classmethod
    def from_settings(
        cls,
        name: str,
        store: StateStore,
        settings: BreakerSettings,
        *,
        clock: Callable[[], float] = time.time,
        listeners: Optional[Sequence[BreakerListener]] = None,
    ) -> "CircuitBreaker":
        sampler = SamplingBreaker.from_config(name, store, settings.sampling, clock=clock)
        return cls(
            name=name,
            store=store,
            sampler=sampler,
            cooldown_s=settings.cooldown_s,
            clock=clock,
            listeners=listeners,
        )

    @property
    def key(self) -> str:
        return f"breaker:{self.name}:circuit"

    def add_listener(self, listener: BreakerListener) -> None:
        self.listeners.append(listener)

    def _notify(self, old: CircuitState, new: CircuitState) -> None:
        if old == new:
            return
        for listener in self.listeners:
            listener.state_change(self.name, old, new)

    # ── Public API ────────────────────────────────────────────────────────────

    async def allow(self) -> CircuitState:
        """
        Pre-flight check. Returns the state the call will run under
        (``CLOSED``, or ``HALF_OPEN`` for the single probe).

        Raises:
            CircuitOpenError: while open, or while another probe is in flight.
        """
        now = self._clock()
        cooldown = self.cooldown_s

        def update(
            doc: Optional[Document],
        ) -> Tuple[Optional[Document], Tuple[bool, CircuitState, CircuitState, float]]:
            rec = _CircuitRecord.from_doc(doc)
            if rec.state == CircuitState.CLOSED:
                return None, (True, rec.state, rec.state, 0.0)
            if rec.state == CircuitState.OPEN:
                remaining = rec.open_remaining(now)
                if remaining > 0:
                    return None, (False, rec.state, rec.state, remaining)
                probing = replace(rec, state=CircuitState.HALF_OPEN, probe_started_at=now)
                return probing.to_doc(), (True, rec.state, probing.state, 0.0)
            # half-open: one probe at a time; an abandoned probe expires after a cool-down
            if rec.probe_started_at is not None and now - rec.probe_started_at < cooldown:
                return None, (False, rec.state, rec.state, rec.probe_started_at + cooldown - now)
            return replace(rec, probe_started_at=now).to_doc(), (True, rec.state, rec.state, 0.0)

        admitted, old, new, remaining = await self.store.transact(self.key, update)
        self._notify(old, new)
        if not admitted:
            raise CircuitOpenError(self.name, state=new.value, remaining_ms=int(remaining * 1000))
        return new

    async def record_success(self, ran_in: Optional[CircuitState] = None) -> None:
        """Report a successful call. A successful probe closes the circuit."""
        if ran_in is None:
            ran_in = await self.state()
        await self.sampler.success(ran_in)
        if ran_in != CircuitState.HALF_OPEN:
            return

        def update(doc: Optional[Document]) -> Tuple[Optional[Document], CircuitState]:
            rec = _CircuitRecord.from_doc(doc)
            if rec.state != CircuitState.HALF_OPEN:
                return None, rec.state
            return _CircuitRecord().to_doc(), rec.state

        old = await self.store.transact(self.key, update)
        if old == CircuitState.HALF_OPEN:
            self._notify(old, CircuitState.CLOSED)

    async def record_failure(self, ran_in: Optional[CircuitState] = None) -> bool:
        """Report a failed call. Returns True if the circuit is (now) open."""
        if ran_in is None:
            ran_in = await self.state()
        if not await self.sampler.failure(ran_in):
            return False
        await self._open(self.cooldown_s, reason="failure-threshold" if ran_in == CircuitState.CLOSED else "probe-failed")
        return True

    async def force_open(self, seconds: float, *, reason: str = "manual") -> None:
        """Open the circuit for ``seconds`` regardless of the sampler."""
        await self._open(float(seconds), reason=reason, override=True)

    async def reset(self) -> None:
        """Close the circuit and wipe the sampler history."""
        old = await self.state()
        await self.store.delete(self.key)
        await self.sampler.reset()
        self._notify(old, CircuitState.CLOSED)

    async def state(self) -> CircuitState:
        """Stored circuit state (no lazy transition applied)."""
        return _CircuitRecord.from_doc(await self.store.get(self.key)).state

    async def snapshot(self) -> CircuitSnapshot:
        now = self._clock()
        rec = _CircuitRecord.from_doc(await self.store.get(self.key))
        return CircuitSnapshot(
            name=self.name,
            state=rec.state,
            opened_at=rec.opened_at,
            remaining_ms=int(rec.open_remaining(now) * 1000) if rec.state == CircuitState.OPEN else 0,
            probe_in_flight=rec.state == CircuitState.HALF_OPEN and rec.probe_started_at is not None,
            reason=rec.reason,
        )

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _open(self, cooldown_s: float, *, reason: str, override: bool = False) -> None:
        now = self._clock()

        def update(doc: Optional[Document]) -> Tuple[Optional[Document], CircuitState]:
            rec = _CircuitRecord.from_doc(doc)
            if rec.state == CircuitState.OPEN and not override:
                # another replica already tripped; keep its opened_at
                return None, rec.state
            opened = _CircuitRecord(
                state=CircuitState.OPEN, opened_at=now, cooldown_s=cooldown_s, reason=reason
            )
            return opened.to_doc(), rec.state

        old = await self.store.transact(self.key, update)
        self._notify(old, CircuitState.OPEN)


__all__ = [
    "CircuitState",
    "CircuitSnapshot",
    "BreakerListener",
    "LoggingBreakerListener",
    "CircuitBreaker",
]
