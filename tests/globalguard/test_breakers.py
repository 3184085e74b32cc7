# === NAVMAP v1 ===
# {
#   "module": "tests.globalguard.test_breakers",
#   "purpose": "Circuit state machine transitions over a shared store",
#   "sections": [
#     {"id": "test-closed-allows", "name": "test_closed_allows", "kind": "function"},
#     {"id": "test-open-rejects", "name": "test_open_rejects_until_cooldown", "kind": "function"},
#     {"id": "test-half-open-probe", "name": "test_single_half_open_probe", "kind": "function"},
#     {"id": "test-replicas", "name": "test_replicas_share_state", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Circuit breaker state machine.

Tests cover:
- Closed → Open once the sampler trips
- Lazy Open → HalfOpen after the cool-down, with exactly one probe
- HalfOpen → Closed on success, HalfOpen → Open on failure
- Abandoned probes, force_open(), reset()
- Listener notifications and transition logging
- Two replicas over one store
"""

from __future__ import annotations

import asyncio

import pytest

from GlobalGuard.breakers import CircuitBreaker, LoggingBreakerListener
from GlobalGuard.config.models import BreakerSettings, SamplingConfig
from GlobalGuard.errors import CircuitOpenError
from GlobalGuard.sampler import SamplingBreaker
from GlobalGuard.types import CircuitState

CLOSED = CircuitState.CLOSED
OPEN = CircuitState.OPEN
HALF_OPEN = CircuitState.HALF_OPEN


class RecordingListener:
    def __init__(self) -> None:
        self.events = []

    def state_change(self, name, old, new) -> None:
        self.events.append((name, old, new))


def _make_breaker(store, clock, listener=None) -> CircuitBreaker:
    # ten samples needed before the sampler may trip
    sampler = SamplingBreaker(
        name="payments",
        store=store,
        threshold=0.5,
        duration_ms=5_000,
        minimum_rps=2,
        clock=clock,
    )
    return CircuitBreaker(
        name="payments",
        store=store,
        sampler=sampler,
        cooldown_s=10,
        clock=clock,
        listeners=[listener] if listener else None,
    )


async def _trip(breaker: CircuitBreaker) -> None:
    for _ in range(10):
        await breaker.record_failure(CLOSED)
    assert await breaker.state() == OPEN


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def breaker(memory_store, clock, listener) -> CircuitBreaker:
    return _make_breaker(memory_store, clock, listener)


# ============================================================================
# Transitions
# ============================================================================


@pytest.mark.asyncio
async def test_closed_allows(breaker) -> None:
    assert await breaker.allow() == CLOSED
    assert await breaker.state() == CLOSED


@pytest.mark.asyncio
async def test_failures_below_threshold_keep_circuit_closed(breaker) -> None:
    for _ in range(9):
        assert await breaker.record_failure(CLOSED) is False
    assert await breaker.state() == CLOSED


@pytest.mark.asyncio
async def test_open_rejects_until_cooldown(breaker, clock, listener) -> None:
    await _trip(breaker)
    assert listener.events == [("payments", CLOSED, OPEN)]

    with pytest.raises(CircuitOpenError) as exc_info:
        await breaker.allow()
    assert exc_info.value.name == "payments"
    assert exc_info.value.state == "open"
    assert exc_info.value.remaining_ms == 10_000

    clock.advance(4)
    with pytest.raises(CircuitOpenError) as exc_info:
        await breaker.allow()
    assert exc_info.value.remaining_ms == 6_000


@pytest.mark.asyncio
async def test_single_half_open_probe(breaker, clock, listener) -> None:
    await _trip(breaker)
    clock.advance(10)

    assert await breaker.allow() == HALF_OPEN
    assert listener.events[-1] == ("payments", OPEN, HALF_OPEN)

    with pytest.raises(CircuitOpenError) as exc_info:
        await breaker.allow()
    assert exc_info.value.state == "half_open"


@pytest.mark.asyncio
async def test_probe_success_closes_and_resets_sampler(breaker, clock, listener) -> None:
    await _trip(breaker)
    clock.advance(10)
    ran_in = await breaker.allow()

    await breaker.record_success(ran_in)

    assert await breaker.state() == CLOSED
    assert listener.events[-1] == ("payments", HALF_OPEN, CLOSED)
    snapshot = await breaker.sampler.snapshot()
    assert (snapshot.current_failures, snapshot.current_successes) == (0, 1)
    assert await breaker.allow() == CLOSED


@pytest.mark.asyncio
async def test_probe_failure_reopens(breaker, clock, listener) -> None:
    await _trip(breaker)
    clock.advance(10)
    ran_in = await breaker.allow()

    assert await breaker.record_failure(ran_in) is True

    snapshot = await breaker.snapshot()
    assert snapshot.state == OPEN
    assert snapshot.opened_at == clock.now
    assert snapshot.remaining_ms == 10_000
    assert listener.events[-1] == ("payments", HALF_OPEN, OPEN)


@pytest.mark.asyncio
async def test_abandoned_probe_is_reclaimable(breaker, clock) -> None:
    await _trip(breaker)
    clock.advance(10)
    assert await breaker.allow() == HALF_OPEN

    clock.advance(10)
    assert await breaker.allow() == HALF_OPEN


@pytest.mark.asyncio
async def test_success_after_circuit_moved_on_does_not_close(breaker, clock) -> None:
    await _trip(breaker)
    clock.advance(10)
    probe = await breaker.allow()
    # another caller's failure reopened the circuit first
    await breaker.record_failure(HALF_OPEN)

    await breaker.record_success(probe)
    assert await breaker.state() == OPEN


# ============================================================================
# Operator controls
# ============================================================================


@pytest.mark.asyncio
async def test_force_open_uses_given_duration(breaker, clock) -> None:
    await breaker.force_open(30, reason="maintenance")

    with pytest.raises(CircuitOpenError) as exc_info:
        await breaker.allow()
    assert exc_info.value.remaining_ms == 30_000
    snapshot = await breaker.snapshot()
    assert snapshot.reason == "maintenance"

    clock.advance(30)
    assert await breaker.allow() == HALF_OPEN


@pytest.mark.asyncio
async def test_reset_closes_and_clears_history(breaker, listener) -> None:
    await _trip(breaker)
    await breaker.reset()

    assert await breaker.state() == CLOSED
    assert listener.events[-1] == ("payments", OPEN, CLOSED)
    snapshot = await breaker.sampler.snapshot()
    assert snapshot.total == 0


def test_cooldown_must_be_positive(memory_store, clock) -> None:
    sampler = SamplingBreaker(name="x", store=memory_store, threshold=0.5, duration_ms=1_000)
    with pytest.raises(ValueError):
        CircuitBreaker(name="x", store=memory_store, sampler=sampler, cooldown_s=0)


def test_from_settings(memory_store, clock) -> None:
    settings = BreakerSettings(sampling=SamplingConfig(threshold=0.25), cooldown_s=3)
    breaker = CircuitBreaker.from_settings("api", memory_store, settings, clock=clock)
    assert breaker.key == "breaker:api:circuit"
    assert breaker.cooldown_s == 3.0
    assert breaker.sampler.threshold == 0.25
    assert isinstance(breaker.listeners[0], LoggingBreakerListener)


# ============================================================================
# Logging
# ============================================================================


@pytest.mark.asyncio
async def test_transitions_are_logged(memory_store, clock, caplog) -> None:
    breaker = _make_breaker(memory_store, clock)
    with caplog.at_level("WARNING", logger="GlobalGuard"):
        await _trip(breaker)

    records = [r for r in caplog.records if r.getMessage() == "breaker state change"]
    assert len(records) == 1
    assert records[0].breaker == "payments"
    assert records[0].new_state == "open"


# ============================================================================
# Replicas
# ============================================================================


@pytest.mark.asyncio
async def test_replicas_share_state(memory_store, clock) -> None:
    replica_a = _make_breaker(memory_store, clock)
    replica_b = _make_breaker(memory_store, clock)

    await _trip(replica_a)
    with pytest.raises(CircuitOpenError):
        await replica_b.allow()


@pytest.mark.asyncio
async def test_only_one_replica_claims_the_probe(memory_store, clock) -> None:
    replica_a = _make_breaker(memory_store, clock)
    replica_b = _make_breaker(memory_store, clock)
    await _trip(replica_a)
    clock.advance(10)

    results = await asyncio.gather(replica_a.allow(), replica_b.allow(), return_exceptions=True)

    assert results.count(HALF_OPEN) == 1
    assert sum(isinstance(r, CircuitOpenError) for r in results) == 1


@pytest.mark.asyncio
async def test_late_trip_keeps_first_opened_at(memory_store, clock) -> None:
    replica_a = _make_breaker(memory_store, clock)
    replica_b = _make_breaker(memory_store, clock)
    await _trip(replica_a)
    opened_at = clock.now

    clock.advance(1)
    assert await replica_b.record_failure(CLOSED) is True

    snapshot = await replica_b.snapshot()
    assert snapshot.opened_at == opened_at
