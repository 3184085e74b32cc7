# === NAVMAP v1 ===
# {
#   "module": "GlobalGuard.policy",
#   "purpose": "Policy wrappers running caller actions under limiters and breakers",
#   "sections": [
#     {"id": "handle-all", "name": "handle_all", "anchor": "function-handle-all", "kind": "function"},
#     {"id": "handle-type", "name": "handle_type", "anchor": "function-handle-type", "kind": "function"},
#     {"id": "handle-when", "name": "handle_when", "anchor": "function-handle-when", "kind": "function"},
#     {"id": "ratelimiterpolicy", "name": "RateLimiterPolicy", "anchor": "class-ratelimiterpolicy", "kind": "class"},
#     {"id": "circuitbreakerpolicy", "name": "CircuitBreakerPolicy", "anchor": "class-circuitbreakerpolicy", "kind": "class"},
#     {"id": "policywrap", "name": "PolicyWrap", "anchor": "class-policywrap", "kind": "class"},
#     {"id": "wrap", "name": "wrap", "anchor": "function-wrap", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Run caller actions under admission control.

A policy's ``execute(action)`` decides whether ``action`` may run, runs it,
and reports the outcome:

- :class:`RateLimiterPolicy` raises :class:`RateLimitExceeded` before invoking
  the action when its driver rejects the call.
- :class:`CircuitBreakerPolicy` raises :class:`CircuitOpenError` without
  invoking the action while the breaker is open, and feeds successes and
  handled failures back to the breaker.
- :func:`wrap` composes policies outermost-first.

Actions may be plain callables or coroutine functions. Errors raised by the
action are re-raised unchanged. When the store cannot be reached, ``fail_mode``
decides: ``"closed"`` raises :class:`StoreUnavailableError` and the action does
not run; ``"open"`` logs a warning and runs it anyway.

Example:
    limiter = RateLimiterPolicy(driver, store)
    breaker = CircuitBreakerPolicy(circuit, handle=handle_type(ConnectionError))
    result = await wrap(limiter, breaker).execute(lambda: client.get(url))
"""

from __future__ import annotations

import functools
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Type, TypeVar, Union

from GlobalGuard.breakers import CircuitBreaker
from GlobalGuard.config.models import FailMode
from GlobalGuard.drivers import AdmissionDriver
from GlobalGuard.errors import RateLimitExceeded, StoreUnavailableError
from GlobalGuard.store import StateStore
from GlobalGuard.types import CircuitState

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
Action = Callable[[], Union[T, Awaitable[T]]]
ErrorFilter = Callable[[BaseException], bool]
StateChangeCallback = Callable[[str, CircuitState, CircuitState], None]


async def _invoke(action: Action[T]) -> T:
    result = action()
    if inspect.isawaitable(result):
        result = await result
    return result


def _check_fail_mode(fail_mode: str) -> str:
    if fail_mode not in ("open", "closed"):
        raise ValueError(f"fail_mode must be 'open' or 'closed', got {fail_mode!r}")
    return fail_mode


# ────────────────────────────────────────────────────────────────────────────────
# Error filters
# ────────────────────────────────────────────────────────────────────────────────


def handle_all() -> ErrorFilter:
    """Every action error counts as a breaker failure."""
    return lambda exc: True


def handle_type(*exc_types: Type[BaseException]) -> ErrorFilter:
    """Only errors of the given types count as breaker failures."""
    if not exc_types:
        raise ValueError("handle_type() needs at least one exception type")
    return lambda exc: isinstance(exc, exc_types)


def handle_when(predicate: ErrorFilter) -> ErrorFilter:
    """Errors for which ``predicate`` returns True count as breaker failures."""
    return predicate


# ────────────────────────────────────────────────────────────────────────────────
# Policies
# ────────────────────────────────────────────────────────────────────────────────


class Policy(Protocol):
    async def execute(self, action: Action[T]) -> T: ...


class RateLimiterPolicy:
    """Admit the action through ``driver`` before running it."""

    def __init__(
        self, driver: AdmissionDriver, store: StateStore, *, fail_mode: FailMode = "closed"
    ) -> None:
        self.driver = driver
        self.store = store
        self.fail_mode = _check_fail_mode(fail_mode)

    async def execute(self, action: Action[T]) -> T:
        try:
            decision = await self.driver.admit(self.store)
        except StoreUnavailableError:
            if self.fail_mode == "closed":
                raise
            LOGGER.warning(
                "Limiter store unavailable; admitting (fail-open)",
                extra={"hash": self.driver.hash, "driver": self.driver.kind},
                exc_info=True,
            )
        else:
            if not decision:
                LOGGER.info(
                    "Rate limit exceeded",
                    extra={"hash": decision.hash, "driver": decision.driver, "load": decision.load},
                )
                raise RateLimitExceeded(decision.hash, state=decision.state, driver=decision.driver)
        return await _invoke(action)


class _CallbackListener:
    def __init__(self, callback: StateChangeCallback) -> None:
        self.callback = callback

    def state_change(self, name: str, old: CircuitState, new: CircuitState) -> None:
        self.callback(name, old, new)


class CircuitBreakerPolicy:
    """Run the action under ``breaker``.

    Args:
        breaker: Shared circuit breaker.
        handle: Decides which action errors count as failures; defaults to
            :func:`handle_all`. Errors it rejects propagate without being
            recorded.
        fail_mode: Behaviour when the store is unreachable.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        *,
        handle: Optional[ErrorFilter] = None,
        fail_mode: FailMode = "closed",
    ) -> None:
        self.breaker = breaker
        self.handle = handle or handle_all()
        self.fail_mode = _check_fail_mode(fail_mode)

    def on_state_change(self, callback: StateChangeCallback) -> "CircuitBreakerPolicy":
        """Call ``callback(name, old, new)`` on every transition seen by this replica."""
        self.breaker.add_listener(_CallbackListener(callback))
        return self

    async def execute(self, action: Action[T]) -> T:
        ran_in: Optional[CircuitState]
        try:
            ran_in = await self.breaker.allow()
        except StoreUnavailableError:
            if self.fail_mode == "closed":
                raise
            LOGGER.warning(
                "Breaker store unavailable; running unguarded (fail-open)",
                extra={"breaker": self.breaker.name},
                exc_info=True,
            )
            ran_in = None

        try:
            result = await _invoke(action)
        except Exception as exc:
            if ran_in is not None and self.handle(exc):
                await self._record(self.breaker.record_failure, ran_in)
            raise

        if ran_in is not None:
            await self._record(self.breaker.record_success, ran_in)
        return result

    async def _record(self, record: Callable[[CircuitState], Awaitable[Any]], ran_in: CircuitState) -> None:
        # the action already ran; its outcome must reach the caller
        try:
            await record(ran_in)
        except StoreUnavailableError:
            LOGGER.error(
                "Failed to record breaker outcome",
                extra={"breaker": self.breaker.name, "ran_in": ran_in.value},
                exc_info=True,
            )


class PolicyWrap:
    """Policies applied outermost-first."""

    def __init__(self, *policies: Policy) -> None:
        if not policies:
            raise ValueError("wrap() needs at least one policy")
        self.policies = policies

    async def execute(self, action: Action[T]) -> T:
        call: Action[T] = action
        for policy in reversed(self.policies):
            call = functools.partial(policy.execute, call)
        return await _invoke(call)


def wrap(*policies: Policy) -> PolicyWrap:
    """Compose ``policies`` so the first one listed runs outermost."""
    return PolicyWrap(*policies)


__all__ = [
    "Action",
    "ErrorFilter",
    "Policy",
    "handle_all",
    "handle_type",
    "handle_when",
    "RateLimiterPolicy",
    "CircuitBreakerPolicy",
    "PolicyWrap",
    "wrap",
]
