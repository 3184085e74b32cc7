"""
Shared fixtures for the GlobalGuard suite.

- ``clock``: controllable wall clock injected through ``clock=`` / ``now_wall=``
- ``memory_store`` / ``sqlite_store``: state stores driven by that clock
- environment isolation so ``GLOBALGUARD_*`` variables never leak into tests
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import pytest
import pytest_asyncio

from GlobalGuard.logging_config import LOGGER_NAME
from GlobalGuard.sqlite_state_store import SQLiteStateStore
from GlobalGuard.store import InMemoryStateStore


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: float = 1_200.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock: FakeClock) -> InMemoryStateStore:
    return InMemoryStateStore(now_wall=clock)


@pytest_asyncio.fixture
async def sqlite_store(tmp_path: Path, clock: FakeClock):
    store = SQLiteStateStore(tmp_path / "guard.sqlite", now_wall=clock)
    yield store
    await store.close()


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("GLOBALGUARD_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def _reset_guard_logger():
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, "_globalguard_managed", False):
            logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
