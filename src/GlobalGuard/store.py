# === NAVMAP v1 ===
# {
#   "module": "GlobalGuard.store",
#   "purpose": "Shared state store protocol, in-memory backend and backend factory",
#   "sections": [
#     {"id": "statestore", "name": "StateStore", "anchor": "class-statestore", "kind": "class"},
#     {"id": "inmemorystatestore", "name": "InMemoryStateStore", "anchor": "class-inmemorystatestore", "kind": "class"},
#     {"id": "bounded", "name": "bounded", "anchor": "function-bounded", "kind": "function"},
#     {"id": "build-store", "name": "build_store", "anchor": "function-build-store", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Shared state store abstraction for cross-process admission control.

Every limiter and breaker keeps its state as one JSON document under one key.
The only way a decision point mutates state is :meth:`StateStore.transact`,
which hands the current document to a pure ``update`` function and writes the
returned document atomically. Backends provide atomicity their own way:

- :class:`InMemoryStateStore`: ``asyncio.Lock``; process-local, safe default.
- :class:`~GlobalGuard.sqlite_state_store.SQLiteStateStore`: ``BEGIN IMMEDIATE``
  transactions; cross-process on a single host.
- :class:`~GlobalGuard.redis_state_store.RedisStateStore`: WATCH/MULTI/EXEC
  optimistic compare-and-swap; cross-host.

``update`` may be invoked more than once (CAS retries), so it must not have
side effects outside the values it returns.

Example:
    store = InMemoryStateStore()

    def bump(doc):
        count = (doc or {}).get("count", 0) + 1
        return {"count": count}, count

    count = await store.transact("demo", bump)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    ClassVar,
    Dict,
    List,
    Optional,
    Protocol,
    Tuple,
    TypeVar,
    Union,
)

from GlobalGuard.errors import StoreUnavailableError

if TYPE_CHECKING:
    from GlobalGuard.config.models import StoreConfig

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
Document = Dict[str, Any]
Update = Callable[[Optional[Document]], Tuple[Optional[Document], T]]

# ────────────────────────────────────────────────────────────────────────────────
# Protocol
# ────────────────────────────────────────────────────────────────────────────────


class StateStore(Protocol):
    """Key-value store shared by every replica.

    Keys are logical (``limiter:sliding:abc``); backends add their own prefix.
    """

    backend: ClassVar[str]

    async def get(self, key: str) -> Optional[Document]: ...
    async def set(self, key: str, doc: Document, *, ttl_s: Optional[float] = None) -> None: ...
    async def delete(self, key: str) -> None: ...
    async def transact(
        self, key: str, update: Update[T], *, ttl_s: Optional[float] = None
    ) -> T: ...
    async def keys(self, prefix: str = "") -> List[str]: ...
    async def close(self) -> None: ...


# ────────────────────────────────────────────────────────────────────────────────
# Helpers shared by backends
# ────────────────────────────────────────────────────────────────────────────────


def encode_doc(doc: Document) -> str:
    return json.dumps(doc, separators=(",", ":"), sort_keys=True)


def decode_doc(raw: Union[str, bytes, None]) -> Optional[Document]:
    """Parse a stored document; unreadable payloads are treated as absent."""
    if raw is None:
        return None
    try:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        doc = json.loads(text)
    except ValueError:
        LOGGER.warning("Discarding unreadable state document", extra={"raw": repr(raw[:128])})
        return None
    return doc if isinstance(doc, dict) else None


async def bounded(
    awaitable: Awaitable[T],
    *,
    timeout_s: float,
    backend: str,
    operation: str,
    key: Optional[str] = None,
) -> T:
    """Await a store call, converting a timeout into :class:`StoreUnavailableError`."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except asyncio.TimeoutError as e:
        raise StoreUnavailableError(
            f"{backend} store did not answer {operation} within {timeout_s}s",
            backend=backend,
            operation=operation,
            key=key,
        ) from e


# ────────────────────────────────────────────────────────────────────────────────
# In-memory backend
# ────────────────────────────────────────────────────────────────────────────────


@dataclass
class InMemoryStateStore:
    """Process-local store; documents are serialized so callers never alias them."""

    backend: ClassVar[str] = "memory"

    now_wall: Callable[[], float] = time.time
    _data: Dict[str, Tuple[str, Optional[float]]] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def _read(self, key: str) -> Optional[Document]:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and expires_at <= self.now_wall():
            self._data.pop(key, None)
            return None
        return decode_doc(raw)

    def _write(self, key: str, doc: Document, ttl_s: Optional[float]) -> None:
        expires_at = self.now_wall() + ttl_s if ttl_s else None
        self._data[key] = (encode_doc(doc), expires_at)

    async def get(self, key: str) -> Optional[Document]:
        async with self._lock:
            return self._read(key)

    async def set(self, key: str, doc: Document, *, ttl_s: Optional[float] = None) -> None:
        async with self._lock:
            self._write(key, doc, ttl_s)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def transact(self, key: str, update: Update[T], *, ttl_s: Optional[float] = None) -> T:
        async with self._lock:
            new_doc, result = update(self._read(key))
            if new_doc is not None:
                self._write(key, new_doc, ttl_s)
            return result

    async def keys(self, prefix: str = "") -> List[str]:
        async with self._lock:
            return sorted(
                k for k in list(self._data) if k.startswith(prefix) and self._read(k) is not None
            )

    async def close(self) -> None:
        self._data.clear()


# ────────────────────────────────────────────────────────────────────────────────
# Factory
# ────────────────────────────────────────────────────────────────────────────────


def build_store(cfg: "StoreConfig") -> StateStore:
    """Create the backend named by ``cfg.backend``.

    SQLite and Redis backends are imported lazily so the in-memory store works
    without their dependencies installed.
    """
    if cfg.backend == "memory":
        return InMemoryStateStore()
    if cfg.backend == "sqlite":
        from GlobalGuard.sqlite_state_store import SQLiteStateStore

        return SQLiteStateStore(
            cfg.dsn,
            key_prefix=cfg.key_prefix,
            timeout_s=cfg.timeout_s,
        )
    if cfg.backend == "redis":
        from GlobalGuard.redis_state_store import RedisStateStore

        return RedisStateStore.from_dsn(
            cfg.dsn,
            key_prefix=cfg.key_prefix,
            timeout_s=cfg.timeout_s,
            max_cas_attempts=cfg.max_cas_attempts,
        )
    raise ValueError(f"Unknown store backend: {cfg.backend}")


__all__ = [
    "Document",
    "Update",
    "StateStore",
    "InMemoryStateStore",
    "encode_doc",
    "decode_doc",
    "bounded",
    "build_store",
]
