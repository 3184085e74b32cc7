# === NAVMAP v1 ===
# {
#   "module": "GlobalGuard.sqlite_state_store",
#   "purpose": "SQLite-backed shared state store for multi-process admission control.",
#   "sections": [
#     {
#       "id": "sqlitestatestore",
#       "name": "SQLiteStateStore",
#       "anchor": "class-sqlitestatestore",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Cross-process state store backed by SQLite.

Lets several worker processes on one host share limiter and breaker state
through a single database file.

Key Design:
- One row per logical key, holding the JSON document and an optional
  wall-clock expiry
- ``transact`` runs ``BEGIN IMMEDIATE`` → read → update → write → ``COMMIT``,
  so the write lock is taken before the read and no other process can
  interleave
- PRAGMA journal_mode=WAL plus ``busy_timeout`` for concurrent access
- Blocking sqlite3 calls run in a worker thread (``asyncio.to_thread``) and
  are bounded by ``timeout_s``

Typical Usage:
    from pathlib import Path
    from GlobalGuard.sqlite_state_store import SQLiteStateStore

    store = SQLiteStateStore(Path("tmp/guard.sqlite"))
    doc = await store.get("limiter:sliding:abc")
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, ClassVar, List, Optional, TypeVar, Union

from GlobalGuard.errors import StoreUnavailableError
from GlobalGuard.store import Document, Update, bounded, decode_doc, encode_doc

T = TypeVar("T")

# ────────────────────────────────────────────────────────────────────────────────
# Database Schema (DDL)
# ────────────────────────────────────────────────────────────────────────────────

_DDL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
PRAGMA busy_timeout=4000;
CREATE TABLE IF NOT EXISTS guard_state (
    key TEXT PRIMARY KEY,
    doc TEXT NOT NULL,           -- JSON document
    expires_at REAL,             -- UTC epoch seconds, NULL = no expiry
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_gs_expires ON guard_state(expires_at);
"""

_UPSERT = """
INSERT INTO guard_state(key, doc, expires_at, updated_at)
VALUES (?, ?, ?, ?)
ON CONFLICT(key) DO UPDATE SET
    doc=excluded.doc,
    expires_at=excluded.expires_at,
    updated_at=excluded.updated_at
"""


# ────────────────────────────────────────────────────────────────────────────────
# SQLiteStateStore
# ────────────────────────────────────────────────────────────────────────────────


@dataclass
class SQLiteStateStore:
    """
    Shared state store in a SQLite database file.

    Parameters
    ----------
    db_path : Path
        Path to SQLite database file. Directories are created if missing.
    key_prefix : str
        Prefix added to every logical key (default "globalguard:").
    timeout_s : float
        Upper bound for any single store call.
    now_wall : Callable[[], float]
        Wall-clock provider used for expiry (default: time.time).

    Notes
    -----
    Each store instance owns one connection. Separate instances pointing at
    the same file behave like separate processes.
    """

    backend: ClassVar[str] = "sqlite"

    db_path: Union[Path, str]
    key_prefix: str = "globalguard:"
    timeout_s: float = 2.0
    now_wall: Callable[[], float] = time.time

    def __post_init__(self) -> None:
        """Open the connection and create the schema if needed."""
        self.db_path = Path(self.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(
            self.db_path,
            isolation_level=None,  # explicit BEGIN/COMMIT below
            check_same_thread=False,
            timeout=self.timeout_s,
        )
        self._lock = threading.Lock()

        cursor = self._conn.cursor()
        for stmt in _DDL.strip().split(";\n"):
            if stmt.strip():
                cursor.execute(stmt)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    # ── Blocking primitives (run in a worker thread) ───────────────────────

    def _select(self, full_key: str) -> Optional[Document]:
        row = self._conn.execute(
            "SELECT doc, expires_at FROM guard_state WHERE key=?", (full_key,)
        ).fetchone()
        if not row:
            return None
        raw, expires_at = row
        if expires_at is not None and float(expires_at) <= self.now_wall():
            return None
        return decode_doc(raw)

    def _expiry(self, ttl_s: Optional[float]) -> Optional[float]:
        return self.now_wall() + ttl_s if ttl_s else None

    def _get_sync(self, key: str) -> Optional[Document]:
        with self._lock:
            return self._select(self._key(key))

    def _set_sync(self, key: str, doc: Document, ttl_s: Optional[float]) -> None:
        with self._lock:
            self._conn.execute(
                _UPSERT, (self._key(key), encode_doc(doc), self._expiry(ttl_s), self.now_wall())
            )

    def _delete_sync(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM guard_state WHERE key=?", (self._key(key),))

    def _transact_sync(self, key: str, update: Update[T], ttl_s: Optional[float]) -> T:
        full_key = self._key(key)
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                new_doc, result = update(self._select(full_key))
                if new_doc is not None:
                    self._conn.execute(
                        _UPSERT,
                        (full_key, encode_doc(new_doc), self._expiry(ttl_s), self.now_wall()),
                    )
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")
            return result

    def _keys_sync(self, prefix: str) -> List[str]:
        pattern = (
            self._key(prefix).replace("\\", "\\\\").replace("%", r"\%").replace("_", r"\_") + "%"
        )
        now = self.now_wall()
        with self._lock:
            rows = self._conn.execute(
                "SELECT key FROM guard_state WHERE key LIKE ? ESCAPE '\\' "
                "AND (expires_at IS NULL OR expires_at > ?) ORDER BY key",
                (pattern, now),
            ).fetchall()
        return [row[0][len(self.key_prefix) :] for row in rows]

    def _prune_sync(self) -> int:
        with self._lock:
            cur = self._conn.execute(
                "DELETE FROM guard_state WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self.now_wall(),),
            )
            return cur.rowcount or 0

    # ── StateStore API ─────────────────────────────────────────────────────

    async def _run(self, operation: str, key: Optional[str], fn: Callable[..., Any], *args: Any):
        try:
            return await bounded(
                asyncio.to_thread(fn, *args),
                timeout_s=self.timeout_s,
                backend=self.backend,
                operation=operation,
                key=key,
            )
        except sqlite3.OperationalError as e:
            raise StoreUnavailableError(
                f"sqlite store failed during {operation}: {e}",
                backend=self.backend,
                operation=operation,
                key=key,
            ) from e

    async def get(self, key: str) -> Optional[Document]:
        return await self._run("get", key, self._get_sync, key)

    async def set(self, key: str, doc: Document, *, ttl_s: Optional[float] = None) -> None:
        await self._run("set", key, self._set_sync, key, doc, ttl_s)

    async def delete(self, key: str) -> None:
        await self._run("delete", key, self._delete_sync, key)

    async def transact(self, key: str, update: Update[T], *, ttl_s: Optional[float] = None) -> T:
        return await self._run("transact", key, self._transact_sync, key, update, ttl_s)

    async def keys(self, prefix: str = "") -> List[str]:
        return await self._run("keys", None, self._keys_sync, prefix)

    async def prune_expired(self) -> int:
        """Delete expired rows. Returns count removed."""
        return await self._run("prune", None, self._prune_sync)

    async def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()


__all__ = ["SQLiteStateStore"]
