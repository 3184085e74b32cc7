"""Shared state store backends: in-memory and SQLite."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from GlobalGuard.config.models import StoreConfig
from GlobalGuard.errors import StoreUnavailableError
from GlobalGuard.sqlite_state_store import SQLiteStateStore
from GlobalGuard.store import InMemoryStateStore, bounded, build_store, decode_doc, encode_doc


def _bump(doc):
    count = (doc or {}).get("count", 0) + 1
    return {"count": count}, count


# ============================================================================
# Helpers
# ============================================================================


def test_encode_is_compact_and_sorted() -> None:
    assert encode_doc({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'


def test_decode_accepts_bytes() -> None:
    assert decode_doc(b'{"a":1}') == {"a": 1}


def test_decode_discards_unreadable_payload(caplog) -> None:
    with caplog.at_level("WARNING", logger="GlobalGuard"):
        assert decode_doc("{not json") is None
    assert "unreadable" in caplog.text


def test_decode_discards_payload_that_is_not_utf8(caplog) -> None:
    with caplog.at_level("WARNING", logger="GlobalGuard"):
        assert decode_doc(b"\xff\xfe") is None
    assert caplog.records[-1].raw == repr(b"\xff\xfe")


def test_decode_discards_non_object_payload() -> None:
    assert decode_doc("[1, 2]") is None


@pytest.mark.asyncio
async def test_bounded_maps_timeout_to_store_unavailable() -> None:
    with pytest.raises(StoreUnavailableError) as exc_info:
        await bounded(
            asyncio.sleep(1), timeout_s=0.01, backend="memory", operation="get", key="k"
        )
    assert exc_info.value.backend == "memory"
    assert exc_info.value.operation == "get"
    assert exc_info.value.key == "k"


# ============================================================================
# Backend behaviour (shared by every backend)
# ============================================================================


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, memory_store, sqlite_store):
    return memory_store if request.param == "memory" else sqlite_store


class TestStoreContract:
    @pytest.mark.asyncio
    async def test_set_get_delete(self, any_store) -> None:
        await any_store.set("k", {"a": 1})
        assert await any_store.get("k") == {"a": 1}
        await any_store.delete("k")
        assert await any_store.get("k") is None

    @pytest.mark.asyncio
    async def test_missing_key_reads_none(self, any_store) -> None:
        assert await any_store.get("missing") is None

    @pytest.mark.asyncio
    async def test_transact_reads_updates_and_returns_result(self, any_store) -> None:
        assert await any_store.transact("counter", _bump) == 1
        assert await any_store.transact("counter", _bump) == 2
        assert await any_store.get("counter") == {"count": 2}

    @pytest.mark.asyncio
    async def test_transact_returning_none_leaves_document(self, any_store) -> None:
        await any_store.set("k", {"a": 1})
        result = await any_store.transact("k", lambda doc: (None, doc["a"]))
        assert result == 1
        assert await any_store.get("k") == {"a": 1}

    @pytest.mark.asyncio
    async def test_ttl_expires_documents(self, any_store, clock) -> None:
        await any_store.set("short", {"a": 1}, ttl_s=5)
        await any_store.set("forever", {"a": 2})
        clock.advance(6)
        assert await any_store.get("short") is None
        assert await any_store.get("forever") == {"a": 2}

    @pytest.mark.asyncio
    async def test_keys_filters_by_prefix(self, any_store) -> None:
        await any_store.set("limiter:sliding:a", {})
        await any_store.set("limiter:leaky:b", {})
        await any_store.set("breaker:x:circuit", {})
        assert await any_store.keys("limiter:") == ["limiter:leaky:b", "limiter:sliding:a"]

    @pytest.mark.asyncio
    async def test_concurrent_transactions_do_not_lose_updates(self, any_store) -> None:
        await asyncio.gather(*(any_store.transact("counter", _bump) for _ in range(25)))
        assert await any_store.get("counter") == {"count": 25}


# ============================================================================
# SQLite specifics
# ============================================================================


class TestSQLiteStateStore:
    @pytest.mark.asyncio
    async def test_failed_update_rolls_back(self, sqlite_store) -> None:
        await sqlite_store.set("k", {"a": 1})

        def explode(doc):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await sqlite_store.transact("k", explode)
        assert await sqlite_store.get("k") == {"a": 1}
        # the connection is usable again after the rollback
        assert await sqlite_store.transact("k2", _bump) == 1

    @pytest.mark.asyncio
    async def test_state_is_shared_through_the_file(self, tmp_path: Path, clock) -> None:
        db_path = tmp_path / "shared.sqlite"
        first = SQLiteStateStore(db_path, now_wall=clock)
        second = SQLiteStateStore(db_path, now_wall=clock)
        try:
            await first.transact("counter", _bump)
            assert await second.transact("counter", _bump) == 2
        finally:
            await first.close()
            await second.close()

    @pytest.mark.asyncio
    async def test_key_prefix_isolates_namespaces(self, tmp_path: Path, clock) -> None:
        db_path = tmp_path / "shared.sqlite"
        one = SQLiteStateStore(db_path, key_prefix="one:", now_wall=clock)
        two = SQLiteStateStore(db_path, key_prefix="two:", now_wall=clock)
        try:
            await one.set("k", {"v": 1})
            assert await two.get("k") is None
            assert await one.keys() == ["k"]
        finally:
            await one.close()
            await two.close()

    @pytest.mark.asyncio
    async def test_keys_treats_like_wildcards_literally(self, sqlite_store) -> None:
        await sqlite_store.set("a_b", {})
        await sqlite_store.set("axb", {})
        assert await sqlite_store.keys("a_") == ["a_b"]

    @pytest.mark.asyncio
    async def test_prune_expired(self, sqlite_store, clock) -> None:
        await sqlite_store.set("short", {}, ttl_s=1)
        await sqlite_store.set("forever", {})
        clock.advance(2)
        assert await sqlite_store.prune_expired() == 1
        assert await sqlite_store.keys() == ["forever"]


# ============================================================================
# Factory
# ============================================================================


def test_build_store_memory() -> None:
    assert isinstance(build_store(StoreConfig()), InMemoryStateStore)


@pytest.mark.asyncio
async def test_build_store_sqlite(tmp_path: Path) -> None:
    store = build_store(
        StoreConfig(backend="sqlite", dsn=str(tmp_path / "g.sqlite"), key_prefix="p:")
    )
    try:
        assert isinstance(store, SQLiteStateStore)
        assert store.key_prefix == "p:"
    finally:
        await store.close()
